from __future__ import annotations

from dataclasses import dataclass, field

from shared.models import JSONValue


@dataclass(frozen=True)
class ProviderConfig:
    provider_id: str
    base_url: str
    model: str
    temperature: float = 0.7
    max_tokens: int | None = None
    stream: bool = True
    api_key: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    name: str | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"


@dataclass(frozen=True)
class LLMUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class CompletionResult:
    text: str
    usage: LLMUsage | None = None
    raw: dict[str, JSONValue] | None = None
