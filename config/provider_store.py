from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from core.errors import ValidationError
from llm.types import ProviderConfig

PROVIDERS_CONFIG_PATH = Path("config/providers.json")


@dataclass(frozen=True)
class ProviderSettings:
    """User settings for one provider, read-only for the send pipeline."""

    base_url: str | None = None
    api_key: str | None = None
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None
    stream: bool = True


def provider_settings_from_dict(data: dict[str, Any]) -> ProviderSettings:
    max_tokens = data.get("max_tokens")
    return ProviderSettings(
        base_url=data.get("base_url"),
        api_key=data.get("api_key"),
        model=data.get("model"),
        temperature=float(data.get("temperature", 0.7)),
        max_tokens=int(max_tokens) if max_tokens is not None else None,
        stream=bool(data.get("stream", True)),
    )


def _env_api_key(provider_id: str) -> str | None:
    env_name = f"{provider_id.upper().replace('-', '_')}_API_KEY"
    value = os.getenv(env_name)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class ProviderSettingsStore:
    def __init__(self, path: Path = PROVIDERS_CONFIG_PATH) -> None:
        self.path = path
        self._providers: dict[str, ProviderSettings] = {}
        self.reload()

    def reload(self) -> None:
        self._providers = {}
        if not self.path.exists():
            return
        data = json.loads(self.path.read_text(encoding="utf-8"))
        providers_raw = data.get("providers", {}) if isinstance(data, dict) else {}
        if not isinstance(providers_raw, dict):
            raise ValueError(f"{self.path.name}: providers must be an object.")
        for provider_id, item in providers_raw.items():
            if isinstance(item, dict):
                self._providers[str(provider_id)] = provider_settings_from_dict(item)

    def get(self, provider_id: str) -> ProviderSettings | None:
        return self._providers.get(provider_id)

    def resolve(self, snapshot: ProviderConfig) -> ProviderConfig:
        """Overlay stored settings and credentials on a session's provider snapshot."""
        settings = self.get(snapshot.provider_id)
        if settings is None:
            resolved = replace(
                snapshot,
                api_key=snapshot.api_key or _env_api_key(snapshot.provider_id),
            )
        else:
            resolved = replace(
                snapshot,
                base_url=settings.base_url or snapshot.base_url,
                model=settings.model or snapshot.model,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                stream=settings.stream,
                api_key=(
                    settings.api_key
                    or snapshot.api_key
                    or _env_api_key(snapshot.provider_id)
                ),
            )
        if not resolved.base_url:
            raise ValidationError(
                f"base_url not configured for provider {snapshot.provider_id}",
                field="provider.base_url",
            )
        if not resolved.model:
            raise ValidationError(
                f"model not selected for provider {snapshot.provider_id}",
                field="provider.model",
            )
        return resolved
