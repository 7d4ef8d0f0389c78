from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Literal

from llm.types import ProviderConfig
from shared.models import JSONValue, MessageRole

SnippetKind = Literal["text", "image", "file"]
SNIPPET_KINDS: frozenset[str] = frozenset({"text", "image", "file"})


@dataclass(frozen=True)
class SnippetRef:
    """Quoted clipboard entry. Owned by the clipboard collaborator."""

    id: str
    content: str
    timestamp: int
    kind: SnippetKind = "text"
    metadata: dict[str, JSONValue] | None = None


@dataclass
class Message:
    id: str
    role: MessageRole
    content: str
    created_at: str
    snippet: SnippetRef | None = None

    def copy(self) -> Message:
        return dataclasses.replace(self)


@dataclass
class Session:
    id: str
    title: str
    provider: ProviderConfig
    created_at: str
    updated_at: str
    messages: list[Message] = field(default_factory=list)
    system_prompt: str | None = None
    role_prompt: str | None = None

    def copy(self) -> Session:
        return dataclasses.replace(self, messages=[item.copy() for item in self.messages])

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None
