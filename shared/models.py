from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Literal

JSONPrimitive = str | bytes | int | float | bool | None
JSONValue = JSONPrimitive | Sequence["JSONValue"] | Mapping[str, "JSONValue"]

MessageRole = Literal["system", "user", "assistant"]
MESSAGE_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})


@dataclass(frozen=True)
class LLMMessage:
    role: MessageRole
    content: str
