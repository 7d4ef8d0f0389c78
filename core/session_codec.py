"""Portable session documents.

The document is also the persisted shape, so it must stay JSON-serializable
and must never carry provider credentials.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from core.errors import ValidationError
from core.session_models import SNIPPET_KINDS, Message, Session, SnippetRef
from llm.types import ProviderConfig
from shared.models import MESSAGE_ROLES, JSONValue


def _utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def provider_to_dict(config: ProviderConfig) -> dict[str, JSONValue]:
    return {
        "provider_id": config.provider_id,
        "name": config.name,
        "base_url": config.base_url,
        "model": config.model,
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "stream": config.stream,
        "extra_headers": dict(config.extra_headers),
    }


def provider_from_dict(raw: object, *, field: str = "provider") -> ProviderConfig:
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object", field=field)
    provider_id = raw.get("provider_id")
    if not isinstance(provider_id, str) or not provider_id.strip():
        raise ValidationError(f"{field}.provider_id required", field=f"{field}.provider_id")
    base_url = raw.get("base_url", "")
    model = raw.get("model", "")
    if not isinstance(base_url, str):
        raise ValidationError(f"{field}.base_url must be a string", field=f"{field}.base_url")
    if not isinstance(model, str):
        raise ValidationError(f"{field}.model must be a string", field=f"{field}.model")
    temperature = raw.get("temperature", 0.7)
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
        raise ValidationError(
            f"{field}.temperature must be a number",
            field=f"{field}.temperature",
        )
    max_tokens = raw.get("max_tokens")
    if max_tokens is not None and (isinstance(max_tokens, bool) or not isinstance(max_tokens, int)):
        raise ValidationError(f"{field}.max_tokens must be int", field=f"{field}.max_tokens")
    stream = raw.get("stream", True)
    if not isinstance(stream, bool):
        raise ValidationError(f"{field}.stream must be bool", field=f"{field}.stream")
    headers_raw = raw.get("extra_headers") or {}
    if not isinstance(headers_raw, dict):
        raise ValidationError(
            f"{field}.extra_headers must be an object",
            field=f"{field}.extra_headers",
        )
    name = raw.get("name")
    return ProviderConfig(
        provider_id=provider_id.strip(),
        base_url=base_url.strip(),
        model=model.strip(),
        temperature=float(temperature),
        max_tokens=max_tokens,
        stream=stream,
        extra_headers={str(k): str(v) for k, v in headers_raw.items()},
        name=name.strip() if isinstance(name, str) and name.strip() else None,
    )


def _snippet_to_dict(snippet: SnippetRef) -> dict[str, JSONValue]:
    return {
        "id": snippet.id,
        "content": snippet.content,
        "timestamp": snippet.timestamp,
        "kind": snippet.kind,
        "metadata": dict(snippet.metadata) if snippet.metadata is not None else None,
    }


def snippet_from_dict(raw: object, *, field: str = "snippet") -> SnippetRef:
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object", field=field)
    snippet_id = raw.get("id")
    content = raw.get("content")
    timestamp = raw.get("timestamp", 0)
    kind = raw.get("kind", "text")
    metadata = raw.get("metadata")
    if not isinstance(snippet_id, str) or not snippet_id.strip():
        raise ValidationError(f"{field}.id required", field=f"{field}.id")
    if not isinstance(content, str):
        raise ValidationError(f"{field}.content required", field=f"{field}.content")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise ValidationError(f"{field}.timestamp must be int", field=f"{field}.timestamp")
    if not isinstance(kind, str) or kind not in SNIPPET_KINDS:
        raise ValidationError(f"{field}.kind is invalid", field=f"{field}.kind")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError(f"{field}.metadata must be an object", field=f"{field}.metadata")
    return SnippetRef(
        id=snippet_id.strip(),
        content=content,
        timestamp=timestamp,
        kind=kind,  # type: ignore[arg-type]
        metadata=dict(metadata) if metadata is not None else None,
    )


def _message_to_dict(message: Message) -> dict[str, JSONValue]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "created_at": message.created_at,
        "snippet": _snippet_to_dict(message.snippet) if message.snippet is not None else None,
    }


def _message_from_dict(raw: object, *, index: int, default_created_at: str) -> Message:
    field = f"messages[{index}]"
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object", field=field)
    role = raw.get("role")
    content = raw.get("content")
    message_id = raw.get("id")
    created_at = raw.get("created_at")
    if not isinstance(role, str) or role not in MESSAGE_ROLES:
        raise ValidationError(f"{field}.role is invalid", field=f"{field}.role")
    if not isinstance(content, str):
        raise ValidationError(f"{field}.content required", field=f"{field}.content")
    if message_id is not None and (not isinstance(message_id, str) or not message_id.strip()):
        raise ValidationError(f"{field}.id must be a string", field=f"{field}.id")
    if created_at is not None and (not isinstance(created_at, str) or not created_at.strip()):
        raise ValidationError(f"{field}.created_at must be a string", field=f"{field}.created_at")
    snippet_raw = raw.get("snippet")
    return Message(
        id=message_id.strip() if isinstance(message_id, str) else uuid.uuid4().hex,
        role=role,  # type: ignore[arg-type]
        content=content,
        created_at=created_at.strip() if isinstance(created_at, str) else default_created_at,
        snippet=(
            snippet_from_dict(snippet_raw, field=f"{field}.snippet")
            if snippet_raw is not None
            else None
        ),
    )


def export_session(session: Session) -> dict[str, JSONValue]:
    return {
        "id": session.id,
        "title": session.title,
        "provider": provider_to_dict(session.provider),
        "system_prompt": session.system_prompt,
        "role_prompt": session.role_prompt,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
        "messages": [_message_to_dict(message) for message in session.messages],
    }


def import_session(raw: object, *, utc_iso_fn: Callable[[], str] = _utc_iso) -> Session:
    """Validate a document and rehydrate it.

    Raises ``ValidationError`` naming the first missing or malformed field.
    Identity collisions are resolved by the store, not here.
    """
    if not isinstance(raw, dict):
        raise ValidationError("session document must be an object", field="document")
    session_id = raw.get("id")
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("id required", field="id")
    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title required", field="title")
    messages_raw = raw.get("messages")
    if not isinstance(messages_raw, list):
        raise ValidationError("messages must be a list", field="messages")
    if "provider" not in raw or raw.get("provider") is None:
        raise ValidationError("provider required", field="provider")
    provider = provider_from_dict(raw.get("provider"))

    for key in ("system_prompt", "role_prompt"):
        value = raw.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string", field=key)
    system_prompt = raw.get("system_prompt")
    role_prompt = raw.get("role_prompt")

    created_at_raw = raw.get("created_at")
    created_at = (
        created_at_raw.strip()
        if isinstance(created_at_raw, str) and created_at_raw.strip()
        else utc_iso_fn()
    )
    updated_at_raw = raw.get("updated_at")
    updated_at = (
        updated_at_raw.strip()
        if isinstance(updated_at_raw, str) and updated_at_raw.strip()
        else created_at
    )
    messages = [
        _message_from_dict(item, index=index, default_created_at=created_at)
        for index, item in enumerate(messages_raw)
    ]
    return Session(
        id=session_id.strip(),
        title=title.strip(),
        provider=provider,
        created_at=created_at,
        updated_at=updated_at,
        messages=messages,
        system_prompt=system_prompt or None,
        role_prompt=role_prompt or None,
    )


def parse_document_text(text: str) -> dict[str, JSONValue]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid JSON: {exc.msg}", field="document") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("session document must be an object", field="document")
    return parsed


def dump_document_text(session: Session) -> str:
    return json.dumps(export_session(session), ensure_ascii=False)


def import_document_text(text: str) -> Session:
    return import_session(parse_document_text(text))
