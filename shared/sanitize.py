from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from shared.models import JSONValue

SECRET_KEYS = {
    "api_key",
    "authorization",
    "x-api-key",
    "token",
    "secret",
}
PAYLOAD_KEYS = {"content"}
MAX_FIELD_PREVIEW = 120


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8", errors="replace")
    try:
        return json.dumps(value, ensure_ascii=False).encode("utf-8", errors="replace")
    except (TypeError, ValueError):
        return str(value).encode("utf-8", errors="replace")


def _preview(value: Any) -> dict[str, JSONValue]:
    raw_bytes = _to_bytes(value)
    preview = raw_bytes[:MAX_FIELD_PREVIEW].decode("utf-8", errors="replace")
    if len(raw_bytes) > MAX_FIELD_PREVIEW:
        preview += "…[truncated]"
    return {
        "preview": preview,
        "bytes_count": len(raw_bytes),
        "sha256": hashlib.sha256(raw_bytes).hexdigest(),
    }


def _redact_value(key: str | None, value: Any) -> JSONValue:
    key_lower = key.lower() if isinstance(key, str) else ""
    if key_lower in SECRET_KEYS:
        return "[secret]"
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    if isinstance(value, Mapping):
        return {str(k): _redact_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact_value(key, item) for item in value]
    if isinstance(value, (str, bytes)):
        if key_lower in PAYLOAD_KEYS or len(_to_bytes(value)) > MAX_FIELD_PREVIEW:
            return _preview(value)
        return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
    return str(value)


def redact_payload(payload: Mapping[str, Any]) -> dict[str, JSONValue]:
    """Copy of a request payload or header map that is safe to log.

    Credentials are masked and message bodies are reduced to a short preview
    plus size and digest.
    """
    return {str(k): _redact_value(str(k), v) for k, v in payload.items()}


def safe_json_loads(raw: str | bytes) -> object | None:
    try:
        parsed: object = json.loads(raw)
        return parsed
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
