from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from core.admission import DEFAULT_ADMISSION_TIMEOUT
from core.session_store import DEFAULT_MAX_SESSIONS
from llm.completion_client import DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT

DEFAULT_PATH = Path("config/orchestrator.json")
DEFAULT_STORAGE_PATH = Path(".run/sessions.db")
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
DEFAULT_MAX_REQUEST_BYTES = 2_000_000


@dataclass(frozen=True)
class OrchestratorConfig:
    """Runtime settings for the send pipeline and the API server in front of it."""

    admission_timeout_seconds: float = DEFAULT_ADMISSION_TIMEOUT
    max_sessions: int = DEFAULT_MAX_SESSIONS
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout_seconds: float = DEFAULT_READ_TIMEOUT
    storage_path: Path = DEFAULT_STORAGE_PATH
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES

    def to_dict(self) -> dict[str, object]:
        return {
            "admission_timeout_seconds": self.admission_timeout_seconds,
            "max_sessions": self.max_sessions,
            "connect_timeout_seconds": self.connect_timeout_seconds,
            "read_timeout_seconds": self.read_timeout_seconds,
            "storage_path": str(self.storage_path),
            "host": self.host,
            "port": self.port,
            "max_request_bytes": self.max_request_bytes,
        }


def _positive_number(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"orchestrator.{key} must be a positive number.")
    return float(value)


def _positive_int(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"orchestrator.{key} must be a positive int.")
    return value


def _non_empty_text(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"orchestrator.{key} must be a non-empty string.")
    return value.strip()


def load_orchestrator_config(path: Path = DEFAULT_PATH) -> OrchestratorConfig:
    if not path.exists():
        return OrchestratorConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Failed to read {path.name}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain an object.")
    return OrchestratorConfig(
        admission_timeout_seconds=_positive_number(
            data,
            "admission_timeout_seconds",
            DEFAULT_ADMISSION_TIMEOUT,
        ),
        max_sessions=_positive_int(data, "max_sessions", DEFAULT_MAX_SESSIONS),
        connect_timeout_seconds=_positive_number(
            data,
            "connect_timeout_seconds",
            DEFAULT_CONNECT_TIMEOUT,
        ),
        read_timeout_seconds=_positive_number(data, "read_timeout_seconds", DEFAULT_READ_TIMEOUT),
        storage_path=Path(_non_empty_text(data, "storage_path", str(DEFAULT_STORAGE_PATH))),
        host=_non_empty_text(data, "host", DEFAULT_HOST),
        port=_positive_int(data, "port", DEFAULT_PORT),
        max_request_bytes=_positive_int(data, "max_request_bytes", DEFAULT_MAX_REQUEST_BYTES),
    )


def _env_text(name: str, current: str) -> str:
    raw = os.getenv(name)
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return current


def _env_int(name: str, current: int) -> int:
    raw = os.getenv(name)
    if not isinstance(raw, str) or not raw.strip():
        return current
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be int.") from exc
    if value < 1:
        raise ValueError(f"{name} must be positive.")
    return value


def _env_float(name: str, current: float) -> float:
    raw = os.getenv(name)
    if not isinstance(raw, str) or not raw.strip():
        return current
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number.") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive.")
    return value


def resolve_orchestrator_config(path: Path = DEFAULT_PATH) -> OrchestratorConfig:
    config = load_orchestrator_config(path)
    return OrchestratorConfig(
        admission_timeout_seconds=_env_float(
            "CHATRELAY_ADMISSION_TIMEOUT",
            config.admission_timeout_seconds,
        ),
        max_sessions=_env_int("CHATRELAY_MAX_SESSIONS", config.max_sessions),
        connect_timeout_seconds=_env_float(
            "CHATRELAY_CONNECT_TIMEOUT",
            config.connect_timeout_seconds,
        ),
        read_timeout_seconds=_env_float("CHATRELAY_READ_TIMEOUT", config.read_timeout_seconds),
        storage_path=Path(_env_text("CHATRELAY_STORAGE_PATH", str(config.storage_path))),
        host=_env_text("CHATRELAY_HTTP_HOST", config.host),
        port=_env_int("CHATRELAY_HTTP_PORT", config.port),
        max_request_bytes=config.max_request_bytes,
    )
