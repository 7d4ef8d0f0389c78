from __future__ import annotations

import json
from pathlib import Path

import pytest

from config.orchestrator_config import (
    DEFAULT_HOST,
    DEFAULT_MAX_REQUEST_BYTES,
    DEFAULT_PORT,
    OrchestratorConfig,
    load_orchestrator_config,
    resolve_orchestrator_config,
)
from config.provider_store import ProviderSettingsStore
from core.errors import ValidationError
from tests.fakes import provider_config


def test_load_server_settings_defaults(tmp_path: Path) -> None:
    config = load_orchestrator_config(tmp_path / "orchestrator.json")
    assert config.host == DEFAULT_HOST
    assert config.port == DEFAULT_PORT
    assert config.max_request_bytes == DEFAULT_MAX_REQUEST_BYTES


def test_load_server_settings_invalid(tmp_path: Path) -> None:
    path = tmp_path / "orchestrator.json"
    path.write_text("{bad", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_orchestrator_config(path)

    path.write_text(json.dumps({"host": "127.0.0.1", "port": "8000"}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_orchestrator_config(path)

    path.write_text(json.dumps({"host": "  "}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_orchestrator_config(path)


def test_resolve_server_settings_env_override(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "orchestrator.json"
    path.write_text(json.dumps({"max_request_bytes": 4096}), encoding="utf-8")
    monkeypatch.setenv("CHATRELAY_HTTP_HOST", "0.0.0.0")
    monkeypatch.setenv("CHATRELAY_HTTP_PORT", "9001")
    config = resolve_orchestrator_config(path)
    assert (config.host, config.port) == ("0.0.0.0", 9001)
    assert config.max_request_bytes == 4096
    assert config.to_dict()["port"] == 9001

    monkeypatch.setenv("CHATRELAY_HTTP_PORT", "nope")
    with pytest.raises(ValueError):
        resolve_orchestrator_config(path)



def test_orchestrator_config_file_and_env(tmp_path: Path, monkeypatch) -> None:
    for name in (
        "CHATRELAY_MAX_SESSIONS",
        "CHATRELAY_STORAGE_PATH",
        "CHATRELAY_ADMISSION_TIMEOUT",
        "CHATRELAY_CONNECT_TIMEOUT",
        "CHATRELAY_READ_TIMEOUT",
        "CHATRELAY_HTTP_HOST",
        "CHATRELAY_HTTP_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "orchestrator.json"
    assert load_orchestrator_config(path) == OrchestratorConfig()

    path.write_text(
        json.dumps({"max_sessions": 5, "admission_timeout_seconds": 2.5}),
        encoding="utf-8",
    )
    config = load_orchestrator_config(path)
    assert config.max_sessions == 5
    assert config.admission_timeout_seconds == 2.5

    monkeypatch.setenv("CHATRELAY_MAX_SESSIONS", "7")
    monkeypatch.setenv("CHATRELAY_READ_TIMEOUT", "30")
    monkeypatch.setenv("CHATRELAY_STORAGE_PATH", str(tmp_path / "db.sqlite"))
    resolved = resolve_orchestrator_config(path)
    assert resolved.max_sessions == 7
    assert resolved.read_timeout_seconds == 30.0
    assert resolved.storage_path == tmp_path / "db.sqlite"
    assert resolved.admission_timeout_seconds == 2.5


def test_orchestrator_config_rejects_bad_values(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "orchestrator.json"
    path.write_text(json.dumps({"max_sessions": 0}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_orchestrator_config(path)

    path.write_text(json.dumps({"read_timeout_seconds": -1}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_orchestrator_config(path)

    path.unlink()
    monkeypatch.setenv("CHATRELAY_ADMISSION_TIMEOUT", "soon")
    with pytest.raises(ValueError):
        resolve_orchestrator_config(path)


def test_provider_store_overlays_settings(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("LOCAL_API_KEY", raising=False)
    path = tmp_path / "providers.json"
    payload = {
        "providers": {
            "local": {"base_url": "http://override.test/v1", "api_key": "sk-file", "stream": False},
        },
    }
    path.write_text(json.dumps(payload), encoding="utf-8")

    store = ProviderSettingsStore(path)
    resolved = store.resolve(provider_config())
    assert resolved.base_url == "http://override.test/v1"
    assert resolved.model == "test-model"
    assert resolved.api_key == "sk-file"
    assert resolved.stream is False


def test_provider_store_reads_key_from_env(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("OPEN_ROUTER_API_KEY", "sk-env")
    store = ProviderSettingsStore(tmp_path / "providers.json")
    resolved = store.resolve(provider_config(provider_id="open-router"))
    assert resolved.api_key == "sk-env"


def test_provider_store_requires_model(tmp_path: Path) -> None:
    store = ProviderSettingsStore(tmp_path / "providers.json")
    with pytest.raises(ValidationError) as exc_info:
        store.resolve(provider_config(model=""))
    assert exc_info.value.field == "provider.model"
