from __future__ import annotations

import logging

from aiohttp import web

from config.orchestrator_config import OrchestratorConfig, resolve_orchestrator_config
from config.provider_store import ProviderSettingsStore
from core.admission import AdmissionQueue
from core.orchestrator import ChatOrchestrator
from core.session_storage import SessionStorage, SQLiteSessionStorage
from core.session_store import SessionStore
from llm.completion_client import CompletionClient

logger = logging.getLogger("ChatRelay.HttpAPI")


def build_orchestrator(
    config: OrchestratorConfig,
    *,
    storage: SessionStorage | None = None,
    provider_store: ProviderSettingsStore | None = None,
) -> ChatOrchestrator:
    resolved_storage = storage or SQLiteSessionStorage(config.storage_path)
    store = SessionStore(storage=resolved_storage, max_sessions=config.max_sessions)
    client = CompletionClient(
        connect_timeout=config.connect_timeout_seconds,
        read_timeout=config.read_timeout_seconds,
    )
    return ChatOrchestrator(
        store,
        client=client,
        admission=AdmissionQueue(timeout=config.admission_timeout_seconds),
        provider_resolver=provider_store or ProviderSettingsStore(),
        abandon_timeout=config.connect_timeout_seconds,
    )


def create_app(
    *,
    orchestrator: ChatOrchestrator | None = None,
    config: OrchestratorConfig | None = None,
    max_request_bytes: int | None = None,
    storage: SessionStorage | None = None,
) -> web.Application:
    resolved_config = config or resolve_orchestrator_config()
    app = web.Application(
        client_max_size=max_request_bytes or resolved_config.max_request_bytes,
    )
    if orchestrator is None:
        logger.info("Building orchestrator", extra={"config": resolved_config.to_dict()})
        orchestrator = build_orchestrator(resolved_config, storage=storage)
    app["orchestrator"] = orchestrator
    from server.http.routes import register_routes

    register_routes(app)
    return app


def run_server(config: OrchestratorConfig) -> None:
    app = create_app(config=config)
    web.run_app(app, host=config.host, port=config.port)
