from __future__ import annotations

from config.orchestrator_config import resolve_orchestrator_config
from server.http.app import build_orchestrator, create_app, run_server


def main() -> None:
    config = resolve_orchestrator_config()
    run_server(config)


__all__ = ["build_orchestrator", "create_app", "main", "run_server"]
