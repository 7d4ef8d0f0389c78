from __future__ import annotations

import logging

from aiohttp import web

from core.orchestrator import ChatOrchestrator
from core.session_codec import snippet_from_dict
from server.http.common.responses import error_from_exception, json_response, read_json_object

logger = logging.getLogger("ChatRelay.HttpAPI")


async def handle_chat_send(request: web.Request) -> web.Response:
    orchestrator: ChatOrchestrator = request.app["orchestrator"]
    try:
        payload = await read_json_object(request)
        content = payload.get("content")
        if not isinstance(content, str):
            content = ""
        snippet_raw = payload.get("snippet")
        snippet = snippet_from_dict(snippet_raw) if snippet_raw is not None else None
        session_id_raw = payload.get("session_id")
        session_id = (
            session_id_raw.strip()
            if isinstance(session_id_raw, str) and session_id_raw.strip()
            else None
        )
        outcome = await orchestrator.send(content, snippet, session_id=session_id)
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(outcome.to_dict())


async def handle_chat_stop(request: web.Request) -> web.Response:
    orchestrator: ChatOrchestrator = request.app["orchestrator"]
    stopped = orchestrator.stop()
    return json_response({"stopped": stopped})


async def handle_chat_status(request: web.Request) -> web.Response:
    orchestrator: ChatOrchestrator = request.app["orchestrator"]
    return json_response(orchestrator.status())
