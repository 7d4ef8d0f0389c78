from __future__ import annotations

import asyncio
import json

from aiohttp import web

from core.orchestrator import ChatOrchestrator
from server.http.common.responses import error_from_exception

KEEP_ALIVE_SECONDS = 20


async def handle_session_events(request: web.Request) -> web.StreamResponse:
    orchestrator: ChatOrchestrator = request.app["orchestrator"]
    session_id = request.match_info["session_id"]
    try:
        await orchestrator.get_session(session_id)
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    queue = await orchestrator.store.subscribe(session_id)

    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    await response.prepare(request)
    status_event = {"type": "chat.status", "payload": orchestrator.status()}
    await response.write(f"data: {json.dumps(status_event, ensure_ascii=False)}\n\n".encode())

    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEP_ALIVE_SECONDS)
                payload = json.dumps(event, ensure_ascii=False)
                await response.write(f"data: {payload}\n\n".encode())
            except TimeoutError:
                await response.write(b": keep-alive\n\n")
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        await orchestrator.store.unsubscribe(session_id, queue)
    return response
