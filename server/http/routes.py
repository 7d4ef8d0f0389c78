from __future__ import annotations

from aiohttp import web


def register_routes(app: web.Application) -> None:
    from server.http.handlers import chat, events, sessions

    app.router.add_get("/api/sessions", sessions.handle_sessions_list)
    app.router.add_post("/api/sessions", sessions.handle_sessions_create)
    app.router.add_post("/api/sessions/import", sessions.handle_session_import)
    app.router.add_get("/api/sessions/{session_id}", sessions.handle_session_get)
    app.router.add_delete("/api/sessions/{session_id}", sessions.handle_session_delete)
    app.router.add_post("/api/sessions/{session_id}/select", sessions.handle_session_select)
    app.router.add_patch("/api/sessions/{session_id}/title", sessions.handle_session_rename)
    app.router.add_post("/api/sessions/{session_id}/clear", sessions.handle_session_clear)
    app.router.add_patch(
        "/api/sessions/{session_id}/settings",
        sessions.handle_session_settings,
    )
    app.router.add_get("/api/sessions/{session_id}/export", sessions.handle_session_export)
    app.router.add_get("/api/sessions/{session_id}/events", events.handle_session_events)
    app.router.add_patch(
        "/api/sessions/{session_id}/messages/{message_id}",
        sessions.handle_message_edit,
    )
    app.router.add_delete(
        "/api/sessions/{session_id}/messages/{message_id}",
        sessions.handle_message_delete,
    )
    app.router.add_post("/api/chat/send", chat.handle_chat_send)
    app.router.add_post("/api/chat/stop", chat.handle_chat_stop)
    app.router.add_get("/api/chat/status", chat.handle_chat_status)
