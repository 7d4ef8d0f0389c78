from __future__ import annotations

from aiohttp import web

from core.orchestrator import ChatOrchestrator
from core.session_codec import provider_from_dict
from server.http.common.responses import error_from_exception, json_response, read_json_object
from server.http.common.session_views import session_list_item, session_payload
from shared.models import JSONValue


def _orchestrator(request: web.Request) -> ChatOrchestrator:
    return request.app["orchestrator"]


def _optional_text(payload: dict[str, JSONValue], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


async def handle_sessions_list(request: web.Request) -> web.Response:
    orchestrator = _orchestrator(request)
    sessions = await orchestrator.list_sessions()
    current_id = orchestrator.store.current_session_id
    return json_response(
        {
            "current_session_id": current_id,
            "sessions": [session_list_item(item, current_id=current_id) for item in sessions],
        },
    )


async def handle_sessions_create(request: web.Request) -> web.Response:
    orchestrator = _orchestrator(request)
    try:
        payload = await read_json_object(request)
        provider = provider_from_dict(payload.get("provider"))
        session = await orchestrator.create_session(
            provider,
            _optional_text(payload, "system_prompt"),
            _optional_text(payload, "role_prompt"),
            title=_optional_text(payload, "title"),
        )
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(session_payload(session), status=201)


async def handle_session_get(request: web.Request) -> web.Response:
    try:
        session = await _orchestrator(request).get_session(request.match_info["session_id"])
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(session_payload(session))


async def handle_session_select(request: web.Request) -> web.Response:
    try:
        session = await _orchestrator(request).select_session(request.match_info["session_id"])
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(session_payload(session))


async def handle_session_delete(request: web.Request) -> web.Response:
    orchestrator = _orchestrator(request)
    session_id = request.match_info["session_id"]
    try:
        await orchestrator.delete_session(session_id)
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(
        {
            "deleted": session_id,
            "current_session_id": orchestrator.store.current_session_id,
        },
    )


async def handle_session_rename(request: web.Request) -> web.Response:
    try:
        payload = await read_json_object(request)
        title = payload.get("title")
        session = await _orchestrator(request).rename_session(
            request.match_info["session_id"],
            title if isinstance(title, str) else "",
        )
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(session_payload(session))


async def handle_session_clear(request: web.Request) -> web.Response:
    try:
        session = await _orchestrator(request).clear_session(request.match_info["session_id"])
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(session_payload(session))


async def handle_session_settings(request: web.Request) -> web.Response:
    try:
        payload = await read_json_object(request)
        provider_raw = payload.get("provider")
        session = await _orchestrator(request).update_session_settings(
            request.match_info["session_id"],
            provider=provider_from_dict(provider_raw) if provider_raw is not None else None,
            system_prompt=_optional_text(payload, "system_prompt"),
            role_prompt=_optional_text(payload, "role_prompt"),
            clear_prompts=payload.get("clear_prompts") is True,
        )
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(session_payload(session))


async def handle_message_edit(request: web.Request) -> web.Response:
    try:
        payload = await read_json_object(request)
        content = payload.get("content")
        if not isinstance(content, str):
            content = ""
        message = await _orchestrator(request).edit_message(
            request.match_info["session_id"],
            request.match_info["message_id"],
            content,
        )
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response({"message_id": message.id, "content": message.content})


async def handle_message_delete(request: web.Request) -> web.Response:
    message_id = request.match_info["message_id"]
    try:
        await _orchestrator(request).delete_message(request.match_info["session_id"], message_id)
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response({"deleted": message_id})


async def handle_session_export(request: web.Request) -> web.Response:
    try:
        document = await _orchestrator(request).export_session(request.match_info["session_id"])
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(document)


async def handle_session_import(request: web.Request) -> web.Response:
    try:
        payload = await read_json_object(request)
        session = await _orchestrator(request).import_session(payload)
    except Exception as exc:  # noqa: BLE001
        return error_from_exception(exc)
    return json_response(session_payload(session), status=201)
