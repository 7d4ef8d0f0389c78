from __future__ import annotations

import logging

from aiohttp import web

from core.errors import AdmissionTimeoutError, SessionNotFoundError, ValidationError
from shared.models import JSONValue

logger = logging.getLogger("ChatRelay.HttpAPI")


def json_response(payload: dict[str, JSONValue], *, status: int = 200) -> web.Response:
    return web.json_response(payload, status=status)


def error_response(
    *,
    status: int,
    message: str,
    error_type: str,
    code: str,
    details: dict[str, JSONValue] | None = None,
) -> web.Response:
    error_payload: dict[str, JSONValue] = {
        "message": message,
        "type": error_type,
        "code": code,
        "details": details or {},
    }
    return json_response({"error": error_payload}, status=status)


def error_from_exception(exc: Exception) -> web.Response:
    if isinstance(exc, ValidationError):
        return error_response(
            status=400,
            message=str(exc),
            error_type="invalid_request_error",
            code="validation_error",
            details={"field": exc.field},
        )
    if isinstance(exc, SessionNotFoundError):
        return error_response(
            status=404,
            message=str(exc),
            error_type="invalid_request_error",
            code="not_found",
            details={"session_id": exc.session_id, "message_id": exc.message_id},
        )
    if isinstance(exc, AdmissionTimeoutError):
        return error_response(
            status=503,
            message=str(exc),
            error_type="busy",
            code="admission_timeout",
            details={"retryable": True, "timeout": exc.timeout},
        )
    logger.error("Unhandled API error", exc_info=exc)
    return error_response(
        status=500,
        message=f"Internal error: {exc}",
        error_type="internal_error",
        code="internal_error",
    )


async def read_json_object(request: web.Request) -> dict[str, JSONValue]:
    try:
        payload = await request.json()
    except Exception as exc:  # noqa: BLE001
        raise ValidationError(f"invalid JSON: {exc}", field="body") from exc
    if not isinstance(payload, dict):
        raise ValidationError("JSON body must be an object", field="body")
    return payload
