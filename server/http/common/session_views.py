from __future__ import annotations

from core.session_codec import export_session
from core.session_models import Session
from shared.models import JSONValue


def session_list_item(session: Session, *, current_id: str | None) -> dict[str, JSONValue]:
    return {
        "id": session.id,
        "title": session.title,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
        "message_count": len(session.messages),
        "provider_id": session.provider.provider_id,
        "model": session.provider.model,
        "current": session.id == current_id,
    }


def session_payload(session: Session) -> dict[str, JSONValue]:
    return {"session": export_session(session)}
