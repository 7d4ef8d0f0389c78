from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Final

from core.errors import SessionNotFoundError, ValidationError
from core.session_models import Message, Session, SnippetRef
from core.session_storage import InMemorySessionStorage, SessionStorage
from llm.types import ProviderConfig
from shared.models import MESSAGE_ROLES, JSONValue, MessageRole

logger = logging.getLogger("ChatRelay.SessionStore")

DEFAULT_MAX_SESSIONS: Final[int] = 100
DEFAULT_TITLE_PREFIX: Final[str] = "New chat"
SUBSCRIBER_QUEUE_SIZE: Final[int] = 1024


class _Unset:
    pass


UNSET: Final = _Unset()


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return datetime.fromtimestamp(0, tz=UTC)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _default_title() -> str:
    return f"{DEFAULT_TITLE_PREFIX} {datetime.now().strftime('%m-%d %H:%M')}"


class SessionStore:
    """Owns every Session and Message.

    Callers receive copies; mutation goes through the store so each change is
    timestamped, persisted and published to subscribers. The store keeps at
    most ``max_sessions`` sessions and evicts the least recently updated ones.
    """

    def __init__(
        self,
        *,
        storage: SessionStorage | None = None,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ) -> None:
        self._storage: SessionStorage = storage or InMemorySessionStorage()
        self._max_sessions = max_sessions
        self._sessions: dict[str, Session] = {}
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, JSONValue]]]] = {}
        self._current_id: str | None = None
        self._last_timestamp = datetime.fromtimestamp(0, tz=UTC)
        self._lock = asyncio.Lock()
        self._restore_sessions()

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    @property
    def current_session_id(self) -> str | None:
        return self._current_id

    async def create_session(
        self,
        provider: ProviderConfig,
        *,
        system_prompt: str | None = None,
        role_prompt: str | None = None,
        title: str | None = None,
    ) -> Session:
        async with self._lock:
            session_id = uuid.uuid4().hex
            while session_id in self._sessions:
                session_id = uuid.uuid4().hex
            now = self._next_timestamp_locked()
            session = Session(
                id=session_id,
                title=(title or "").strip() or _default_title(),
                provider=provider,
                created_at=now,
                updated_at=now,
                system_prompt=system_prompt or None,
                role_prompt=role_prompt or None,
            )
            self._sessions[session_id] = session
            self._current_id = session_id
            self._persist_locked(session_id)
            self._prune_sessions_locked(keep_session_id=session_id)
            return session.copy()

    async def get_session(self, session_id: str) -> Session | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return session.copy() if session is not None else None

    async def require_session(self, session_id: str) -> Session:
        async with self._lock:
            return self._require_locked(session_id).copy()

    async def list_sessions(self) -> list[Session]:
        async with self._lock:
            return [item.copy() for item in self._sorted_locked()]

    async def select_session(self, session_id: str) -> Session:
        async with self._lock:
            session = self._require_locked(session_id)
            self._current_id = session_id
            return session.copy()

    async def current_session(self) -> Session | None:
        async with self._lock:
            if self._current_id is None:
                return None
            session = self._sessions.get(self._current_id)
            return session.copy() if session is not None else None

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            if session_id not in self._sessions:
                return False
            self._drop_sessions_locked([session_id])
            return True

    async def rename_session(self, session_id: str, title: str) -> Session:
        normalized = title.strip()
        if not normalized:
            raise ValidationError("title required", field="title")
        async with self._lock:
            session = self._require_locked(session_id)
            session.title = normalized
            self._touch_locked(session)
            return session.copy()

    async def update_session(
        self,
        session_id: str,
        *,
        provider: ProviderConfig | _Unset = UNSET,
        system_prompt: str | None | _Unset = UNSET,
        role_prompt: str | None | _Unset = UNSET,
    ) -> Session:
        async with self._lock:
            session = self._require_locked(session_id)
            if isinstance(provider, ProviderConfig):
                session.provider = provider
            if not isinstance(system_prompt, _Unset):
                session.system_prompt = system_prompt or None
            if not isinstance(role_prompt, _Unset):
                session.role_prompt = role_prompt or None
            self._touch_locked(session)
            return session.copy()

    async def clear_session(self, session_id: str) -> Session:
        async with self._lock:
            session = self._require_locked(session_id)
            session.messages = []
            self._touch_locked(session)
            return session.copy()

    async def append_message(
        self,
        session_id: str,
        *,
        role: MessageRole,
        content: str,
        snippet: SnippetRef | None = None,
    ) -> Message:
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"unsupported message role: {role}", field="role")
        async with self._lock:
            session = self._require_locked(session_id)
            message = Message(
                id=uuid.uuid4().hex,
                role=role,
                content=content,
                created_at=self._next_timestamp_locked(),
                snippet=snippet,
            )
            session.messages.append(message)
            self._touch_locked(session)
            self._publish_locked(
                session_id,
                "chat.message.created",
                {"message_id": message.id, "role": role, "content": content},
            )
            return message.copy()

    async def update_message(self, session_id: str, message_id: str, content: str) -> Message:
        async with self._lock:
            session, message = self._require_message_locked(session_id, message_id)
            message.content = content
            self._touch_locked(session)
            self._publish_locked(
                session_id,
                "chat.message.updated",
                {"message_id": message_id, "content": content},
            )
            return message.copy()

    async def append_to_message(self, session_id: str, message_id: str, delta: str) -> Message:
        async with self._lock:
            session, message = self._require_message_locked(session_id, message_id)
            if not delta:
                return message.copy()
            message.content += delta
            self._touch_locked(session)
            self._publish_locked(
                session_id,
                "chat.stream.delta",
                {"message_id": message_id, "delta": delta},
            )
            return message.copy()

    async def delete_message(self, session_id: str, message_id: str) -> None:
        async with self._lock:
            session, message = self._require_message_locked(session_id, message_id)
            session.messages = [item for item in session.messages if item.id != message.id]
            self._touch_locked(session)

    async def import_session(self, session: Session) -> Session:
        """Insert an imported session. A colliding id is replaced by a fresh one."""
        async with self._lock:
            imported = session.copy()
            if imported.id in self._sessions:
                original_id = imported.id
                imported.id = uuid.uuid4().hex
                while imported.id in self._sessions:
                    imported.id = uuid.uuid4().hex
                logger.info(
                    "Imported session id collided; minted a new one",
                    extra={"original_id": original_id, "session_id": imported.id},
                )
            imported.updated_at = self._next_timestamp_locked()
            if _parse_timestamp(imported.created_at) > _parse_timestamp(imported.updated_at):
                imported.created_at = imported.updated_at
            self._sessions[imported.id] = imported
            self._current_id = imported.id
            self._persist_locked(imported.id)
            self._prune_sessions_locked(keep_session_id=imported.id)
            return imported.copy()

    async def subscribe(self, session_id: str) -> asyncio.Queue[dict[str, JSONValue]]:
        queue: asyncio.Queue[dict[str, JSONValue]] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        async with self._lock:
            self._subscribers.setdefault(session_id, set()).add(queue)
        return queue

    async def unsubscribe(
        self,
        session_id: str,
        queue: asyncio.Queue[dict[str, JSONValue]],
    ) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(session_id)
            if subscribers is None:
                return
            subscribers.discard(queue)
            if not subscribers:
                self._subscribers.pop(session_id, None)

    async def publish(
        self,
        session_id: str,
        event_type: str,
        payload: dict[str, JSONValue],
    ) -> None:
        async with self._lock:
            self._publish_locked(session_id, event_type, payload)

    def _publish_locked(
        self,
        session_id: str,
        event_type: str,
        payload: dict[str, JSONValue],
    ) -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        event: dict[str, JSONValue] = {
            "type": event_type,
            "payload": {"session_id": session_id, **payload},
        }
        for queue in list(subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping event for slow subscriber",
                    extra={"session_id": session_id, "event_type": event_type},
                )

    def _require_locked(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _require_message_locked(self, session_id: str, message_id: str) -> tuple[Session, Message]:
        session = self._require_locked(session_id)
        message = session.find_message(message_id)
        if message is None:
            raise SessionNotFoundError(session_id, message_id=message_id)
        return session, message

    def _next_timestamp_locked(self) -> str:
        # Strictly increasing so recency ordering never ties.
        now = datetime.now(UTC)
        if now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now.isoformat()

    def _touch_locked(self, session: Session) -> None:
        session.updated_at = self._next_timestamp_locked()
        self._persist_locked(session.id)
        self._prune_sessions_locked(keep_session_id=session.id)

    def _sorted_locked(self) -> list[Session]:
        return sorted(
            self._sessions.values(),
            key=lambda item: _parse_timestamp(item.updated_at),
            reverse=True,
        )

    def _persist_locked(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        self._storage.save_session(session)

    def _prune_sessions_locked(self, *, keep_session_id: str | None = None) -> None:
        if self._max_sessions <= 0 or len(self._sessions) <= self._max_sessions:
            return
        ordered = self._sorted_locked()
        keep_ids = {item.id for item in ordered[: self._max_sessions]}
        if keep_session_id is not None and keep_session_id not in keep_ids:
            keep_ids.add(keep_session_id)
            keep_ids.discard(ordered[self._max_sessions - 1].id)
        evicted = [item.id for item in ordered if item.id not in keep_ids]
        if evicted:
            logger.info(
                "Session cap reached; evicting least recently updated sessions",
                extra={"evicted": evicted, "max_sessions": self._max_sessions},
            )
        self._drop_sessions_locked(evicted)

    def _drop_sessions_locked(self, session_ids: Iterable[str]) -> None:
        to_remove = [session_id for session_id in session_ids if session_id in self._sessions]
        if not to_remove:
            return
        for session_id in to_remove:
            self._sessions.pop(session_id, None)
        self._storage.delete_sessions(to_remove)
        if self._current_id in to_remove:
            remaining = self._sorted_locked()
            self._current_id = remaining[0].id if remaining else None

    def _restore_sessions(self) -> None:
        for session in self._storage.load_sessions():
            self._sessions[session.id] = session
            updated = _parse_timestamp(session.updated_at)
            if updated > self._last_timestamp:
                self._last_timestamp = updated
        ordered = self._sorted_locked()
        if ordered:
            self._current_id = ordered[0].id
        self._prune_sessions_locked()
