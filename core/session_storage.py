from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from core.errors import ValidationError
from core.session_codec import export_session, import_session
from core.session_models import Session
from shared.sanitize import safe_json_loads

logger = logging.getLogger("ChatRelay.SessionStorage")


class SessionStorage(Protocol):
    def load_sessions(self) -> list[Session]: ...

    def save_session(self, session: Session) -> None: ...

    def delete_sessions(self, session_ids: Sequence[str]) -> None: ...


class InMemorySessionStorage:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def load_sessions(self) -> list[Session]:
        return [item.copy() for item in self._sessions.values()]

    def save_session(self, session: Session) -> None:
        self._sessions[session.id] = session.copy()

    def delete_sessions(self, session_ids: Sequence[str]) -> None:
        for session_id in session_ids:
            self._sessions.pop(session_id, None)


class SQLiteSessionStorage:
    """One row per session holding its export document."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._initialize_schema()

    def load_sessions(self) -> list[Session]:
        sessions: list[Session] = []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT session_id, document_json
                FROM chat_sessions
                ORDER BY updated_at DESC
                """,
            ).fetchall()
        for row in rows:
            session_id = str(row["session_id"])
            document = safe_json_loads(str(row["document_json"]))
            try:
                sessions.append(import_session(document))
            except ValidationError as exc:
                logger.warning(
                    "Skipping unreadable stored session",
                    extra={"session_id": session_id, "error": str(exc)},
                )
        return sessions

    def save_session(self, session: Session) -> None:
        document = json.dumps(export_session(session), ensure_ascii=False)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (session_id, updated_at, document_json)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id)
                DO UPDATE SET
                    updated_at=excluded.updated_at,
                    document_json=excluded.document_json
                """,
                (session.id, session.updated_at, document),
            )
            conn.commit()

    def delete_sessions(self, session_ids: Sequence[str]) -> None:
        if not session_ids:
            return
        placeholders = ", ".join("?" for _ in session_ids)
        with self._connect() as conn:
            conn.execute(
                f"DELETE FROM chat_sessions WHERE session_id IN ({placeholders})",
                tuple(session_ids),
            )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize_schema(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    session_id TEXT PRIMARY KEY,
                    updated_at TEXT NOT NULL,
                    document_json TEXT NOT NULL
                )
                """,
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_chat_sessions_updated
                ON chat_sessions (updated_at)
                """,
            )
            conn.commit()
