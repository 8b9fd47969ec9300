from __future__ import annotations

import threading

from loguru import logger

from local_chat_store.storage.models import ChatSession
from local_chat_store.storage.store import ChatStore

# A plain INSERT OR REPLACE deletes the old row first, which would cascade to its messages.
_UPSERT_SESSION = """
    INSERT INTO chat_sessions (id, user_id, title, is_offline_only, last_updated)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        user_id = excluded.user_id,
        title = excluded.title,
        is_offline_only = excluded.is_offline_only,
        last_updated = excluded.last_updated
"""

_UPDATE_SESSION = """
    UPDATE chat_sessions
    SET user_id = ?, title = ?, is_offline_only = ?, last_updated = ?
    WHERE id = ?
"""

_SELECT_SESSIONS_FOR_USER = """
    SELECT id, user_id, title, is_offline_only, last_updated
    FROM chat_sessions
    WHERE user_id = ?
    ORDER BY last_updated DESC
"""

_SELECT_SESSION = """
    SELECT id, user_id, title, is_offline_only, last_updated
    FROM chat_sessions
    WHERE id = ?
    LIMIT 1
"""

_DELETE_SESSIONS_FOR_USER = "DELETE FROM chat_sessions WHERE user_id = ?"


class SessionStore:
    def __init__(self, store: ChatStore):
        self._store = store

    def insert_session(self, session: ChatSession) -> None:
        self._store.execute(_UPSERT_SESSION, session.to_params(), operation="insert session")

    def update_session(self, session: ChatSession) -> int:
        """Overwrite every field of the session with the same id.

        Returns the number of rows changed; 0 means no such session exists.
        """
        params = (*session.to_params()[1:], session.id)
        count = self._store.execute(_UPDATE_SESSION, params, operation="update session")
        if count == 0:
            logger.debug(f"update_session: no session with id {session.id}")
        return count

    def get_session(self, session_id: str) -> ChatSession | None:
        rows = self._store.query(_SELECT_SESSION, (session_id,), operation="get session")
        if not rows:
            return None
        return ChatSession.from_row(rows[0])

    def list_sessions(self, user_id: str, *, cancel: threading.Event | None = None) -> list[ChatSession]:
        rows = self._store.query(
            _SELECT_SESSIONS_FOR_USER,
            (user_id,),
            operation="list sessions",
            cancel=cancel,
        )
        return [ChatSession.from_row(row) for row in rows]

    def delete_sessions_for_user(self, user_id: str) -> int:
        """Delete all of a user's sessions. Their messages go with them through the FK cascade."""
        count = self._store.execute(_DELETE_SESSIONS_FOR_USER, (user_id,), operation="delete sessions for user")
        logger.info(f"Deleted {count} session(s) for user {user_id}")
        return count
