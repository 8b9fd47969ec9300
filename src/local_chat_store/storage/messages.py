from __future__ import annotations

import threading

from local_chat_store.storage.models import KNOWN_ROLES, Message
from local_chat_store.storage.store import ChatStore

_UPSERT_MESSAGE = """
    INSERT OR REPLACE INTO messages (id, session_id, role, content, timestamp, image_path)
    VALUES (?, ?, ?, ?, ?, ?)
"""

_SELECT_MESSAGES_FOR_SESSION = """
    SELECT id, session_id, role, content, timestamp, image_path
    FROM messages
    WHERE session_id = ?
    ORDER BY timestamp ASC, rowid ASC
"""


class MessageStore:
    def __init__(self, store: ChatStore):
        self._store = store

    def insert_message(self, message: Message) -> None:
        """Insert or replace a message by id.

        Raises ``ConstraintViolationError`` when ``message.session_id`` does not
        name an existing session; nothing is written in that case.
        """
        if message.role not in KNOWN_ROLES:
            raise ValueError(f"Unknown message role: {message.role!r}")
        self._store.execute(_UPSERT_MESSAGE, message.to_params(), operation="insert message")

    def list_messages(self, session_id: str, *, cancel: threading.Event | None = None) -> list[Message]:
        rows = self._store.query(
            _SELECT_MESSAGES_FOR_SESSION,
            (session_id,),
            operation="list messages",
            cancel=cancel,
        )
        return [Message.from_row(row) for row in rows]
