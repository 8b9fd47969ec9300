from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from local_chat_store.storage.messages import MessageStore
from local_chat_store.storage.models import ChatSession, Message
from local_chat_store.storage.pruning import prune_offline_messages
from local_chat_store.storage.sessions import SessionStore
from local_chat_store.storage.store import ChatStore

T = TypeVar("T")


class AsyncChatStore:
    """Awaitable front for the blocking stores.

    Each call runs on a worker thread. Cancelling an awaiting ``list_*`` call
    stops the underlying read at its next batch; writes already started are
    allowed to finish and commit or roll back as a whole.
    """

    def __init__(self, store: ChatStore):
        self._store = store
        self._sessions = SessionStore(store)
        self._messages = MessageStore(store)

    @property
    def store(self) -> ChatStore:
        return self._store

    async def insert_session(self, session: ChatSession) -> None:
        await asyncio.to_thread(self._sessions.insert_session, session)

    async def update_session(self, session: ChatSession) -> int:
        return await asyncio.to_thread(self._sessions.update_session, session)

    async def get_session(self, session_id: str) -> ChatSession | None:
        return await asyncio.to_thread(self._sessions.get_session, session_id)

    async def list_sessions(self, user_id: str) -> list[ChatSession]:
        return await self._cancellable_read(self._sessions.list_sessions, user_id)

    async def delete_sessions_for_user(self, user_id: str) -> int:
        return await asyncio.to_thread(self._sessions.delete_sessions_for_user, user_id)

    async def insert_message(self, message: Message) -> None:
        await asyncio.to_thread(self._messages.insert_message, message)

    async def list_messages(self, session_id: str) -> list[Message]:
        return await self._cancellable_read(self._messages.list_messages, session_id)

    async def prune_offline_messages(self, threshold_ms: int) -> int:
        return await asyncio.to_thread(prune_offline_messages, self._store, threshold_ms)

    async def clear_all_tables(self) -> None:
        await asyncio.to_thread(self._store.clear_all_tables)

    async def _cancellable_read(self, func: Callable[..., T], *args: Any) -> T:
        cancel = threading.Event()
        try:
            return await asyncio.to_thread(func, *args, cancel=cancel)
        except asyncio.CancelledError:
            cancel.set()
            raise
