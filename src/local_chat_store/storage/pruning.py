from __future__ import annotations

import time

from loguru import logger

from local_chat_store.storage.store import ChatStore

DEFAULT_OFFLINE_RETENTION_DAYS = 90

_MILLIS_PER_DAY = 24 * 60 * 60 * 1000

_PRUNE_OFFLINE_MESSAGES = """
    DELETE FROM messages
    WHERE session_id IN (SELECT id FROM chat_sessions WHERE is_offline_only = 1)
      AND timestamp < ?
"""


def current_time_ms() -> int:
    return int(time.time() * 1000)


def offline_threshold(retention_days: int = DEFAULT_OFFLINE_RETENTION_DAYS, *, now_ms: int | None = None) -> int:
    current = current_time_ms() if now_ms is None else now_ms
    return current - max(0, retention_days) * _MILLIS_PER_DAY


def prune_offline_messages(store: ChatStore, threshold_ms: int) -> int:
    """Delete messages older than ``threshold_ms`` from offline-only sessions.

    Sessions themselves are kept, and messages of sessions that are not
    offline-only are never touched. Returns the number of messages removed.
    """
    removed = store.execute(_PRUNE_OFFLINE_MESSAGES, (int(threshold_ms),), operation="prune offline messages")
    logger.info(f"Pruned {removed} offline message(s) older than {threshold_ms}")
    return removed
