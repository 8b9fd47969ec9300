from __future__ import annotations

import asyncio

from loguru import logger

from local_chat_store.storage.pruning import (
    DEFAULT_OFFLINE_RETENTION_DAYS,
    offline_threshold,
    prune_offline_messages,
)
from local_chat_store.storage.store import ChatStore


class AutoPruner:
    """Runs the offline retention pass on a fixed interval in the background."""

    def __init__(
        self,
        store: ChatStore,
        *,
        retention_days: int = DEFAULT_OFFLINE_RETENTION_DAYS,
        interval_seconds: float = 24 * 60 * 60,
        run_on_start: bool = True,
    ):
        self._store = store
        self._retention_days = max(0, retention_days)
        self._interval_seconds = max(0.05, interval_seconds)
        self._run_on_start = run_on_start
        self._task: asyncio.Task | None = None
        self._last_removed: int | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_removed(self) -> int | None:
        return self._last_removed

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> int:
        threshold = offline_threshold(self._retention_days)
        removed = await asyncio.to_thread(prune_offline_messages, self._store, threshold)
        self._last_removed = removed
        return removed

    async def _run(self) -> None:
        if self._run_on_start:
            await self._run_guarded()
        while True:
            await asyncio.sleep(self._interval_seconds)
            await self._run_guarded()

    async def _run_guarded(self) -> None:
        try:
            await self.run_once()
        except Exception:
            logger.exception("Scheduled offline prune failed")
