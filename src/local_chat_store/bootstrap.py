from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger

from local_chat_store.app_config import AppConfig, resolve_db_path
from local_chat_store.logging_config import setup_logging
from local_chat_store.storage import (
    AsyncChatStore,
    AutoPruner,
    ChatStore,
    MessageStore,
    Migration,
    SessionStore,
    StoreCallback,
)


class LoggingResetListener(StoreCallback):
    def on_destructive_reset(self, conn) -> None:
        logger.warning("Chat store schema was reset; all local sessions and messages were discarded.")


@dataclass
class StoreRuntime:
    store: ChatStore
    sessions: SessionStore
    messages: MessageStore
    async_store: AsyncChatStore
    auto_pruner: AutoPruner
    log_descriptions: list[str]

    def close(self) -> None:
        self.store.close()


def open_store(
    app: AppConfig,
    *,
    migrations: Iterable[Migration] = (),
    callbacks: Iterable[StoreCallback] = (),
) -> ChatStore:
    return ChatStore(
        resolve_db_path(app),
        allow_destructive_migration=app.allow_destructive_migration,
        migrations=migrations,
        callbacks=[LoggingResetListener(), *callbacks],
        busy_timeout_ms=app.busy_timeout_ms,
        busy_retry_attempts=app.busy_retry_attempts,
    )


def bootstrap_runtime(
    app: AppConfig,
    *,
    migrations: Iterable[Migration] = (),
    callbacks: Iterable[StoreCallback] = (),
) -> StoreRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)
    store = open_store(app, migrations=migrations, callbacks=callbacks)
    return StoreRuntime(
        store=store,
        sessions=SessionStore(store),
        messages=MessageStore(store),
        async_store=AsyncChatStore(store),
        auto_pruner=AutoPruner(
            store,
            retention_days=app.offline_retention_days,
            interval_seconds=app.prune_interval_hours * 60 * 60,
        ),
        log_descriptions=log_descriptions,
    )
