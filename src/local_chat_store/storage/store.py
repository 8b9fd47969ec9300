from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from local_chat_store.storage.errors import (
    ConstraintViolationError,
    ReadCancelledError,
    ResourceBusyError,
    SchemaMismatchError,
    StoreError,
    TransactionFailedError,
)
from local_chat_store.storage.schema import Migration, SchemaManager, StoreCallback

# SQLite gained PRAGMA defer_foreign_keys in 3.8.0.
_SUPPORTS_DEFER_FOREIGN_KEYS = sqlite3.sqlite_version_info >= (3, 8, 0)


def _is_busy(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _on_busy_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(f"Chat store is busy. Retrying in {wait:.2f}s (attempt {attempt})...")


def translate_error(operation: str, exc: sqlite3.Error) -> StoreError:
    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintViolationError(operation, str(exc))
    if _is_busy(exc):
        return ResourceBusyError(f"{operation}: {exc}")
    return TransactionFailedError(operation, str(exc))


class ChatStore:
    """Owns the SQLite connection and serializes every operation on it.

    One ``ChatStore`` is created explicitly by the application and passed to
    ``SessionStore``, ``MessageStore`` and the pruner. Writes run inside
    ``transaction()``; reads run inside ``read()``. Both hold the same lock, so
    a reader never sees a cascade that is only half applied.
    """

    def __init__(
        self,
        db_path: str,
        *,
        allow_destructive_migration: bool = False,
        migrations: Iterable[Migration] = (),
        callbacks: Iterable[StoreCallback] = (),
        busy_timeout_ms: int = 5000,
        busy_retry_attempts: int = 5,
        fetch_batch_size: int = 200,
        schema: SchemaManager | None = None,
    ):
        self._db_path = db_path
        self._in_memory = db_path == ":memory:"
        if not self._in_memory:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=max(0, busy_timeout_ms) / 1000,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._busy_retry_attempts = max(1, busy_retry_attempts)
        self._fetch_batch_size = max(1, fetch_batch_size)
        self._schema = schema or SchemaManager(
            migrations=migrations,
            allow_destructive_migration=allow_destructive_migration,
            callbacks=callbacks,
        )
        try:
            self._conn.execute("PRAGMA foreign_keys = ON")
            if not self._in_memory:
                self._conn.execute("PRAGMA journal_mode = WAL").fetchone()
            with self.transaction("open schema"):
                self._schema.open(self._conn)
            self._schema.notify_open(self._conn)
        except sqlite3.Error as exc:
            self._conn.close()
            if _is_busy(exc):
                raise translate_error("open chat store", exc) from exc
            raise SchemaMismatchError(f"Could not open chat store at {db_path}: {exc}") from exc
        except BaseException:
            self._conn.close()
            raise
        logger.debug(f"Opened chat store at {db_path} (schema v{self._schema.version})")

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def schema(self) -> SchemaManager:
        return self._schema

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> ChatStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[sqlite3.Connection]:
        """Run the body as one atomic unit.

        Commits when the body finishes, rolls back on any exception. A nested
        call joins the enclosing transaction. ``sqlite3`` errors are re-raised
        as ``StoreError`` subclasses once the rollback has happened.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            self._begin(operation)
            self._depth = 1
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException as exc:
                self._rollback(operation, exc)
                if isinstance(exc, sqlite3.Error):
                    raise translate_error(operation, exc) from exc
                raise
            finally:
                self._depth = 0

    @contextmanager
    def read(self, operation: str = "read") -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise translate_error(operation, exc) from exc

    def execute(self, query: str, params: tuple[Any, ...] = (), *, operation: str = "execute") -> int:
        """Run one mutating statement in its own transaction and return the affected row count."""
        with self.transaction(operation) as conn:
            return conn.execute(query, params).rowcount

    def query(
        self,
        query: str,
        params: tuple[Any, ...] = (),
        *,
        operation: str = "query",
        cancel: threading.Event | None = None,
    ) -> list[sqlite3.Row]:
        rows: list[sqlite3.Row] = []
        with self.read(operation) as conn:
            cursor = conn.execute(query, params)
            try:
                while True:
                    if cancel is not None and cancel.is_set():
                        raise ReadCancelledError(f"{operation} was cancelled")
                    batch = cursor.fetchmany(self._fetch_batch_size)
                    if not batch:
                        break
                    rows.extend(batch)
            finally:
                cursor.close()
        return rows

    def clear_all_tables(self) -> None:
        """Delete every row from every table, then reclaim the freed space."""
        with self._lock:
            try:
                if not _SUPPORTS_DEFER_FOREIGN_KEYS:
                    self._conn.execute("PRAGMA foreign_keys = OFF")
                with self.transaction("clear all tables") as conn:
                    if _SUPPORTS_DEFER_FOREIGN_KEYS:
                        conn.execute("PRAGMA defer_foreign_keys = ON")
                    for table in reversed(self._schema.table_names):
                        conn.execute(f"DELETE FROM `{table}`")
            finally:
                if not _SUPPORTS_DEFER_FOREIGN_KEYS:
                    self._conn.execute("PRAGMA foreign_keys = ON")
                self._reclaim_space()
        logger.info("Cleared all chat store tables")

    def foreign_keys_enabled(self) -> bool:
        with self.read("foreign key status") as conn:
            return bool(conn.execute("PRAGMA foreign_keys").fetchone()[0])

    def integrity_check(self) -> list[str]:
        problems: list[str] = []
        with self.read("integrity check") as conn:
            for row in conn.execute("PRAGMA integrity_check").fetchall():
                if str(row[0]) != "ok":
                    problems.append(str(row[0]))
            for row in conn.execute("PRAGMA foreign_key_check").fetchall():
                problems.append(f"foreign key violation in {row[0]} (rowid {row[1]}) referencing {row[2]}")
        return problems

    def _begin(self, operation: str) -> None:
        try:
            for attempt in Retrying(
                retry=retry_if_exception(_is_busy),
                wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
                stop=stop_after_attempt(self._busy_retry_attempts),
                before_sleep=_on_busy_retry,
                reraise=True,
            ):
                with attempt:
                    self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise translate_error(operation, exc) from exc

    def _rollback(self, operation: str, cause: BaseException) -> None:
        if not self._conn.in_transaction:
            return
        logger.debug(f"Rolling back {operation}: {type(cause).__name__}: {cause}")
        self._conn.execute("ROLLBACK")

    def _reclaim_space(self) -> None:
        # VACUUM cannot run inside a transaction; skip when an outer unit is still open.
        if self._depth > 0 or self._conn.in_transaction:
            return
        try:
            if not self._in_memory:
                self._conn.execute("PRAGMA wal_checkpoint(FULL)").fetchall()
            self._conn.execute("VACUUM")
        except sqlite3.Error as ex:
            logger.warning(f"Space reclamation after clear skipped: {ex}")
