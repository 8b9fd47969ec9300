import sqlite3
import threading

from local_chat_store.storage import (
    ChatStore,
    ConstraintViolationError,
    ReadCancelledError,
    ResourceBusyError,
    SessionStore,
    TransactionFailedError,
)
from tests.storage.base import StoreTestCase, make_message, make_session


class CancelAfterChecks(threading.Event):
    """Reports itself set once a read has checked it ``allowed`` times."""

    def __init__(self, allowed: int) -> None:
        super().__init__()
        self._allowed = allowed
        self.checks = 0

    def is_set(self) -> bool:
        self.checks += 1
        if self.checks > self._allowed:
            self.set()
        return super().is_set()


class TransactionTests(StoreTestCase):
    def test_exception_in_body_rolls_back_every_statement(self) -> None:
        with self.assertRaises(RuntimeError):
            with self._store.transaction("two inserts") as conn:
                conn.execute(
                    "INSERT INTO chat_sessions (id, user_id, title, is_offline_only, last_updated) "
                    "VALUES ('s1', 'u', 't', 0, 1)"
                )
                raise RuntimeError("boom")

        self.assertEqual(0, self.count("chat_sessions"))
        self.assertFalse(self._store.in_transaction)

    def test_constraint_violation_mid_unit_rolls_back_earlier_writes(self) -> None:
        with self.assertRaises(ConstraintViolationError):
            with self._store.transaction("session then orphan") as conn:
                conn.execute(
                    "INSERT INTO chat_sessions (id, user_id, title, is_offline_only, last_updated) "
                    "VALUES ('s1', 'u', 't', 0, 1)"
                )
                conn.execute(
                    "INSERT INTO messages (id, session_id, role, content, timestamp) "
                    "VALUES ('m1', 'missing', 'user', 'x', 1)"
                )

        self.assertEqual(0, self.count("chat_sessions"))
        self.assertEqual(0, self.count("messages"))

    def test_storage_fault_surfaces_as_transaction_failure(self) -> None:
        with self.assertRaises(TransactionFailedError) as ctx:
            with self._store.transaction("bad statement") as conn:
                conn.execute(
                    "INSERT INTO chat_sessions (id, user_id, title, is_offline_only, last_updated) "
                    "VALUES ('s1', 'u', 't', 0, 1)"
                )
                conn.execute("INSERT INTO no_such_table VALUES (1)")

        self.assertIsInstance(ctx.exception.__cause__, sqlite3.OperationalError)
        self.assertEqual(0, self.count("chat_sessions"))

    def test_nested_transaction_joins_outer_unit(self) -> None:
        with self.assertRaises(RuntimeError):
            with self._store.transaction("outer"):
                self._sessions.insert_session(make_session("s1"))
                self.assertTrue(self._store.in_transaction)
                raise RuntimeError("abort outer")

        self.assertIsNone(self._sessions.get_session("s1"))

    def test_cancelled_read_raises_and_leaves_data_intact(self) -> None:
        self._sessions.insert_session(make_session("s1"))
        cancel = threading.Event()
        cancel.set()

        with self.assertRaises(ReadCancelledError):
            self._sessions.list_sessions("user-1", cancel=cancel)

        self.assertEqual(1, len(self._sessions.list_sessions("user-1")))

    def test_cancel_during_read_stops_between_batches(self) -> None:
        for i in range(5):
            self._sessions.insert_session(make_session(f"s{i}", last_updated=i))
        store = ChatStore(self._db_path, fetch_batch_size=1)
        cancel = CancelAfterChecks(2)
        try:
            with self.assertRaises(ReadCancelledError):
                SessionStore(store).list_sessions("user-1", cancel=cancel)
            self.assertEqual(3, cancel.checks)
            self.assertEqual(5, len(SessionStore(store).list_sessions("user-1")))
        finally:
            store.close()

    def test_reader_waits_for_open_write_to_commit(self) -> None:
        self._sessions.insert_session(make_session("s1"))
        inside = threading.Event()
        release = threading.Event()
        seen: list[int] = []

        def writer() -> None:
            with self._store.transaction("three messages"):
                for i in range(3):
                    self._messages.insert_message(make_message(f"m{i}", "s1", timestamp=i))
                inside.set()
                release.wait(timeout=5)

        def reader() -> None:
            seen.append(len(self._messages.list_messages("s1")))

        write_thread = threading.Thread(target=writer)
        write_thread.start()
        self.assertTrue(inside.wait(timeout=5))
        read_thread = threading.Thread(target=reader)
        read_thread.start()
        read_thread.join(timeout=0.2)
        self.assertTrue(read_thread.is_alive())
        release.set()
        write_thread.join(timeout=5)
        read_thread.join(timeout=5)

        self.assertEqual([3], seen)

    def test_lock_contention_surfaces_as_resource_busy(self) -> None:
        contender = ChatStore(self._db_path, busy_timeout_ms=0, busy_retry_attempts=2)
        blocker = sqlite3.connect(self._db_path, isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with self.assertRaises(ResourceBusyError):
                SessionStore(contender).insert_session(make_session("s1"))
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
            contender.close()

        self.assertEqual(0, self.count("chat_sessions"))


class ClearAllTablesTests(StoreTestCase):
    def test_clear_empties_both_tables_and_keeps_store_usable(self) -> None:
        self._sessions.insert_session(make_session("s1"))
        self._sessions.insert_session(make_session("s2", user_id="other"))
        self._messages.insert_message(make_message("m1", "s1", timestamp=1))
        self._messages.insert_message(make_message("m2", "s2", timestamp=2))

        self._store.clear_all_tables()

        self.assertEqual(0, self.count("chat_sessions"))
        self.assertEqual(0, self.count("messages"))
        self.assertTrue(self._store.foreign_keys_enabled())
        self.assertEqual([], self._store.integrity_check())

        self._sessions.insert_session(make_session("s3"))
        with self.assertRaises(ConstraintViolationError):
            self._messages.insert_message(make_message("orphan", "s1", timestamp=3))
        self.assertEqual(["s3"], [s.id for s in self._sessions.list_sessions("user-1")])

    def test_clear_on_empty_store_is_harmless(self) -> None:
        self._store.clear_all_tables()
        self.assertEqual(0, self.count("chat_sessions"))
