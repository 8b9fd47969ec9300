import asyncio
import threading
from unittest.mock import patch

from local_chat_store.storage import AsyncChatStore, AutoPruner, ConstraintViolationError
from tests.storage.base import StoreTestCase, make_message, make_session


class AsyncChatStoreTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._async = AsyncChatStore(self._store)

    def test_async_operations_round_trip(self) -> None:
        async def scenario() -> tuple[list, list]:
            await self._async.insert_session(make_session("s1", offline=True))
            await self._async.insert_message(make_message("m2", "s1", timestamp=20))
            await self._async.insert_message(make_message("m1", "s1", timestamp=10))
            return await self._async.list_sessions("user-1"), await self._async.list_messages("s1")

        sessions, messages = asyncio.run(scenario())

        self.assertEqual(["s1"], [s.id for s in sessions])
        self.assertEqual(["m1", "m2"], [m.id for m in messages])

    def test_async_errors_propagate(self) -> None:
        async def scenario() -> None:
            await self._async.insert_message(make_message("m1", "missing", timestamp=1))

        with self.assertRaises(ConstraintViolationError):
            asyncio.run(scenario())

    def test_async_prune_and_delete(self) -> None:
        async def scenario() -> tuple[int, int]:
            await self._async.insert_session(make_session("s1", offline=True))
            await self._async.insert_message(make_message("m1", "s1", timestamp=1))
            removed = await self._async.prune_offline_messages(100)
            deleted = await self._async.delete_sessions_for_user("user-1")
            return removed, deleted

        self.assertEqual((1, 1), asyncio.run(scenario()))
        self.assertEqual(0, self.count("chat_sessions"))

    def test_cancelling_a_list_call_leaves_the_store_usable(self) -> None:
        self._sessions.insert_session(make_session("s1"))
        self._messages.insert_message(make_message("m1", "s1", timestamp=1))
        inside = threading.Event()
        release = threading.Event()

        def hold_write_lock() -> None:
            with self._store.transaction("hold"):
                inside.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold_write_lock)
        holder.start()
        self.assertTrue(inside.wait(timeout=5))

        async def scenario() -> None:
            task = asyncio.create_task(self._async.list_messages("s1"))
            await asyncio.sleep(0.05)
            task.cancel()
            try:
                with self.assertRaises(asyncio.CancelledError):
                    await task
            finally:
                release.set()

        asyncio.run(scenario())
        holder.join(timeout=5)

        self.assertEqual(["m1"], [m.id for m in self._messages.list_messages("s1")])


class AutoPrunerTests(StoreTestCase):
    def test_run_once_prunes_old_offline_messages(self) -> None:
        self._sessions.insert_session(make_session("offline", offline=True))
        self._sessions.insert_session(make_session("online", offline=False))
        self._messages.insert_message(make_message("old-offline", "offline", timestamp=1))
        self._messages.insert_message(make_message("old-online", "online", timestamp=1))
        pruner = AutoPruner(self._store, retention_days=90)

        removed = asyncio.run(pruner.run_once())

        self.assertEqual(1, removed)
        self.assertEqual(1, pruner.last_removed)
        self.assertEqual([], self._messages.list_messages("offline"))
        self.assertEqual(["old-online"], [m.id for m in self._messages.list_messages("online")])

    def test_background_task_runs_on_start_and_stops_on_close(self) -> None:
        self._sessions.insert_session(make_session("offline", offline=True))
        self._messages.insert_message(make_message("m1", "offline", timestamp=1))
        pruner = AutoPruner(self._store, retention_days=1, interval_seconds=0.05)

        async def scenario() -> None:
            await pruner.start()
            self.assertTrue(pruner.running)
            await asyncio.sleep(0.12)
            await pruner.close()
            self.assertFalse(pruner.running)

        asyncio.run(scenario())

        self.assertEqual(0, self.count("messages"))

    def test_unexpected_failure_is_logged_and_the_loop_keeps_running(self) -> None:
        calls: list[int] = []

        def flaky_prune(store, threshold_ms) -> int:
            calls.append(threshold_ms)
            if len(calls) == 1:
                raise RuntimeError("disk went away")
            return 0

        pruner = AutoPruner(self._store, interval_seconds=0.05)

        async def scenario() -> None:
            await pruner.start()
            await asyncio.sleep(0.2)
            self.assertTrue(pruner.running)
            await pruner.close()

        with patch("local_chat_store.storage.auto_prune.prune_offline_messages", flaky_prune):
            asyncio.run(scenario())

        self.assertGreaterEqual(len(calls), 2)
        self.assertEqual(0, pruner.last_removed)
        self.assertFalse(pruner.running)
