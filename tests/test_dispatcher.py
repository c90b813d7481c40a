"""Tests for handler dispatch, retry scheduling and attempt classification."""

import asyncio
import threading

import pytest

from hookwire.core.bus import NotificationType
from hookwire.core.dedup import MemoryEventStore, SqliteEventStore
from hookwire.core.dispatcher import Dispatcher
from hookwire.core.registry import HandlerRegistry
from hookwire.core.runners import InlineRunner, QueuedRunner
from hookwire.errors import HandlerFatalError, HandlerRetryableError
from hookwire.models import AttemptOutcome, EventStatus, HandlerState


class Harness:
    def __init__(self, sleep, observer, store=None, attempt_timeout=5.0):
        self.registry = HandlerRegistry()
        self.store = store if store is not None else MemoryEventStore()
        self.queued = QueuedRunner(worker_count=2, sleep=sleep)
        self.dispatcher = Dispatcher(
            self.registry,
            self.store,
            inline=InlineRunner(sleep=sleep),
            queued=self.queued,
            observer=observer,
            attempt_timeout=attempt_timeout,
        )

    async def run(self, event_id="evt_1", event_type="paid"):
        result = await self.store.register_if_new("acme", event_id, event_type, {"id": event_id})
        await self.dispatcher.dispatch(result.record)
        await self.queued.join()
        return result.record

    async def close(self):
        await self.queued.stop()


@pytest.fixture
async def harness(fake_sleep, observer):
    h = Harness(fake_sleep, observer)
    yield h
    await h.close()


class TestRetries:
    async def test_exhausts_max_attempts(self, harness, fake_sleep):
        calls = []

        async def always_fails(record):
            calls.append(record.event_id)
            raise RuntimeError("downstream unavailable")

        harness.registry.register(
            "acme", "paid", always_fails, name="h", max_attempts=3, retry_delays=[1, 2]
        )
        record = await harness.run()

        assert len(calls) == 3
        assert fake_sleep.delays == [1, 2]
        outcomes = [a.outcome for a in record.attempts_for("h")]
        assert outcomes == [
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.FATAL_FAILURE,
        ]
        assert [a.attempt_number for a in record.attempts] == [1, 2, 3]
        assert record.handler_states["h"] is HandlerState.FAILED
        assert record.status is EventStatus.COMPLETED
        assert record.failed_handlers == ["h"]

    async def test_last_delay_repeats(self, harness, fake_sleep):
        async def always_fails(record):
            raise HandlerRetryableError("try later")

        harness.registry.register(
            "acme", "paid", always_fails, name="h", max_attempts=4, retry_delays=[5]
        )
        await harness.run()
        assert fake_sleep.delays == [5, 5, 5]

    async def test_fatal_error_skips_remaining_attempts(self, harness, fake_sleep):
        calls = []

        async def rejects(record):
            calls.append(1)
            raise HandlerFatalError("account closed")

        harness.registry.register("acme", "paid", rejects, name="h", max_attempts=5)
        record = await harness.run()

        assert len(calls) == 1
        assert fake_sleep.delays == []
        assert record.attempts[0].outcome is AttemptOutcome.FATAL_FAILURE
        assert "account closed" in record.attempts[0].error
        assert record.handler_states["h"] is HandlerState.FAILED

    async def test_success_after_failures(self, harness):
        calls = []

        async def flaky(record):
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")

        harness.registry.register("acme", "paid", flaky, name="h", retry_delays=[1])
        record = await harness.run()

        assert [a.outcome for a in record.attempts] == [
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.SUCCESS,
        ]
        assert record.handler_states["h"] is HandlerState.SUCCEEDED
        assert record.failed_handlers == []
        assert record.attempts[0].error == "ConnectionError: reset"

    async def test_single_attempt(self, harness):
        async def fails(record):
            raise RuntimeError("nope")

        harness.registry.register("acme", "paid", fails, name="h", max_attempts=1)
        record = await harness.run()
        assert len(record.attempts) == 1
        assert record.attempts[0].outcome is AttemptOutcome.FATAL_FAILURE

    async def test_inline_handler_retries_on_queue(self, harness, fake_sleep):
        calls = []

        async def flaky(record):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first time")

        harness.registry.register(
            "acme", "paid", flaky, name="h", run_async=False, retry_delays=[7]
        )
        record = await harness.run()
        assert len(calls) == 2
        assert fake_sleep.delays == [7]
        assert record.handler_states["h"] is HandlerState.SUCCEEDED


class TestIndependence:
    async def test_sibling_failure_does_not_affect_others(self, harness):
        ran = []

        async def broken(record):
            raise HandlerFatalError("bad")

        async def healthy(record):
            ran.append(record.event_id)

        harness.registry.register("acme", "paid", broken, name="broken")
        harness.registry.register("acme", "paid", healthy, name="healthy")
        record = await harness.run()

        assert ran == ["evt_1"]
        assert record.handler_states == {
            "broken": HandlerState.FAILED,
            "healthy": HandlerState.SUCCEEDED,
        }
        assert record.status is EventStatus.COMPLETED
        assert record.failed_handlers == ["broken"]

    async def test_inline_handlers_run_in_priority_order(self, harness):
        order = []

        def make(name):
            async def handler(record):
                order.append(name)
            return handler

        harness.registry.register("acme", "paid", make("c"), name="c", priority=50, run_async=False)
        harness.registry.register("acme", "paid", make("a"), name="a", priority=10, run_async=False)
        harness.registry.register("acme", "paid", make("b"), name="b", priority=10, run_async=False)
        await harness.run()
        assert order == ["a", "b", "c"]

    async def test_other_event_type_not_dispatched(self, harness):
        ran = []

        async def handler(record):
            ran.append(1)

        harness.registry.register("acme", "refunded", handler)
        record = await harness.run(event_type="paid")
        assert ran == []
        assert record.status is EventStatus.COMPLETED


class TestNoHandlers:
    async def test_completed_immediately(self, harness, observer):
        record = await harness.run()
        assert record.status is EventStatus.COMPLETED
        assert record.attempts == []
        completed = observer.of_type(NotificationType.EVENT_COMPLETED)
        assert len(completed) == 1
        assert completed[0].data["failed_handlers"] == []


class TestInvocation:
    async def test_sync_handler_runs_off_the_event_loop(self, harness):
        threads = []

        def blocking(record):
            threads.append(threading.get_ident())

        harness.registry.register("acme", "paid", blocking, name="h")
        record = await harness.run()
        assert record.handler_states["h"] is HandlerState.SUCCEEDED
        assert threads and threads[0] != threading.get_ident()

    async def test_sync_handler_exception_is_retryable(self, harness):
        def blocking(record):
            raise ValueError("bad data")

        harness.registry.register("acme", "paid", blocking, name="h", max_attempts=2, retry_delays=[1])
        record = await harness.run()
        assert [a.outcome for a in record.attempts] == [
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.FATAL_FAILURE,
        ]

    async def test_timeout_is_retryable(self, fake_sleep, observer):
        h = Harness(fake_sleep, observer, attempt_timeout=0.05)
        calls = []

        async def slow(record):
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(5)

        h.registry.register("acme", "paid", slow, name="h", retry_delays=[1])
        try:
            record = await h.run()
        finally:
            await h.close()

        assert record.attempts[0].outcome is AttemptOutcome.RETRYABLE_FAILURE
        assert "timed out" in record.attempts[0].error
        assert record.attempts[1].outcome is AttemptOutcome.SUCCESS

    async def test_long_error_is_truncated(self, harness):
        async def verbose(record):
            raise HandlerFatalError("x" * 5000)

        harness.registry.register("acme", "paid", verbose, name="h")
        record = await harness.run()
        assert len(record.attempts[0].error) == 1000


class TestNotifications:
    async def test_action_notifications(self, harness, observer):
        calls = []

        async def flaky(record):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("once")

        harness.registry.register("acme", "paid", flaky, name="h", retry_delays=[1])
        await harness.run()

        failed = observer.of_type(NotificationType.ACTION_FAILED)
        assert len(failed) == 1
        assert failed[0].data["will_retry"] is True
        assert failed[0].data["attempt"] == 1

        completed = observer.of_type(NotificationType.ACTION_COMPLETED)
        assert len(completed) == 1
        assert completed[0].data["attempt"] == 2
        assert completed[0].data["duration"] >= 0

        assert len(observer.of_type(NotificationType.EVENT_COMPLETED)) == 1

    async def test_action_started_precedes_each_attempt(self, harness, observer):
        async def fails(record):
            raise RuntimeError("down")

        harness.registry.register("acme", "paid", fails, name="h", max_attempts=2, retry_delays=[1])
        await harness.run()

        action_types = {
            NotificationType.ACTION_STARTED,
            NotificationType.ACTION_FAILED,
            NotificationType.ACTION_COMPLETED,
        }
        sequence = [
            (n.type, n.data["attempt"]) for n in observer.notifications if n.type in action_types
        ]
        assert sequence == [
            (NotificationType.ACTION_STARTED, 1),
            (NotificationType.ACTION_FAILED, 1),
            (NotificationType.ACTION_STARTED, 2),
            (NotificationType.ACTION_FAILED, 2),
        ]
        started = observer.of_type(NotificationType.ACTION_STARTED)[0]
        assert started.data == {"event_id": "evt_1", "handler": "h", "attempt": 1}

    async def test_exhausted_attempt_reports_no_retry(self, harness, observer):
        async def fails(record):
            raise RuntimeError("down")

        harness.registry.register("acme", "paid", fails, name="h", max_attempts=2, retry_delays=[1])
        await harness.run()
        flags = [n.data["will_retry"] for n in observer.of_type(NotificationType.ACTION_FAILED)]
        assert flags == [True, False]

    async def test_raising_observer_does_not_break_dispatch(self, fake_sleep):
        class Broken:
            def notify(self, notification):
                raise RuntimeError("observer down")

        h = Harness(fake_sleep, Broken())
        ran = []

        async def handler(record):
            ran.append(1)

        h.registry.register("acme", "paid", handler, name="h")
        try:
            record = await h.run()
        finally:
            await h.close()
        assert ran == [1]
        assert record.status is EventStatus.COMPLETED


class TestPersistence:
    async def test_attempts_saved_to_sqlite(self, tmp_path, fake_sleep, observer):
        store = SqliteEventStore(tmp_path / "events.db")
        await store.start()
        h = Harness(fake_sleep, observer, store=store)

        async def fails(record):
            raise RuntimeError("down")

        h.registry.register("acme", "paid", fails, name="h", max_attempts=2, retry_delays=[1])
        try:
            await h.run()
            loaded = await store.get("acme", "evt_1")
        finally:
            await h.close()
            await store.stop()

        assert loaded.status is EventStatus.COMPLETED
        assert loaded.handler_states == {"h": HandlerState.FAILED}
        assert [a.attempt_number for a in loaded.attempts] == [1, 2]
