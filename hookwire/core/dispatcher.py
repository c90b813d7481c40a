"""Handler dispatch with per-attempt classification and scheduled retries."""

from __future__ import annotations

import asyncio
import inspect
import time

from hookwire.core.bus import (
    ActionCompleted,
    ActionFailed,
    ActionStarted,
    EventCompleted,
    Observer,
    safe_notify,
)
from hookwire.core.dedup import EventStore
from hookwire.core.registry import HandlerRegistration, HandlerRegistry
from hookwire.core.runners import Job, TaskRunner
from hookwire.errors import HandlerFatalError
from hookwire.models import (
    ActionAttempt,
    AttemptOutcome,
    EventRecord,
    EventStatus,
    HandlerState,
    utcnow,
)
from hookwire.utils.logging import get_logger

log = get_logger(__name__)


def _describe(exc: BaseException) -> str:
    message = str(exc)
    detail = f"{type(exc).__name__}: {message}" if message else type(exc).__name__
    return detail[:1000]


class Dispatcher:
    """Runs every registered handler for an event until each one is terminal.

    Each handler moves through pending -> running -> succeeded | failed, with
    retryable failures going back to pending after their scheduled delay.
    Handlers are independent; one handler's failure never affects another.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        store: EventStore,
        inline: TaskRunner,
        queued: TaskRunner,
        observer: Observer | None = None,
        attempt_timeout: float | None = 30.0,
    ) -> None:
        self._registry = registry
        self._store = store
        self._inline = inline
        self._queued = queued
        self._observer = observer
        self._attempt_timeout = attempt_timeout

    async def dispatch(self, record: EventRecord) -> None:
        """Resolve handlers for a newly created record and schedule their first attempts."""
        registrations = self._registry.handlers_for(record.provider, record.event_type)

        if not registrations:
            record.status = EventStatus.COMPLETED
            await self._store.save(record)
            log.info(
                "event_unhandled",
                provider=record.provider,
                event_id=record.event_id,
                event_type=record.event_type,
            )
            self._event_completed(record)
            return

        record.handler_states = {r.name: HandlerState.PENDING for r in registrations}
        record.status = EventStatus.PROCESSING
        await self._store.save(record)

        for registration in registrations:
            runner = self._queued if registration.run_async else self._inline
            try:
                await runner.submit(self._job(record, registration, 1))
            except Exception:
                log.exception(
                    "dispatch_error",
                    provider=record.provider,
                    event_id=record.event_id,
                    handler=registration.name,
                )
                record.status = EventStatus.FAILED

        if record.status is EventStatus.FAILED:
            await self._store.save(record)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _job(self, record: EventRecord, registration: HandlerRegistration, attempt_number: int) -> Job:
        async def run() -> None:
            await self._attempt(record, registration, attempt_number)

        return run

    async def _attempt(
        self, record: EventRecord, registration: HandlerRegistration, attempt_number: int
    ) -> None:
        name = registration.name
        record.handler_states[name] = HandlerState.RUNNING
        started_at = utcnow()
        start = time.monotonic()
        safe_notify(self._observer, ActionStarted(
            provider=record.provider,
            data={"event_id": record.event_id, "handler": name, "attempt": attempt_number},
        ))

        outcome, error = await self._invoke(registration, record)
        exhausted = (
            outcome is AttemptOutcome.RETRYABLE_FAILURE
            and attempt_number >= registration.max_attempts
        )
        if exhausted:
            outcome = AttemptOutcome.FATAL_FAILURE

        record.attempts.append(ActionAttempt(name, attempt_number, started_at, outcome, error))
        will_retry = outcome is AttemptOutcome.RETRYABLE_FAILURE

        if outcome is AttemptOutcome.SUCCESS:
            record.handler_states[name] = HandlerState.SUCCEEDED
            log.info(
                "action_completed",
                provider=record.provider,
                event_id=record.event_id,
                handler=name,
                attempt=attempt_number,
            )
            safe_notify(self._observer, ActionCompleted(
                provider=record.provider,
                data={
                    "event_id": record.event_id,
                    "handler": name,
                    "attempt": attempt_number,
                    "duration": time.monotonic() - start,
                },
            ))
        else:
            record.handler_states[name] = (
                HandlerState.PENDING if will_retry else HandlerState.FAILED
            )
            log.warning(
                "action_failed",
                provider=record.provider,
                event_id=record.event_id,
                handler=name,
                attempt=attempt_number,
                error=error,
                will_retry=will_retry,
                exhausted=exhausted,
            )
            safe_notify(self._observer, ActionFailed(
                provider=record.provider,
                data={
                    "event_id": record.event_id,
                    "handler": name,
                    "attempt": attempt_number,
                    "error": error,
                    "will_retry": will_retry,
                },
            ))

        previous = record.status
        record.recalculate_status()
        await self._store.save(record)

        if will_retry:
            delay = registration.delay_for_attempt(attempt_number)
            log.info(
                "action_retry_scheduled",
                event_id=record.event_id,
                handler=name,
                next_attempt=attempt_number + 1,
                delay=delay,
            )
            await self._queued.submit(self._job(record, registration, attempt_number + 1), delay=delay)
        elif record.status is EventStatus.COMPLETED and previous is not EventStatus.COMPLETED:
            self._event_completed(record)

    async def _invoke(
        self, registration: HandlerRegistration, record: EventRecord
    ) -> tuple[AttemptOutcome, str | None]:
        """Run one attempt and classify it. Unclassified exceptions are retryable."""
        # Runs in the worker's own task so a cancel from stop() is never lost
        try:
            async with asyncio.timeout(self._attempt_timeout):
                await self._call(registration, record)
        except HandlerFatalError as exc:
            return AttemptOutcome.FATAL_FAILURE, _describe(exc)
        except TimeoutError:
            return AttemptOutcome.RETRYABLE_FAILURE, f"timed out after {self._attempt_timeout}s"
        except Exception as exc:
            return AttemptOutcome.RETRYABLE_FAILURE, _describe(exc)
        return AttemptOutcome.SUCCESS, None

    async def _call(self, registration: HandlerRegistration, record: EventRecord) -> None:
        handler = registration.handler
        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        ):
            await handler(record)
            return
        # Blocking handlers run in a thread so they cannot stall the event loop
        result = await asyncio.to_thread(handler, record)
        if inspect.isawaitable(result):
            await result

    def _event_completed(self, record: EventRecord) -> None:
        log.info(
            "event_completed",
            provider=record.provider,
            event_id=record.event_id,
            failed_handlers=record.failed_handlers,
        )
        safe_notify(self._observer, EventCompleted(
            provider=record.provider,
            data={
                "event_id": record.event_id,
                "event_type": record.event_type,
                "failed_handlers": record.failed_handlers,
            },
        ))
