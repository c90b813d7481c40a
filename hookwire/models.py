"""Typed models for inbound requests, verification, and event processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from multidict import CIMultiDict, CIMultiDictProxy

from hookwire.errors import FailureReason, IngestStatus

DEFAULT_EVENT_TYPE = "webhook.received"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_headers(headers: Mapping[str, str]) -> CIMultiDictProxy[str]:
    """Case-insensitive, read-only view of a header mapping."""
    if isinstance(headers, CIMultiDictProxy):
        return headers
    return CIMultiDictProxy(CIMultiDict(headers))


@dataclass
class InboundWebhook:
    provider: str
    body: bytes
    headers: CIMultiDictProxy[str]
    received_at: datetime = field(default_factory=utcnow)


@dataclass
class VerificationResult:
    authenticated: bool
    failure_reason: FailureReason | None = None
    skipped: bool = False
    event_id: str | None = None
    event_type: str | None = None
    event_timestamp: int | None = None


class EventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


class HandlerState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (HandlerState.SUCCEEDED, HandlerState.FAILED)


@dataclass
class ActionAttempt:
    handler: str
    attempt_number: int
    started_at: datetime
    outcome: AttemptOutcome
    error: str | None = None


@dataclass
class EventRecord:
    """Deduplication unit for one (provider, event_id)."""

    provider: str
    event_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: EventStatus = EventStatus.RECEIVED
    received_at: datetime = field(default_factory=utcnow)
    deduplicated: bool = True
    handler_states: dict[str, HandlerState] = field(default_factory=dict)
    attempts: list[ActionAttempt] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider, self.event_id)

    def attempts_for(self, handler: str) -> list[ActionAttempt]:
        return [a for a in self.attempts if a.handler == handler]

    @property
    def failed_handlers(self) -> list[str]:
        return [
            name for name, state in self.handler_states.items()
            if state is HandlerState.FAILED
        ]

    def recalculate_status(self) -> EventStatus:
        """Completed once every handler is terminal; processing otherwise."""
        if all(state.terminal for state in self.handler_states.values()):
            self.status = EventStatus.COMPLETED
        else:
            self.status = EventStatus.PROCESSING
        return self.status


@dataclass
class IngestResult:
    status: IngestStatus
    reason: str = ""
    event: EventRecord | None = None

    @property
    def accepted(self) -> bool:
        return self.status.accepted

    @property
    def http_status_hint(self) -> int:
        return self.status.http_status
