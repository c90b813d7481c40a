"""Outcome notifications and the observers that consume them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from hookwire.utils.logging import get_logger

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Notification types
# ---------------------------------------------------------------------------

class NotificationType(str, Enum):
    WEBHOOK_RECEIVED = "webhook.received"
    SIGNATURE_VERIFIED = "signature.verified"
    SIGNATURE_FAILED = "signature.failed"
    RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"
    DUPLICATE_EVENT = "event.duplicate"
    ACTION_STARTED = "action.started"
    ACTION_COMPLETED = "action.completed"
    ACTION_FAILED = "action.failed"
    EVENT_COMPLETED = "event.completed"


@dataclass
class Notification:
    type: NotificationType
    provider: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class WebhookReceived(Notification):
    type: NotificationType = field(default=NotificationType.WEBHOOK_RECEIVED, init=False)
    # data keys: event_id, event_type, deduplicated


@dataclass
class SignatureVerified(Notification):
    type: NotificationType = field(default=NotificationType.SIGNATURE_VERIFIED, init=False)
    # data keys: skipped


@dataclass
class SignatureFailed(Notification):
    type: NotificationType = field(default=NotificationType.SIGNATURE_FAILED, init=False)
    # data keys: reason


@dataclass
class RateLimitExceeded(Notification):
    type: NotificationType = field(default=NotificationType.RATE_LIMIT_EXCEEDED, init=False)
    # data keys: limit, period


@dataclass
class DuplicateEvent(Notification):
    type: NotificationType = field(default=NotificationType.DUPLICATE_EVENT, init=False)
    # data keys: event_id, event_type


@dataclass
class ActionStarted(Notification):
    type: NotificationType = field(default=NotificationType.ACTION_STARTED, init=False)
    # data keys: event_id, handler, attempt


@dataclass
class ActionCompleted(Notification):
    type: NotificationType = field(default=NotificationType.ACTION_COMPLETED, init=False)
    # data keys: event_id, handler, attempt, duration


@dataclass
class ActionFailed(Notification):
    type: NotificationType = field(default=NotificationType.ACTION_FAILED, init=False)
    # data keys: event_id, handler, attempt, error, will_retry


@dataclass
class EventCompleted(Notification):
    type: NotificationType = field(default=NotificationType.EVENT_COMPLETED, init=False)
    # data keys: event_id, event_type, failed_handlers


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------

class Observer(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingObserver:
    """Writes every notification to the structured log."""

    def notify(self, notification: Notification) -> None:
        if notification.type in _WARN_TYPES:
            method = log.warning
        elif notification.type is NotificationType.ACTION_STARTED:
            method = log.debug
        else:
            method = log.info
        method(
            notification.type.value,
            provider=notification.provider,
            notification_id=notification.id,
            **notification.data,
        )


_WARN_TYPES = frozenset({
    NotificationType.SIGNATURE_FAILED,
    NotificationType.RATE_LIMIT_EXCEEDED,
    NotificationType.ACTION_FAILED,
})


class FanOutObserver:
    """Forwards each notification to several observers, isolating their failures."""

    def __init__(self, *observers: Observer) -> None:
        self._observers = list(observers)

    def notify(self, notification: Notification) -> None:
        for observer in self._observers:
            safe_notify(observer, notification)


def safe_notify(observer: Observer | None, notification: Notification) -> None:
    """Deliver a notification; delivery failures are logged, never raised."""
    if observer is None:
        return
    try:
        observer.notify(notification)
    except Exception:
        log.exception("observer_error", notification_type=notification.type.value)
