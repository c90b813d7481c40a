"""Handler registrations keyed by (provider, event_type)."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from hookwire.models import EventRecord
from hookwire.utils.logging import get_logger

log = get_logger(__name__)

HandlerFunc = Callable[[EventRecord], Any]

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (30, 60, 300, 900, 3600)


@dataclass(frozen=True)
class HandlerRegistration:
    provider: str
    event_type: str
    handler: HandlerFunc
    name: str
    priority: int = 100
    run_async: bool = True
    retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS
    max_attempts: int = 5
    sequence: int = field(default=0, compare=False)

    def delay_for_attempt(self, attempt_number: int) -> float:
        """Delay after failed attempt ``attempt_number`` (1-based); the last delay repeats."""
        if not self.retry_delays:
            return 0.0
        index = min(attempt_number - 1, len(self.retry_delays) - 1)
        return float(self.retry_delays[max(index, 0)])


def _handler_name(handler: HandlerFunc) -> str:
    module = getattr(handler, "__module__", None) or ""
    qualname = getattr(handler, "__qualname__", None) or type(handler).__qualname__
    return f"{module}.{qualname}" if module else qualname


class HandlerRegistry:
    """Registered once at startup, read by every dispatch."""

    def __init__(self) -> None:
        self._registry: dict[tuple[str, str], list[HandlerRegistration]] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count()

    def register(
        self,
        provider: str,
        event_type: str,
        handler: HandlerFunc,
        *,
        priority: int = 100,
        run_async: bool = True,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        max_attempts: int = 5,
        name: str | None = None,
    ) -> HandlerRegistration:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if any(d < 0 for d in retry_delays):
            raise ValueError("retry_delays must be non-negative")

        registration = HandlerRegistration(
            provider=provider,
            event_type=event_type,
            handler=handler,
            name=name or _handler_name(handler),
            priority=priority,
            run_async=run_async,
            retry_delays=tuple(retry_delays),
            max_attempts=max_attempts,
            sequence=next(self._counter),
        )

        with self._lock:
            entries = self._registry.setdefault((provider, event_type), [])
            if any(r.name == registration.name for r in entries):
                raise ValueError(
                    f"Handler '{registration.name}' already registered for {provider}:{event_type}"
                )
            entries.append(registration)
            entries.sort(key=lambda r: (r.priority, r.sequence))

        log.info(
            "handler_registered",
            provider=provider,
            event_type=event_type,
            handler=registration.name,
            priority=priority,
            run_async=run_async,
        )
        return registration

    def handlers_for(self, provider: str, event_type: str) -> list[HandlerRegistration]:
        """Handlers in execution order: priority, then registration order."""
        with self._lock:
            return list(self._registry.get((provider, event_type), []))

    def find(self, provider: str, event_type: str, name: str) -> HandlerRegistration | None:
        for registration in self.handlers_for(provider, event_type):
            if registration.name == name:
                return registration
        return None

    def providers(self) -> list[str]:
        with self._lock:
            return sorted({provider for provider, _ in self._registry})
