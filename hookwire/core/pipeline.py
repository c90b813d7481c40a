"""Inbound pipeline: provider gate → rate limit → size → signature → dedup → dispatch."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Mapping, Sequence

from hookwire.config import DEFAULT_TIMESTAMP_TOLERANCE, ProviderConfig, ProviderSnapshot
from hookwire.core.bus import (
    DuplicateEvent,
    Observer,
    RateLimitExceeded,
    SignatureFailed,
    SignatureVerified,
    WebhookReceived,
    safe_notify,
)
from hookwire.core.dedup import EventStore, MemoryEventStore
from hookwire.core.dispatcher import Dispatcher
from hookwire.core.rate_limiter import RateLimiter
from hookwire.core.registry import DEFAULT_RETRY_DELAYS, HandlerFunc, HandlerRegistration, HandlerRegistry
from hookwire.core.runners import InlineRunner, QueuedRunner, Sleep, TaskRunner
from hookwire.errors import IngestStatus
from hookwire.models import DEFAULT_EVENT_TYPE, InboundWebhook, IngestResult, as_headers
from hookwire.utils.logging import get_logger
from hookwire.webhooks.verifiers import Verifier, VerifierCapability, create_verifier

log = get_logger(__name__)


class WebhookEngine:
    """Single entry point for inbound webhooks.

    Provider configuration is a read-only snapshot; ``swap_providers`` replaces
    it wholesale. Rate-limit and signature failures are resolved into an
    ``IngestResult`` and never raise.
    """

    def __init__(
        self,
        providers: ProviderSnapshot,
        *,
        store: EventStore | None = None,
        observer: Observer | None = None,
        registry: HandlerRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        custom_verifiers: Mapping[str, VerifierCapability] | None = None,
        production_mode: bool = False,
        default_timestamp_tolerance: int = DEFAULT_TIMESTAMP_TOLERANCE,
        handler_timeout: float | None = 30.0,
        worker_count: int = 4,
        inline_runner: TaskRunner | None = None,
        queued_runner: TaskRunner | None = None,
        sleep: Sleep | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._providers = providers
        self._store = store if store is not None else MemoryEventStore()
        self._observer = observer
        self.registry = registry if registry is not None else HandlerRegistry()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self._custom_verifiers = dict(custom_verifiers or {})
        self._production_mode = production_mode
        self._default_tolerance = default_timestamp_tolerance
        self._clock = clock
        self._verifiers: dict[str, tuple[ProviderConfig, Verifier]] = {}

        runner_kwargs: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        self._inline = inline_runner if inline_runner is not None else InlineRunner(**runner_kwargs)
        self._queued = (
            queued_runner if queued_runner is not None else QueuedRunner(worker_count, **runner_kwargs)
        )
        self.dispatcher = Dispatcher(
            self.registry,
            self._store,
            inline=self._inline,
            queued=self._queued,
            observer=observer,
            attempt_timeout=handler_timeout,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._store.start()
        await self._queued.start()
        log.info(
            "engine_started",
            providers=sorted(self._providers),
            production_mode=self._production_mode,
        )

    async def stop(self) -> None:
        await self._queued.stop()
        await self._store.stop()
        log.info("engine_stopped")

    async def drain(self) -> None:
        """Wait until every queued attempt and scheduled retry has finished."""
        await self._queued.join()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def providers(self) -> ProviderSnapshot:
        return self._providers

    def swap_providers(self, providers: ProviderSnapshot) -> None:
        """Replace the provider snapshot. In-flight requests keep the one they started with."""
        self._providers = providers
        self._verifiers.clear()
        log.info("providers_reloaded", providers=sorted(providers))

    def register_handler(
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
        return self.registry.register(
            provider,
            event_type,
            handler,
            priority=priority,
            run_async=run_async,
            retry_delays=retry_delays,
            max_attempts=max_attempts,
            name=name,
        )

    def verifier_for(self, config: ProviderConfig) -> Verifier:
        cached = self._verifiers.get(config.name)
        if cached is not None and cached[0] is config:
            return cached[1]
        verifier = create_verifier(
            config,
            custom=self._custom_verifiers,
            default_tolerance=self._default_tolerance,
            clock=self._clock,
        )
        self._verifiers[config.name] = (config, verifier)
        return verifier

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_inbound(
        self, provider_name: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> IngestResult:
        webhook = InboundWebhook(provider=provider_name, body=raw_body, headers=as_headers(headers))
        config = self._providers.get(provider_name)

        if config is None:
            log.warning("unknown_provider", provider=provider_name)
            return IngestResult(IngestStatus.UNKNOWN_PROVIDER, "Unknown provider")

        if not config.active:
            log.info("inactive_provider", provider=provider_name)
            return IngestResult(IngestStatus.INACTIVE_PROVIDER, "Provider is inactive")

        if not self.rate_limiter.admit(
            provider_name, config.rate_limit_requests, config.rate_limit_period_seconds
        ):
            safe_notify(self._observer, RateLimitExceeded(
                provider=provider_name,
                data={
                    "limit": config.rate_limit_requests,
                    "period": config.rate_limit_period_seconds,
                },
            ))
            return IngestResult(IngestStatus.RATE_LIMITED, "Rate limit exceeded")

        if config.payload_limit_enabled and len(webhook.body) > config.max_payload_size_bytes:
            log.warning(
                "payload_too_large",
                provider=provider_name,
                size=len(webhook.body),
                limit=config.max_payload_size_bytes,
            )
            return IngestResult(IngestStatus.PAYLOAD_TOO_LARGE, "Payload too large")

        try:
            verifier = self.verifier_for(config)
        except LookupError as exc:
            log.error("verifier_unavailable", provider=provider_name, error=str(exc))
            safe_notify(self._observer, SignatureFailed(
                provider=provider_name, data={"reason": "verifier_error"},
            ))
            return IngestResult(IngestStatus.UNAUTHENTICATED, "Invalid signature")

        verification = verifier.authenticate(
            webhook.body, webhook.headers, config, production_mode=self._production_mode
        )
        if not verification.authenticated:
            reason = verification.failure_reason.value if verification.failure_reason else "unknown"
            log.warning("signature_failed", provider=provider_name, reason=reason)
            safe_notify(self._observer, SignatureFailed(provider=provider_name, data={"reason": reason}))
            return IngestResult(IngestStatus.UNAUTHENTICATED, f"Invalid signature: {reason}")

        safe_notify(self._observer, SignatureVerified(
            provider=provider_name, data={"skipped": verification.skipped},
        ))

        payload = self._parse_payload(webhook)
        if payload is None:
            return IngestResult(IngestStatus.MALFORMED_PAYLOAD, "Invalid JSON")

        verification.event_id = verifier.extract_event_id(payload)
        verification.event_type = verifier.extract_event_type(payload) or DEFAULT_EVENT_TYPE
        if verification.event_id is None:
            log.info("event_id_missing", provider=provider_name, deduplicated=False)

        result = await self._store.register_if_new(
            provider_name, verification.event_id, verification.event_type, payload
        )
        record = result.record

        if not result.is_new:
            log.info(
                "duplicate_event",
                provider=provider_name,
                event_id=record.event_id,
                status=record.status.value,
            )
            safe_notify(self._observer, DuplicateEvent(
                provider=provider_name,
                data={"event_id": record.event_id, "event_type": record.event_type},
            ))
            return IngestResult(IngestStatus.DUPLICATE, "Duplicate event", event=record)

        log.info(
            "webhook_received",
            provider=provider_name,
            event_id=record.event_id,
            event_type=record.event_type,
        )
        safe_notify(self._observer, WebhookReceived(
            provider=provider_name,
            data={
                "event_id": record.event_id,
                "event_type": record.event_type,
                "deduplicated": record.deduplicated,
            },
        ))

        await self.dispatcher.dispatch(record)
        return IngestResult(IngestStatus.PROCESSED, "Received", event=record)

    def _parse_payload(self, webhook: InboundWebhook) -> dict[str, Any] | None:
        try:
            payload = json.loads(webhook.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            # payload content is not logged
            log.warning("payload_parse_failed", provider=webhook.provider, size=len(webhook.body))
            return None
        if not isinstance(payload, dict):
            log.warning("payload_not_object", provider=webhook.provider)
            return None
        return payload
