"""Provider signature verifiers.

Each verifier authenticates a raw request for one provider and extracts the
event metadata (id, type, timestamp) used for deduplication and dispatch.

Built-in verifiers:
- HmacVerifier: hex HMAC over ``{timestamp}.{body}`` with a timestamp header
- Base64HmacVerifier: base64 HMAC over the body, no timestamp
- KeyValueSignatureVerifier: ``t=...,v1=...,v0=...`` composite header
- AlwaysPassVerifier: accepts everything; test configurations only

Anything else can be plugged in as a CustomVerifier wrapping an object that
implements ``VerifierCapability``.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from hookwire.config import DEFAULT_TIMESTAMP_TOLERANCE, ProviderConfig, VerifierKind, is_skip_secret
from hookwire.errors import FailureReason
from hookwire.models import VerificationResult, as_headers
from hookwire.utils.logging import get_logger
from hookwire.webhooks.signing import (
    generate_hmac,
    parse_kv_header,
    parse_timestamp,
    secure_compare,
    timestamp_age,
)

log = get_logger(__name__)

Headers = Mapping[str, str]


@runtime_checkable
class VerifierCapability(Protocol):
    def verify_signature(self, payload: bytes, headers: Headers, config: ProviderConfig) -> bool: ...

    def extract_timestamp(self, headers: Headers) -> int | None: ...

    def extract_event_id(self, payload: dict[str, Any]) -> str | None: ...

    def extract_event_type(self, payload: dict[str, Any]) -> str | None: ...


def _scalar(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        text = str(value)
        return text or None
    return None


def _secret(config: ProviderConfig) -> str:
    if is_skip_secret(config.signing_secret):
        raise ValueError(f"Provider '{config.name}' has no signing secret")
    return str(config.signing_secret)


class Verifier(ABC):
    """Base verifier. Subclasses implement ``_check``; everything else is shared."""

    kind: VerifierKind
    test_only: bool = False

    defaults: dict[str, str] = {"id_field": "id", "type_field": "type"}

    def __init__(
        self,
        options: Mapping[str, str] | None = None,
        default_tolerance: int = DEFAULT_TIMESTAMP_TOLERANCE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.options = {**Verifier.defaults, **self.defaults, **(options or {})}
        self._default_tolerance = default_tolerance
        self._clock = clock

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    def verify_signature(self, payload: bytes, headers: Headers, config: ProviderConfig) -> bool:
        return self.check(payload, headers, config) is None

    def extract_timestamp(self, headers: Headers) -> int | None:
        return self._timestamp(as_headers(headers))

    def extract_event_id(self, payload: dict[str, Any]) -> str | None:
        return _scalar(payload.get(self.options["id_field"]))

    def extract_event_type(self, payload: dict[str, Any]) -> str | None:
        return _scalar(payload.get(self.options["type_field"]))

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def check(self, payload: bytes, headers: Headers, config: ProviderConfig) -> FailureReason | None:
        """Return the failure reason, or None when the request is authentic."""
        if is_skip_secret(config.signing_secret):
            return None
        try:
            return self._check(payload, as_headers(headers), config)
        except Exception:
            log.exception("verifier_error", provider=config.name, verifier=self.kind.value)
            return FailureReason.VERIFIER_ERROR

    @abstractmethod
    def _check(self, payload: bytes, headers: Headers, config: ProviderConfig) -> FailureReason | None: ...

    def _timestamp(self, headers: Headers) -> int | None:
        return None

    def authenticate(
        self,
        payload: bytes,
        headers: Headers,
        config: ProviderConfig,
        production_mode: bool = False,
    ) -> VerificationResult:
        """Full authentication decision, including skip-mode and production policy."""
        if self.test_only and production_mode:
            return VerificationResult(False, FailureReason.TEST_VERIFIER_IN_PRODUCTION)

        skipped = not self.test_only and is_skip_secret(config.signing_secret)
        if skipped:
            if production_mode:
                return VerificationResult(False, FailureReason.MISSING_SECRET)
            log.warning("signature_verification_skipped", provider=config.name)

        reason = self.check(payload, headers, config)
        if reason is not None:
            return VerificationResult(False, reason)
        return VerificationResult(
            True,
            skipped=skipped,
            event_timestamp=self._safe_timestamp(headers),
        )

    def _safe_timestamp(self, headers: Headers) -> int | None:
        try:
            return self.extract_timestamp(headers)
        except Exception:
            log.exception("timestamp_extraction_failed", verifier=self.kind.value)
            return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tolerance(self, config: ProviderConfig) -> int:
        if config.timestamp_tolerance_seconds is None:
            return self._default_tolerance
        return config.timestamp_tolerance_seconds

    def _check_timestamp(self, raw: str | None, config: ProviderConfig) -> FailureReason | None:
        if not raw:
            return FailureReason.MISSING_TIMESTAMP
        ts = parse_timestamp(raw)
        if ts is None:
            return FailureReason.INVALID_TIMESTAMP
        tolerance = self._tolerance(config)
        if tolerance <= 0:
            return None
        age = timestamp_age(ts, self._clock())
        if abs(age) > tolerance:
            log.warning(
                "timestamp_outside_tolerance",
                provider=config.name,
                age_seconds=age,
                direction="stale" if age > 0 else "future",
            )
            return FailureReason.TIMESTAMP_OUT_OF_TOLERANCE
        return None

    def _strip_prefix(self, signature: str) -> str:
        prefix = self.options.get("signature_prefix", "")
        if prefix and signature.startswith(prefix):
            return signature[len(prefix):]
        return signature


# ---------------------------------------------------------------------------
# Built-in variants
# ---------------------------------------------------------------------------

class HmacVerifier(Verifier):
    """Hex HMAC-SHA256 over ``{timestamp}.{body}``, timestamp in its own header."""

    kind = VerifierKind.HMAC
    defaults = {
        "signature_header": "X-Webhook-Signature",
        "timestamp_header": "X-Webhook-Timestamp",
        "signature_prefix": "",
    }

    def _check(self, payload: bytes, headers: Headers, config: ProviderConfig) -> FailureReason | None:
        signature = headers.get(self.options["signature_header"])
        if not signature:
            return FailureReason.MISSING_SIGNATURE

        raw_ts = headers.get(self.options["timestamp_header"])
        reason = self._check_timestamp(raw_ts, config)
        if reason is not None:
            return reason

        expected = generate_hmac(_secret(config), f"{raw_ts}.".encode() + payload)
        if not secure_compare(self._strip_prefix(signature.strip()), expected):
            return FailureReason.INVALID_SIGNATURE
        return None

    def _timestamp(self, headers: Headers) -> int | None:
        return parse_timestamp(headers.get(self.options["timestamp_header"]))


class Base64HmacVerifier(Verifier):
    """Base64 HMAC-SHA256 over the body, optionally prefixed with the notification URL."""

    kind = VerifierKind.HMAC_BASE64
    defaults = {
        "signature_header": "X-Signature",
        "signed_url": "",
        "signature_prefix": "",
    }

    def _check(self, payload: bytes, headers: Headers, config: ProviderConfig) -> FailureReason | None:
        signature = headers.get(self.options["signature_header"])
        if not signature:
            return FailureReason.MISSING_SIGNATURE

        signed = self.options["signed_url"].encode() + payload
        expected = generate_hmac(_secret(config), signed, encoding="base64")
        if not secure_compare(self._strip_prefix(signature.strip()), expected):
            return FailureReason.INVALID_SIGNATURE
        return None


class KeyValueSignatureVerifier(Verifier):
    """Composite ``t=<ts>,v1=<sig>,v0=<sig>`` header; any listed version may match."""

    kind = VerifierKind.KV_SIGNATURE
    defaults = {
        "signature_header": "Webhook-Signature",
        "timestamp_key": "t",
        "signature_keys": "v1,v0",
    }

    def _parts(self, headers: Headers) -> tuple[str | None, list[str]]:
        parsed = parse_kv_header(headers.get(self.options["signature_header"]))
        raw_ts = parsed.get(self.options["timestamp_key"])
        if isinstance(raw_ts, list):
            raw_ts = raw_ts[0]

        signatures: list[str] = []
        for key in self.options["signature_keys"].split(","):
            value = parsed.get(key.strip())
            if isinstance(value, list):
                signatures.extend(value)
            elif value:
                signatures.append(value)
        return raw_ts, signatures

    def _check(self, payload: bytes, headers: Headers, config: ProviderConfig) -> FailureReason | None:
        if not headers.get(self.options["signature_header"]):
            return FailureReason.MISSING_SIGNATURE

        raw_ts, signatures = self._parts(headers)
        reason = self._check_timestamp(raw_ts, config)
        if reason is not None:
            return reason
        if not signatures:
            return FailureReason.MISSING_SIGNATURE

        expected = generate_hmac(_secret(config), f"{raw_ts}.".encode() + payload)
        # compare every candidate so the match position is not observable
        matches = [secure_compare(sig, expected) for sig in signatures]
        if not any(matches):
            return FailureReason.INVALID_SIGNATURE
        return None

    def _timestamp(self, headers: Headers) -> int | None:
        raw_ts, _ = self._parts(headers)
        return parse_timestamp(raw_ts)


class AlwaysPassVerifier(Verifier):
    """Accepts every request. Rejected outright when production mode is on."""

    kind = VerifierKind.ALWAYS_PASS
    test_only = True

    def _check(self, payload: bytes, headers: Headers, config: ProviderConfig) -> FailureReason | None:
        return None


class CustomVerifier(Verifier):
    """Adapts an externally supplied ``VerifierCapability`` implementation."""

    kind = VerifierKind.CUSTOM

    def __init__(self, delegate: VerifierCapability, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._delegate = delegate

    def _check(self, payload: bytes, headers: Headers, config: ProviderConfig) -> FailureReason | None:
        if self._delegate.verify_signature(payload, headers, config):
            return None
        return FailureReason.INVALID_SIGNATURE

    def _timestamp(self, headers: Headers) -> int | None:
        return self._delegate.extract_timestamp(headers)

    def extract_event_id(self, payload: dict[str, Any]) -> str | None:
        try:
            return _scalar(self._delegate.extract_event_id(payload))
        except Exception:
            log.exception("custom_extract_failed", field="event_id")
            return None

    def extract_event_type(self, payload: dict[str, Any]) -> str | None:
        try:
            return _scalar(self._delegate.extract_event_type(payload))
        except Exception:
            log.exception("custom_extract_failed", field="event_type")
            return None


_BUILTIN: dict[VerifierKind, type[Verifier]] = {
    VerifierKind.HMAC: HmacVerifier,
    VerifierKind.HMAC_BASE64: Base64HmacVerifier,
    VerifierKind.KV_SIGNATURE: KeyValueSignatureVerifier,
    VerifierKind.ALWAYS_PASS: AlwaysPassVerifier,
}


def create_verifier(
    config: ProviderConfig,
    custom: Mapping[str, VerifierCapability] | None = None,
    default_tolerance: int = DEFAULT_TIMESTAMP_TOLERANCE,
    clock: Callable[[], float] = time.time,
) -> Verifier:
    """Factory to create the verifier a provider's config selects."""
    kwargs: dict[str, Any] = {
        "options": config.verifier_options,
        "default_tolerance": default_tolerance,
        "clock": clock,
    }
    if config.verifier is VerifierKind.CUSTOM:
        delegate = (custom or {}).get(config.name)
        if delegate is None:
            raise LookupError(f"No custom verifier supplied for provider '{config.name}'")
        return CustomVerifier(delegate, **kwargs)
    return _BUILTIN[config.verifier](**kwargs)
