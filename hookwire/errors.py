"""Error taxonomy for ingestion outcomes and handler failures."""

from __future__ import annotations

from enum import Enum


class HookwireError(Exception):
    """Base class for Hookwire exceptions."""


class ConfigError(HookwireError):
    """Configuration could not be loaded or is invalid. Only raised at startup."""


class HandlerRetryableError(HookwireError):
    """A handler failed transiently; the attempt is retried per its schedule."""


class HandlerFatalError(HookwireError):
    """A handler failed permanently; remaining attempts are skipped."""


class StoreError(HookwireError):
    """The event store is not open or returned an inconsistent result."""


class FailureReason(str, Enum):
    MISSING_SIGNATURE = "missing_signature"
    INVALID_SIGNATURE = "invalid_signature"
    MISSING_TIMESTAMP = "missing_timestamp"
    INVALID_TIMESTAMP = "invalid_timestamp"
    TIMESTAMP_OUT_OF_TOLERANCE = "timestamp_out_of_tolerance"
    MISSING_SECRET = "missing_secret"
    TEST_VERIFIER_IN_PRODUCTION = "test_verifier_in_production"
    VERIFIER_ERROR = "verifier_error"


class IngestStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    UNAUTHENTICATED = "unauthenticated"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    INACTIVE_PROVIDER = "inactive_provider"
    UNKNOWN_PROVIDER = "unknown_provider"
    MALFORMED_PAYLOAD = "malformed_payload"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def accepted(self) -> bool:
        return self in (IngestStatus.PROCESSED, IngestStatus.DUPLICATE)


_HTTP_STATUS: dict[IngestStatus, int] = {
    IngestStatus.PROCESSED: 200,
    IngestStatus.DUPLICATE: 200,
    IngestStatus.RATE_LIMITED: 429,
    IngestStatus.UNAUTHENTICATED: 401,
    IngestStatus.PAYLOAD_TOO_LARGE: 413,
    IngestStatus.INACTIVE_PROVIDER: 403,
    IngestStatus.UNKNOWN_PROVIDER: 404,
    IngestStatus.MALFORMED_PAYLOAD: 400,
}
