"""Tests for event records and ingestion outcomes."""

import pytest

from hookwire.errors import IngestStatus
from hookwire.models import EventRecord, EventStatus, HandlerState, IngestResult, as_headers


class TestEventRecord:
    def test_defaults(self):
        record = EventRecord(provider="acme", event_id="evt_1", event_type="paid")
        assert record.status is EventStatus.RECEIVED
        assert record.key == ("acme", "evt_1")
        assert record.deduplicated is True
        assert record.attempts == []

    def test_no_handlers_is_completed(self):
        record = EventRecord(provider="acme", event_id="evt_1", event_type="paid")
        assert record.recalculate_status() is EventStatus.COMPLETED

    def test_processing_until_all_terminal(self):
        record = EventRecord(provider="acme", event_id="evt_1", event_type="paid")
        record.handler_states = {"a": HandlerState.SUCCEEDED, "b": HandlerState.PENDING}
        assert record.recalculate_status() is EventStatus.PROCESSING

        record.handler_states["b"] = HandlerState.RUNNING
        assert record.recalculate_status() is EventStatus.PROCESSING

        record.handler_states["b"] = HandlerState.FAILED
        assert record.recalculate_status() is EventStatus.COMPLETED
        assert record.failed_handlers == ["b"]


class TestIngestStatus:
    @pytest.mark.parametrize(
        "status,code",
        [
            (IngestStatus.PROCESSED, 200),
            (IngestStatus.DUPLICATE, 200),
            (IngestStatus.RATE_LIMITED, 429),
            (IngestStatus.UNAUTHENTICATED, 401),
            (IngestStatus.PAYLOAD_TOO_LARGE, 413),
            (IngestStatus.INACTIVE_PROVIDER, 403),
            (IngestStatus.UNKNOWN_PROVIDER, 404),
            (IngestStatus.MALFORMED_PAYLOAD, 400),
        ],
    )
    def test_http_status(self, status, code):
        assert IngestResult(status).http_status_hint == code

    def test_every_status_mapped(self):
        for status in IngestStatus:
            assert status.http_status >= 200

    def test_accepted(self):
        assert IngestResult(IngestStatus.PROCESSED).accepted
        assert IngestResult(IngestStatus.DUPLICATE).accepted
        assert not IngestResult(IngestStatus.RATE_LIMITED).accepted


class TestHeaders:
    def test_case_insensitive(self):
        headers = as_headers({"X-Webhook-Signature": "abc"})
        assert headers.get("x-webhook-signature") == "abc"
        assert headers.get("X-WEBHOOK-SIGNATURE") == "abc"

    def test_proxy_passthrough(self):
        headers = as_headers({"A": "1"})
        assert as_headers(headers) is headers
