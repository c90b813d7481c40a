"""Tests for log redaction and request context."""

import logging

import structlog

from hookwire.utils.logging import REDACTED, delivery_context, redact_secrets, setup_logging


def _redact(**event):
    return redact_secrets(None, "info", dict(event))


class TestRedactSecrets:
    def test_sensitive_keys(self):
        out = _redact(event="x", signing_secret="s3cr3t", Signature="abc123")
        assert out["signing_secret"] == REDACTED
        assert out["Signature"] == REDACTED

    def test_empty_sensitive_value_left_alone(self):
        assert _redact(event="x", secret=None)["secret"] is None

    def test_inline_secret(self):
        out = _redact(event="x", error="bad config: signing_secret=whsec_abc/+=")
        assert "whsec_abc" not in out["error"]
        assert REDACTED in out["error"]

    def test_other_values_untouched(self):
        out = _redact(event="webhook_received", provider="acme", event_id="evt_1")
        assert out == {"event": "webhook_received", "provider": "acme", "event_id": "evt_1"}


class TestDeliveryContext:
    def test_binds_and_clears(self):
        with delivery_context("acme", "req-1"):
            ctx = structlog.contextvars.get_contextvars()
            assert ctx["provider"] == "acme"
            assert ctx["delivery_id"] == "req-1"
        assert "provider" not in structlog.contextvars.get_contextvars()

    def test_generates_delivery_id(self):
        with delivery_context("acme"):
            assert structlog.contextvars.get_contextvars()["delivery_id"]


class TestSetupLogging:
    def test_level_and_chatty_loggers(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("DEBUG", json_output=True)
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert logging.getLogger("aiohttp.access").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
            structlog.reset_defaults()
