"""Structured logging for Hookwire.

All modules log through structlog with snake_case event names. Request-scoped
fields (provider, delivery id) are carried in contextvars so every line
emitted while a webhook is processed can be correlated.
"""

from __future__ import annotations

import logging
import re
import sys
from contextlib import AbstractContextManager
from uuid import uuid4

import structlog

# Keys whose values never reach a log sink
_REDACTED_KEYS = frozenset({"secret", "signing_secret", "signature", "authorization"})

_INLINE_SECRET = re.compile(
    r"(secret|signature|token|authorization)[\"']?\s*[:=]\s*[\"']?[\w\-\.\+/=]+",
    re.IGNORECASE,
)

# Libraries that log per request or per query at INFO
_CHATTY_LOGGERS = ("aiohttp.access", "aiosqlite", "asyncio")

REDACTED = "***REDACTED***"


def redact_secrets(
    _logger: structlog.types.WrappedLogger,
    _method: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask signing material, whether passed as a field or embedded in a string."""
    for key in list(event_dict):
        value = event_dict[key]
        if key.lower() in _REDACTED_KEYS:
            if value:
                event_dict[key] = REDACTED
        elif isinstance(value, str) and _INLINE_SECRET.search(value):
            event_dict[key] = _INLINE_SECRET.sub(rf"\1={REDACTED}", value)
    return event_dict


def _renderer(json_output: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Route structlog through the stdlib root logger with console or JSON output."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            redact_secrets,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(json_output),
        ],
    )
    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [stream]
    root.setLevel(numeric_level)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def delivery_context(provider: str, delivery_id: str | None = None) -> AbstractContextManager:
    """Bind provider and delivery id to every log line inside the block."""
    return structlog.contextvars.bound_contextvars(
        provider=provider,
        delivery_id=delivery_id or uuid4().hex[:12],
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
