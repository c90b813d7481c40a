"""Constant-time comparison, HMAC generation, and timestamp helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Literal

Encoding = Literal["hex", "base64"]


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Comparison and HMAC
# ---------------------------------------------------------------------------

def secure_compare(a: str | bytes | None, b: str | bytes | None) -> bool:
    """Fixed-time comparison. Empty inputs and length mismatches return False."""
    if not a or not b:
        return False
    left, right = _to_bytes(a), _to_bytes(b)
    if len(left) != len(right):
        return False
    return hmac.compare_digest(left, right)


def generate_hmac(secret: str | bytes, data: str | bytes, encoding: Encoding = "hex") -> str:
    """HMAC-SHA256 of ``data``; lowercase hex or single-line base64."""
    digest = hmac.new(_to_bytes(secret), _to_bytes(data), hashlib.sha256)
    if encoding == "hex":
        return digest.hexdigest()
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    raise ValueError(f"Unsupported encoding: {encoding}")


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------

def parse_kv_header(value: str | None) -> dict[str, str | list[str]]:
    """Parse ``t=123,v1=abc,v0=def``. Repeated keys collect into a list."""
    parsed: dict[str, str | list[str]] = {}
    if not value:
        return parsed

    for pair in value.split(","):
        key, sep, item = pair.partition("=")
        key, item = key.strip(), item.strip()
        if not sep or not key or not item:
            continue
        existing = parsed.get(key)
        if existing is None:
            parsed[key] = item
        elif isinstance(existing, list):
            existing.append(item)
        else:
            parsed[key] = [existing, item]
    return parsed


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def timestamp_age(ts: int, now: float | None = None) -> int:
    """Seconds since ``ts``; negative for future-dated timestamps."""
    current = int(time.time() if now is None else now)
    return current - ts


def timestamp_within_tolerance(
    ts: int | None, tolerance_seconds: int, now: float | None = None
) -> bool:
    """True iff ``abs(now - ts) <= tolerance``. Stale and future timestamps fail alike."""
    if ts is None:
        return False
    return abs(timestamp_age(ts, now)) <= tolerance_seconds


def parse_timestamp(value: str | int | None) -> int | None:
    """Epoch seconds from an integer, digit string, or ISO8601/RFC3339 string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value

    text = str(value).strip()
    if not text:
        return None
    if text.isascii() and text.isdigit():
        try:
            return int(text)
        except ValueError:
            # Longer than the interpreter allows for int conversion
            return None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())
