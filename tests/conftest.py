"""Shared fixtures: fake sleep, recording observer, signed request helpers."""

import asyncio

import pytest

from hookwire.config import ProviderConfig, build_snapshot
from hookwire.core.bus import Notification, NotificationType
from hookwire.webhooks.signing import generate_hmac

SECRET = "s3cr3t"


class FakeSleep:
    """Records requested delays instead of waiting them out."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class RecordingObserver:
    def __init__(self):
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of_type(self, notification_type: NotificationType) -> list[Notification]:
        return [n for n in self.notifications if n.type is notification_type]


def sign(body: bytes, ts: int, secret: str = SECRET) -> dict[str, str]:
    return {
        "X-Webhook-Timestamp": str(ts),
        "X-Webhook-Signature": generate_hmac(secret, f"{ts}.".encode() + body),
    }


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def providers():
    return build_snapshot([
        ProviderConfig(name="acme", signing_secret=SECRET, timestamp_tolerance_seconds=300),
        ProviderConfig(
            name="limited",
            signing_secret="skip",
            rate_limit_requests=2,
            rate_limit_period_seconds=60,
        ),
        ProviderConfig(name="small", signing_secret="skip", max_payload_size_bytes=32),
        ProviderConfig(name="dormant", signing_secret=SECRET, active=False),
    ])


@pytest.fixture
def signer():
    return sign
