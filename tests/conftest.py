"""
Pytest configuration and shared fixtures for pushbrotr tests.

Provides:
- VAPID and API token environment for every test
- An in-memory store driven by a controllable clock
- A stub push transport recording every send
- Factories for subscribers, events and triggers
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from pushbrotr.core.store import MemoryStore
from pushbrotr.models.constants import Priority, TriggerType
from pushbrotr.models.event import Event
from pushbrotr.models.notification import NotificationPayload, NotificationTrigger
from pushbrotr.models.subscriber import Preferences, PushKeys
from pushbrotr.utils.webpush import DeliveryResult


NOW = 1_700_000_000  # 2023-11-14 22:13:20 UTC

# Subscriber ids are opaque strings; npub-shaped ids are only needed where
# content references are matched.
U1 = "npub1" + "q" * 58
U2 = "npub1" + "p" * 58
AUTHOR = "author1"


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


@pytest.fixture(autouse=True)
def push_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """VAPID keys and API token; configs read them during validation."""
    monkeypatch.setenv("VAPID_PRIVATE_KEY", "test-private-key")
    monkeypatch.setenv("VAPID_PUBLIC_KEY", "test-public-key")
    monkeypatch.setenv("PUSH_API_TOKEN", "test-token")
    monkeypatch.setenv("DB_PASSWORD", "test-password")


# ============================================================================
# Clock and Store
# ============================================================================


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    """In-memory store sharing the test clock (TTL expiry follows it)."""
    return MemoryStore(clock=clock)


# ============================================================================
# Push Transport
# ============================================================================


def delivery_result(status: int | None = 201, error: str = "") -> DeliveryResult:
    """A classified result as the real transport would return it."""
    if status is None:
        return DeliveryResult.transient(error or "Network error: ClientConnectorError")
    return DeliveryResult.from_status(status, error, elapsed_ms=12.5)


@pytest.fixture
def transport() -> MagicMock:
    """Stub transport: every send succeeds unless ``send`` is reconfigured."""
    stub = MagicMock()
    stub.send = AsyncMock(return_value=delivery_result(201))
    stub.open = AsyncMock()
    stub.close = AsyncMock()
    return stub


def failing_send(*statuses: int | None) -> AsyncMock:
    """A ``send`` mock returning one result per status, in order."""
    return AsyncMock(side_effect=[delivery_result(s, "boom") for s in statuses])


# ============================================================================
# Factories
# ============================================================================


PUSH_KEYS = PushKeys(p256dh="BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA", auth="tBHItJI5svbpez7KI4CCXg")


def endpoint_for(subscriber_id: str) -> str:
    return f"https://push.example.com/send/{subscriber_id}"


async def add_subscriber(
    registry: Any,
    subscriber_id: str,
    *,
    groups: Iterable[str] = (),
    keywords: Iterable[str] = (),
    **preferences: Any,
) -> Any:
    """Register a subscriber through the registry with optional preference overrides."""
    return await registry.subscribe(
        subscriber_id,
        endpoint_for(subscriber_id),
        PUSH_KEYS,
        Preferences(**preferences),
        groups=groups,
        keywords=keywords,
    )


def make_event(
    event_id: str = "e1",
    *,
    kind: int = 11,
    pubkey: str = AUTHOR,
    created_at: int = NOW - 60,
    tags: Sequence[Sequence[str]] = (),
    content: str = "hello",
) -> Event:
    return Event(
        id=event_id,
        pubkey=pubkey,
        kind=kind,
        created_at=created_at,
        tags=tuple(tuple(t) for t in tags),
        content=content,
        sig="00" * 64,
    )


def make_nostr_event(
    event_id: str,
    created_at: int,
    *,
    kind: int = 11,
    pubkey: str = AUTHOR,
    tags: Sequence[Sequence[str]] = (),
    content: str = "hello",
) -> MagicMock:
    """Mock of a ``nostr_sdk.Event`` exposing the accessors used by ``Event.from_nostr``."""
    ev = MagicMock()
    ev.id.return_value.to_hex.return_value = event_id
    ev.author.return_value.to_hex.return_value = pubkey
    ev.kind.return_value.as_u16.return_value = kind
    ev.created_at.return_value.as_secs.return_value = created_at
    ev.tags.return_value.to_vec.return_value = [
        MagicMock(as_vec=MagicMock(return_value=list(t))) for t in tags
    ]
    ev.content.return_value = content
    ev.signature.return_value = "00" * 64
    return ev


def make_trigger(
    event_id: str = "e1",
    *,
    type_: TriggerType = TriggerType.MENTION,
    priority: Priority = Priority.HIGH,
    targets: Sequence[str] = (U1,),
    group_id: str | None = None,
    excerpt: str = "hello",
    timestamp: int = NOW - 60,
) -> NotificationTrigger:
    return NotificationTrigger(
        source_event_id=event_id,
        type=type_,
        priority=priority,
        target_subscriber_ids=tuple(targets),
        group_id=group_id,
        excerpt=excerpt,
        timestamp=timestamp,
    )


def make_payload(title: str = "You were mentioned", body: str = "hello") -> NotificationPayload:
    return NotificationPayload(
        title=title,
        body=body,
        data={"url": "/settings/notifications"},
        icon="/icon-192x192.png",
        badge="/icon-96x96.png",
        timestamp=NOW,
    )
