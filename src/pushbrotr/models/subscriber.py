"""
Subscriber records and their notification preferences.

A [Subscriber][pushbrotr.models.subscriber.Subscriber] is owned by the
[SubscriberRegistry][pushbrotr.services.common.registry.SubscriberRegistry]
and persisted under ``sub:{subscriber_id}``. All types here are frozen;
changes produce new instances through ``dataclasses.replace``.

The ``subscriber_id`` is the subscriber's Nostr identity in ``npub`` form, so
that ``p`` tag mentions can be matched directly against registered ids.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ._validation import validate_hour, validate_str_not_empty, validate_timestamp
from .constants import Frequency, TriggerType


@dataclass(frozen=True, slots=True)
class PushKeys:
    """Browser-generated keys of a Web Push subscription (both base64url)."""

    p256dh: str
    auth: str

    def __post_init__(self) -> None:
        validate_str_not_empty(self.p256dh, "p256dh")
        validate_str_not_empty(self.auth, "auth")

    def to_dict(self) -> dict[str, str]:
        return {"p256dh": self.p256dh, "auth": self.auth}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PushKeys:
        return cls(p256dh=data["p256dh"], auth=data["auth"])


@dataclass(frozen=True, slots=True)
class QuietHours:
    """Daily window during which non-urgent notifications are suppressed.

    ``start_hour > end_hour`` describes a window wrapping midnight
    (``22 -> 7`` is quiet from 22:00 until 06:59).
    """

    start_hour: int
    end_hour: int
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        validate_hour(self.start_hour, "start_hour")
        validate_hour(self.end_hour, "end_hour")
        validate_str_not_empty(self.timezone, "timezone")

    def contains(self, hour: int) -> bool:
        """Whether the local ``hour`` falls inside the quiet window."""
        if self.start_hour > self.end_hour:
            return hour >= self.start_hour or hour < self.end_hour
        return self.start_hour <= hour < self.end_hour

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_hour": self.start_hour,
            "end_hour": self.end_hour,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuietHours:
        return cls(
            start_hour=data["start_hour"],
            end_hour=data["end_hour"],
            timezone=data.get("timezone") or "UTC",
        )


_TYPE_FLAGS = {
    TriggerType.MENTION: "mentions",
    TriggerType.GROUP_ACTIVITY: "group_activity",
    TriggerType.REACTION: "reactions",
    TriggerType.MODERATION: "moderation",
}


@dataclass(frozen=True, slots=True)
class Preferences:
    """Per-category opt-ins, delivery frequency and optional quiet hours.

    The defaults are what a fresh subscription gets: everything except
    reactions, delivered immediately.
    """

    mentions: bool = True
    group_activity: bool = True
    reactions: bool = False
    moderation: bool = True
    frequency: Frequency = Frequency.IMMEDIATE
    quiet_hours: QuietHours | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "frequency", Frequency(self.frequency))

    def allows(self, trigger_type: TriggerType) -> bool:
        """Whether this category is enabled.

        Keyword triggers are always allowed: registering the keyword is the
        opt-in.
        """
        flag = _TYPE_FLAGS.get(trigger_type)
        return True if flag is None else bool(getattr(self, flag))

    def to_dict(self) -> dict[str, Any]:
        return {
            "mentions": self.mentions,
            "group_activity": self.group_activity,
            "reactions": self.reactions,
            "moderation": self.moderation,
            "frequency": self.frequency.value,
            "quiet_hours": self.quiet_hours.to_dict() if self.quiet_hours else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Preferences:
        quiet = data.get("quiet_hours")
        return cls(
            mentions=data.get("mentions", True),
            group_activity=data.get("group_activity", True),
            reactions=data.get("reactions", False),
            moderation=data.get("moderation", True),
            frequency=Frequency(data.get("frequency", Frequency.IMMEDIATE)),
            quiet_hours=QuietHours.from_dict(quiet) if quiet else None,
        )


def normalize_keywords(keywords: Any) -> frozenset[str]:
    """Lowercase and strip keywords, dropping empty ones."""
    return frozenset(k.strip().lower() for k in keywords if k and k.strip())


@dataclass(frozen=True, slots=True)
class Subscriber:
    """A registered push subscription.

    Attributes:
        subscriber_id: Nostr identity (``npub1...``).
        push_endpoint: Push service URL issued by the browser.
        push_keys: Encryption keys for the endpoint.
        preferences: Notification preferences.
        groups: Subscribed group ids.
        keywords: Subscribed keywords, lowercased.
        created_at: Registration time (unix seconds).
        last_notified_at: Start of the current rate window, or ``None``.
        notification_count: Notifications delivered in the current window.
    """

    subscriber_id: str
    push_endpoint: str
    push_keys: PushKeys
    preferences: Preferences = field(default_factory=Preferences)
    groups: frozenset[str] = frozenset()
    keywords: frozenset[str] = frozenset()
    created_at: int = 0
    last_notified_at: int | None = None
    notification_count: int = 0

    def __post_init__(self) -> None:
        validate_str_not_empty(self.subscriber_id, "subscriber_id")
        validate_str_not_empty(self.push_endpoint, "push_endpoint")
        validate_timestamp(self.created_at, "created_at")
        validate_timestamp(self.notification_count, "notification_count")
        if self.last_notified_at is not None:
            validate_timestamp(self.last_notified_at, "last_notified_at")
        object.__setattr__(self, "groups", frozenset(g for g in self.groups if g))
        object.__setattr__(self, "keywords", normalize_keywords(self.keywords))

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "push_endpoint": self.push_endpoint,
            "push_keys": self.push_keys.to_dict(),
            "preferences": self.preferences.to_dict(),
            "groups": sorted(self.groups),
            "keywords": sorted(self.keywords),
            "created_at": self.created_at,
            "last_notified_at": self.last_notified_at,
            "notification_count": self.notification_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subscriber:
        return cls(
            subscriber_id=data["subscriber_id"],
            push_endpoint=data["push_endpoint"],
            push_keys=PushKeys.from_dict(data["push_keys"]),
            preferences=Preferences.from_dict(data.get("preferences") or {}),
            groups=frozenset(data.get("groups", ())),
            keywords=frozenset(data.get("keywords", ())),
            created_at=data.get("created_at", 0),
            last_notified_at=data.get("last_notified_at"),
            notification_count=data.get("notification_count", 0),
        )
