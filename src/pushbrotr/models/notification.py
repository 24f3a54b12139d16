"""
Notification pipeline records: triggers, payloads, queue items and pending batches.

A [NotificationTrigger][pushbrotr.models.notification.NotificationTrigger]
is ephemeral: produced by the extractor and consumed by the aggregator in the
same tick. It is only persisted inside a
[PendingBatch][pushbrotr.models.notification.PendingBatch] while a
subscriber on hourly or daily frequency waits for a flush. A flush turns
triggers into one
[NotificationPayload][pushbrotr.models.notification.NotificationPayload]
wrapped in a [QueueItem][pushbrotr.models.notification.QueueItem].
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from ._validation import validate_str_not_empty, validate_timestamp
from .constants import Priority, TriggerType


@dataclass(frozen=True, slots=True)
class NotificationTrigger:
    """One reason to notify one or more subscribers about one event.

    Attributes:
        source_event_id: Id of the event that caused the trigger.
        type: Trigger category.
        priority: Delivery priority.
        target_subscriber_ids: Recipients (``npub`` ids), deduplicated.
        group_id: Group the event belongs to, if any.
        excerpt: Short text shown as the notification body.
        timestamp: ``created_at`` of the source event.
    """

    source_event_id: str
    type: TriggerType
    priority: Priority
    target_subscriber_ids: tuple[str, ...]
    group_id: str | None = None
    excerpt: str = ""
    timestamp: int = 0

    def __post_init__(self) -> None:
        validate_str_not_empty(self.source_event_id, "source_event_id")
        validate_timestamp(self.timestamp, "timestamp")
        object.__setattr__(self, "type", TriggerType(self.type))
        object.__setattr__(self, "priority", Priority(self.priority))
        object.__setattr__(
            self, "target_subscriber_ids", tuple(dict.fromkeys(self.target_subscriber_ids))
        )

    def for_recipient(self, subscriber_id: str) -> NotificationTrigger:
        """Copy of this trigger targeting only ``subscriber_id``."""
        return replace(self, target_subscriber_ids=(subscriber_id,))

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_event_id": self.source_event_id,
            "type": self.type.value,
            "priority": self.priority.value,
            "target_subscriber_ids": list(self.target_subscriber_ids),
            "group_id": self.group_id,
            "excerpt": self.excerpt,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationTrigger:
        return cls(
            source_event_id=data["source_event_id"],
            type=TriggerType(data["type"]),
            priority=Priority(data["priority"]),
            target_subscriber_ids=tuple(data.get("target_subscriber_ids", ())),
            group_id=data.get("group_id"),
            excerpt=data.get("excerpt", ""),
            timestamp=data.get("timestamp", 0),
        )


@dataclass(frozen=True, slots=True)
class NotificationPayload:
    """The JSON object encrypted and sent to the browser's service worker."""

    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    icon: str | None = None
    badge: str | None = None
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "title": self.title,
            "body": self.body,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }
        if self.icon:
            result["icon"] = self.icon
        if self.badge:
            result["badge"] = self.badge
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationPayload:
        return cls(
            title=data["title"],
            body=data.get("body", ""),
            data=dict(data.get("data") or {}),
            icon=data.get("icon"),
            badge=data.get("badge"),
            timestamp=data.get("timestamp", 0),
        )


@dataclass(frozen=True, slots=True)
class QueueItem:
    """A payload waiting to be pushed to one subscriber.

    Stored under ``queue:{id}``. Deleted on success, on a permanent
    subscription error, or once ``attempts`` reaches the configured maximum.
    """

    id: str
    subscriber_id: str
    payload: NotificationPayload
    priority: Priority = Priority.NORMAL
    attempts: int = 0
    created_at: int = 0
    next_attempt_at: int = 0
    last_error: str | None = None

    def __post_init__(self) -> None:
        validate_str_not_empty(self.id, "id")
        validate_str_not_empty(self.subscriber_id, "subscriber_id")
        validate_timestamp(self.attempts, "attempts")
        validate_timestamp(self.created_at, "created_at")
        validate_timestamp(self.next_attempt_at, "next_attempt_at")
        object.__setattr__(self, "priority", Priority(self.priority))

    def is_due(self, now: int) -> bool:
        return self.next_attempt_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subscriber_id": self.subscriber_id,
            "payload": self.payload.to_dict(),
            "priority": self.priority.value,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueItem:
        return cls(
            id=data["id"],
            subscriber_id=data["subscriber_id"],
            payload=NotificationPayload.from_dict(data["payload"]),
            priority=Priority(data.get("priority", Priority.NORMAL)),
            attempts=data.get("attempts", 0),
            created_at=data.get("created_at", 0),
            next_attempt_at=data.get("next_attempt_at", 0),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True, slots=True)
class PendingBatch:
    """Triggers accumulated for an hourly or daily subscriber.

    Stored under ``pending:{subscriber_id}``. ``since`` is when the first
    trigger was added and drives the flush schedule.
    """

    subscriber_id: str
    since: int
    triggers: tuple[NotificationTrigger, ...] = ()

    def add(self, triggers: Sequence[NotificationTrigger]) -> PendingBatch:
        """Return a batch with ``triggers`` appended, skipping already-pending source events."""
        known = {t.source_event_id for t in self.triggers}
        fresh = [t for t in triggers if t.source_event_id not in known]
        return replace(self, triggers=self.triggers + tuple(fresh))

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "since": self.since,
            "triggers": [t.to_dict() for t in self.triggers],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingBatch:
        return cls(
            subscriber_id=data["subscriber_id"],
            since=data["since"],
            triggers=tuple(NotificationTrigger.from_dict(t) for t in data.get("triggers", ())),
        )
