"""Pure frozen dataclasses with zero I/O for the notification pipeline.

The models layer is the foundation of the diamond DAG. It depends on no
other pushbrotr package; the only third-party import is ``nostr_sdk``,
used by [Event][pushbrotr.models.event.Event] for signature checks and SDK
conversion. Every model uses ``@dataclass(frozen=True, slots=True)`` and
validates in ``__post_init__`` so invalid instances never escape the
constructor.

Attributes:
    Event: Immutable Nostr event with cached
        [ParsedTags][pushbrotr.models.tags.ParsedTags].
    Subscriber: Registered push subscription with
        [Preferences][pushbrotr.models.subscriber.Preferences].
    NotificationTrigger: Why one event should notify some subscribers.
    NotificationPayload: The JSON object pushed to the browser.
    QueueItem: A payload waiting for delivery, with retry bookkeeping.
    PendingBatch: Triggers accumulated for hourly/daily subscribers.
    MetricsSnapshot: Delivery counters.
    LogEntry: One entry of the bounded log buffer.

Note:
    Store persistence uses each model's ``to_dict()``/``from_dict()`` pair;
    the dicts are plain JSON so they round-trip through JSONB unchanged.
"""

from .constants import (
    GROUP_POST_KINDS,
    MODERATION_KINDS,
    NOTIFICATION_KINDS,
    EventKind,
    Frequency,
    KeyPrefix,
    Priority,
    ServiceName,
    TriggerType,
)
from .event import Event
from .notification import NotificationPayload, NotificationTrigger, PendingBatch, QueueItem
from .subscriber import Preferences, PushKeys, QuietHours, Subscriber
from .tags import AddressTag, EventTag, GroupTag, ParsedTags, PubkeyTag, parse_tag
from .telemetry import LogEntry, MetricsSnapshot


__all__ = [
    "GROUP_POST_KINDS",
    "MODERATION_KINDS",
    "NOTIFICATION_KINDS",
    "AddressTag",
    "Event",
    "EventKind",
    "EventTag",
    "Frequency",
    "GroupTag",
    "KeyPrefix",
    "LogEntry",
    "MetricsSnapshot",
    "NotificationPayload",
    "NotificationTrigger",
    "ParsedTags",
    "PendingBatch",
    "Preferences",
    "Priority",
    "PubkeyTag",
    "PushKeys",
    "QueueItem",
    "QuietHours",
    "ServiceName",
    "Subscriber",
    "TriggerType",
    "parse_tag",
]
