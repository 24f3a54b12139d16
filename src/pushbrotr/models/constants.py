"""Shared constants for the models layer.

Enumerations used across models, core and services. Placing them here
avoids circular dependencies between the layers.

See Also:
    [Event][pushbrotr.models.event.Event]: Carries an
        [EventKind][pushbrotr.models.constants.EventKind].
    [NotificationTrigger][pushbrotr.models.notification.NotificationTrigger]:
        Typed by [TriggerType][pushbrotr.models.constants.TriggerType] and
        [Priority][pushbrotr.models.constants.Priority].
"""

from __future__ import annotations

from enum import IntEnum, StrEnum


class ServiceName(StrEnum):
    """Canonical service identifiers used in logging and metrics labels.

    Attributes:
        NOTIFIER: Scheduled relay-to-push pipeline
            ([Notifier][pushbrotr.services.notifier.Notifier]).
        API: HTTP subscription API
            ([Api][pushbrotr.services.api.Api]).
    """

    NOTIFIER = "notifier"
    API = "api"


class EventKind(IntEnum):
    """Nostr event kinds that can produce notifications.

    Attributes:
        REACTION: Kind 7 (NIP-25).
        GROUP_CHAT: Kind 9, NIP-29 group chat message.
        COMMUNITY_POST: Kind 11, NIP-29 group thread.
        GROUP_POST: Kind 42, channel message.
        COMMENT: Kind 1111 (NIP-22).
        POST_APPROVED: Kind 4550, NIP-72 post approval.
        POST_REMOVED: Kind 4551, post removal.
        PUT_USER: Kind 9000, NIP-29 add member.
        REMOVE_USER: Kind 9001, NIP-29 remove member.
        DELETE_EVENT: Kind 9005, NIP-29 moderation delete.
        COMMUNITY_DEFINITION: Kind 34550, NIP-72 community definition
            (only referenced through ``a`` tags, never polled).
    """

    REACTION = 7
    GROUP_CHAT = 9
    COMMUNITY_POST = 11
    GROUP_POST = 42
    COMMENT = 1111
    POST_APPROVED = 4550
    POST_REMOVED = 4551
    PUT_USER = 9000
    REMOVE_USER = 9001
    DELETE_EVENT = 9005
    COMMUNITY_DEFINITION = 34550


MODERATION_KINDS: frozenset[int] = frozenset(
    {
        EventKind.POST_APPROVED,
        EventKind.POST_REMOVED,
        EventKind.PUT_USER,
        EventKind.REMOVE_USER,
        EventKind.DELETE_EVENT,
    }
)

GROUP_POST_KINDS: frozenset[int] = frozenset(
    {EventKind.GROUP_CHAT, EventKind.COMMUNITY_POST, EventKind.GROUP_POST}
)

NOTIFICATION_KINDS: tuple[int, ...] = (
    EventKind.REACTION,
    EventKind.GROUP_CHAT,
    EventKind.COMMUNITY_POST,
    EventKind.GROUP_POST,
    EventKind.COMMENT,
    EventKind.POST_APPROVED,
    EventKind.POST_REMOVED,
    EventKind.PUT_USER,
    EventKind.REMOVE_USER,
    EventKind.DELETE_EVENT,
)
"""Kinds requested from relays on every poll."""


class TriggerType(StrEnum):
    """Why a subscriber is being notified."""

    MENTION = "mention"
    GROUP_ACTIVITY = "group_activity"
    KEYWORD = "keyword"
    MODERATION = "moderation"
    REACTION = "reaction"


class Priority(StrEnum):
    """Notification priority.

    ``HIGH`` bypasses quiet hours and the rate limit and forces an immediate
    flush. It maps to the Web Push ``Urgency: high`` header.
    """

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Ordering key: higher is more urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.NORMAL: 1, Priority.HIGH: 2}


class Frequency(StrEnum):
    """How often a subscriber wants non-urgent notifications delivered."""

    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"


class KeyPrefix(StrEnum):
    """Store key namespaces. Keys are ``{prefix}:{identifier}``.

    ``METRICS`` and ``LOGS`` are singleton keys used as-is.
    """

    SUBSCRIBER = "sub"
    GROUP = "group"
    KEYWORD = "keyword"
    PROCESSED = "processed"
    WATERMARK = "watermark"
    QUEUE = "queue"
    PENDING = "pending"
    METRICS = "metrics:delivery"
    LOGS = "logs:buffer"

    def key(self, identifier: str) -> str:
        """Build the full store key for ``identifier``."""
        return f"{self.value}:{identifier}"

    @property
    def scan(self) -> str:
        """Prefix to pass to ``Store.list_entries`` for this namespace."""
        return f"{self.value}:"
