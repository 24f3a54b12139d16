"""
Filter and aggregate triggers into queued notifications.

[Aggregator.process()][pushbrotr.services.notifier.aggregator.Aggregator.process]
handles one batch of triggers per recipient in three steps.

**Gates**, evaluated per trigger and recipient:

1. Preference: the category flag must be enabled (keyword triggers always
   pass).
2. Quiet hours: non-high triggers are dropped while the subscriber's local
   hour is inside the quiet window.
3. Rate: non-high triggers are dropped once the subscriber reached
   ``rate_limit`` notifications in the current window, counting the ones
   accepted earlier in the same pass.

**Collapse**: a recipient gets at most one trigger per source event, the one
with the highest priority.

**Delivery**: when any surviving trigger is high priority or the subscriber
wants immediate delivery, the triggers (plus anything pending) become one
[QueueItem][pushbrotr.models.notification.QueueItem]. Otherwise they are
appended to the subscriber's ``pending:{id}`` batch, which
[flush_due()][pushbrotr.services.notifier.aggregator.Aggregator.flush_due]
turns into a queue item once it is older than the hourly or daily period.
Every flush gates the batch again against the subscriber's current
preferences, so a category switched off meanwhile is dropped and normal
triggers wait out quiet hours.

Filtering is not an error: every rejection is a
[GateDecision][pushbrotr.services.notifier.aggregator.GateDecision] logged at
debug level.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pushbrotr.core.logger import Logger
from pushbrotr.models.constants import Frequency, KeyPrefix, Priority, TriggerType
from pushbrotr.models.notification import NotificationPayload, PendingBatch


if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from pushbrotr.core.store import Store
    from pushbrotr.models.notification import NotificationTrigger, QueueItem
    from pushbrotr.models.subscriber import Subscriber
    from pushbrotr.services.common.configs import PayloadConfig
    from pushbrotr.services.common.queue import DeliveryQueue
    from pushbrotr.services.common.registry import SubscriberRegistry

    from .configs import AggregatorConfig


class GateDecision(StrEnum):
    """Result of running one trigger through the gates."""

    ACCEPT = "accept"
    UNKNOWN_SUBSCRIBER = "unknown_subscriber"
    PREFERENCE = "preference"
    QUIET_HOURS = "quiet_hours"
    RATE_LIMIT = "rate_limit"


_TITLES = {
    TriggerType.MENTION: "You were mentioned",
    TriggerType.KEYWORD: "Keyword alert",
    TriggerType.MODERATION: "Moderation notice",
    TriggerType.REACTION: "New reaction",
}

# (singular, plural) in the order they appear in aggregate bodies
_SUMMARY_LABELS = (
    (TriggerType.MENTION, "mention", "mentions"),
    (TriggerType.GROUP_ACTIVITY, "group update", "group updates"),
    (TriggerType.KEYWORD, "keyword alert", "keyword alerts"),
    (TriggerType.MODERATION, "moderation notice", "moderation notices"),
    (TriggerType.REACTION, "reaction", "reactions"),
)


@dataclass(slots=True)
class AggregationResult:
    """Outcome of one [process()][pushbrotr.services.notifier.aggregator.Aggregator.process] call.

    Attributes:
        enqueued: Queue items created by immediate flushes.
        pending: Subscriber ids whose pending batch grew.
        filtered: Number of (trigger, recipient) pairs rejected by a gate.
        decisions: Rejections per gate.
    """

    enqueued: list[QueueItem] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    filtered: int = 0
    decisions: Counter[GateDecision] = field(default_factory=Counter)

    def reject(self, decision: GateDecision) -> None:
        self.filtered += 1
        self.decisions[decision] += 1


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


def local_hour(now: int, timezone: str) -> int:
    """Hour of ``now`` in ``timezone``; unknown zones fall back to UTC."""
    try:
        tz: Any = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        tz = UTC
    return datetime.fromtimestamp(now, tz).hour


def in_quiet_hours(subscriber: Subscriber, now: int) -> bool:
    quiet = subscriber.preferences.quiet_hours
    if quiet is None:
        return False
    return quiet.contains(local_hour(now, quiet.timezone))


def window_count(subscriber: Subscriber, now: int, window: int) -> int:
    """Notifications already delivered in the current rate window."""
    last = subscriber.last_notified_at
    if last is None or now - last >= window:
        return 0
    return subscriber.notification_count


def collapse(triggers: Sequence[NotificationTrigger]) -> list[NotificationTrigger]:
    """Keep one trigger per source event, the highest priority one, in first-seen order."""
    best: dict[str, NotificationTrigger] = {}
    for trigger in triggers:
        current = best.get(trigger.source_event_id)
        if current is None or trigger.priority.rank > current.priority.rank:
            best[trigger.source_event_id] = trigger
    return list(best.values())


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


def group_label(group_id: str) -> str:
    """Short display name: the identifier of a community coordinate, or the id itself."""
    parts = group_id.split(":", 2)
    if len(parts) == 3 and parts[0].isdigit() and parts[2]:  # noqa: PLR2004
        return parts[2]
    return group_id


def build_payload(
    triggers: Sequence[NotificationTrigger],
    config: PayloadConfig,
    now: int,
) -> NotificationPayload:
    """Render one notification for a non-empty list of triggers."""
    if len(triggers) == 1:
        trigger = triggers[0]
        if trigger.type is TriggerType.GROUP_ACTIVITY:
            title = f"Activity in {group_label(trigger.group_id or 'your group')}"
        else:
            title = _TITLES[trigger.type]
        if trigger.group_id:
            url = f"/group/{quote(trigger.group_id, safe=':')}?post={trigger.source_event_id}"
        else:
            url = config.default_url
        data: dict[str, Any] = {
            "eventId": trigger.source_event_id,
            "groupId": trigger.group_id,
            "type": trigger.type.value,
            "url": url,
        }
        body = trigger.excerpt
    else:
        counts = Counter(t.type for t in triggers)
        body = ", ".join(
            f"{counts[kind]} {singular if counts[kind] == 1 else plural}"
            for kind, singular, plural in _SUMMARY_LABELS
            if counts[kind]
        )
        title = f"{len(triggers)} new notifications"
        group_ids = list(dict.fromkeys(t.group_id for t in triggers if t.group_id))
        url = config.default_url
        if len(group_ids) == 1:
            url = f"/group/{quote(group_ids[0], safe=':')}"
        data = {
            "eventIds": [t.source_event_id for t in triggers],
            "groupIds": group_ids,
            "url": url,
        }

    return NotificationPayload(
        title=title,
        body=body,
        data=data,
        icon=config.icon,
        badge=config.badge,
        timestamp=now,
    )


def _top_priority(triggers: Sequence[NotificationTrigger]) -> Priority:
    return max((t.priority for t in triggers), key=lambda p: p.rank)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class Aggregator:
    """Gates triggers per recipient and turns them into queue items or pending batches.

    Examples:
        ```python
        aggregator = Aggregator(store, registry, queue, config.aggregator, config.push.payload)
        result = await aggregator.process(triggers, now=int(time.time()))
        flushed = await aggregator.flush_due(now=int(time.time()))
        ```
    """

    def __init__(
        self,
        store: Store,
        registry: SubscriberRegistry,
        queue: DeliveryQueue,
        config: AggregatorConfig,
        payload: PayloadConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._queue = queue
        self._config = config
        self._payload = payload
        self._clock = clock
        self._logger = Logger("aggregator")

    def _period(self, frequency: Frequency) -> int:
        if frequency is Frequency.DAILY:
            return self._config.daily_period
        if frequency is Frequency.HOURLY:
            return self._config.hourly_period
        return 0

    def gate(self, subscriber: Subscriber, trigger: NotificationTrigger, now: int) -> GateDecision:
        """Preference and quiet-hours gates (the rate gate needs pass state)."""
        if not subscriber.preferences.allows(trigger.type):
            return GateDecision.PREFERENCE
        if trigger.priority is not Priority.HIGH and in_quiet_hours(subscriber, now):
            return GateDecision.QUIET_HOURS
        return GateDecision.ACCEPT

    async def process(
        self, triggers: Sequence[NotificationTrigger], now: int | None = None
    ) -> AggregationResult:
        """Gate, collapse and deliver or batch ``triggers``."""
        at = int(self._clock()) if now is None else now
        result = AggregationResult()

        by_recipient: dict[str, list[NotificationTrigger]] = {}
        for trigger in triggers:
            for subscriber_id in trigger.target_subscriber_ids:
                by_recipient.setdefault(subscriber_id, []).append(
                    trigger.for_recipient(subscriber_id)
                )

        for subscriber_id, candidates in by_recipient.items():
            subscriber = await self._registry.get(subscriber_id)
            if subscriber is None:
                for _ in candidates:
                    result.reject(GateDecision.UNKNOWN_SUBSCRIBER)
                continue

            accepted = self._accept(subscriber, candidates, at, result)
            if not accepted:
                continue

            immediate = subscriber.preferences.frequency is Frequency.IMMEDIATE
            if immediate or any(t.priority is Priority.HIGH for t in accepted):
                item = await self.flush(subscriber_id, accepted, at, result)
                if item is not None:
                    result.enqueued.append(item)
            else:
                await self._append_pending(subscriber_id, accepted, at)
                result.pending.append(subscriber_id)

        self._logger.info(
            "triggers_aggregated",
            triggers=len(triggers),
            enqueued=len(result.enqueued),
            pending=len(result.pending),
            filtered=result.filtered,
        )
        return result

    def _accept(
        self,
        subscriber: Subscriber,
        candidates: Sequence[NotificationTrigger],
        now: int,
        result: AggregationResult,
    ) -> list[NotificationTrigger]:
        passed = []
        for trigger in candidates:
            decision = self.gate(subscriber, trigger, now)
            if decision is GateDecision.ACCEPT:
                passed.append(trigger)
            else:
                result.reject(decision)
                self._log_rejection(subscriber, trigger, decision)

        accepted: list[NotificationTrigger] = []
        used = window_count(subscriber, now, self._config.rate_window)
        for trigger in collapse(passed):
            limited = used + len(accepted) >= self._config.rate_limit
            if trigger.priority is not Priority.HIGH and limited:
                result.reject(GateDecision.RATE_LIMIT)
                self._log_rejection(subscriber, trigger, GateDecision.RATE_LIMIT)
                continue
            accepted.append(trigger)
        return accepted

    def _log_rejection(
        self, subscriber: Subscriber, trigger: NotificationTrigger, decision: GateDecision
    ) -> None:
        self._logger.debug(
            "trigger_filtered",
            subscriber_id=subscriber.subscriber_id,
            event_id=trigger.source_event_id,
            type=trigger.type.value,
            gate=decision.value,
        )

    async def _append_pending(
        self, subscriber_id: str, triggers: Sequence[NotificationTrigger], now: int
    ) -> None:
        def apply(current: Any) -> Any:
            batch = PendingBatch.from_dict(current) if current else PendingBatch(subscriber_id, now)
            return batch.add(triggers).to_dict()

        await self._store.update(KeyPrefix.PENDING.key(subscriber_id), apply)
        self._logger.debug("triggers_pending", subscriber_id=subscriber_id, count=len(triggers))

    async def flush(
        self,
        subscriber_id: str,
        triggers: Sequence[NotificationTrigger] = (),
        now: int | None = None,
        result: AggregationResult | None = None,
    ) -> QueueItem | None:
        """Combine the pending batch with ``triggers`` into one queue item.

        Everything is gated again against the subscriber's current
        preferences: disabled categories are dropped, and non-high triggers
        inside quiet hours stay pending for a later flush.

        Returns:
            The enqueued item, or ``None`` when there was nothing to send.
        """
        at = int(self._clock()) if now is None else now
        subscriber = await self._registry.get(subscriber_id)
        if subscriber is None:
            return None

        send: list[NotificationTrigger] = []
        held: list[NotificationTrigger] = []
        dropped: list[NotificationTrigger] = []

        def apply(current: Any) -> Any:
            send.clear()
            held.clear()
            dropped.clear()
            batch = PendingBatch.from_dict(current) if current else PendingBatch(subscriber_id, at)
            for trigger in collapse(batch.triggers + tuple(triggers)):
                decision = self.gate(subscriber, trigger, at)
                if decision is GateDecision.ACCEPT:
                    send.append(trigger)
                elif decision is GateDecision.QUIET_HOURS:
                    held.append(trigger)
                else:
                    dropped.append(trigger)
            if not held:
                return None
            return PendingBatch(subscriber_id, batch.since, tuple(held)).to_dict()

        await self._store.update(KeyPrefix.PENDING.key(subscriber_id), apply)

        for trigger in dropped:
            self._log_rejection(subscriber, trigger, GateDecision.PREFERENCE)
            if result is not None:
                result.reject(GateDecision.PREFERENCE)
        if held:
            self._logger.debug("triggers_held", subscriber_id=subscriber_id, count=len(held))
        if not send:
            return None

        payload = build_payload(send, self._payload, at)
        item = await self._queue.enqueue(subscriber_id, payload, _top_priority(send), now=at)
        await self._registry.record_notifications(
            subscriber_id, len(send), now=at, window=self._config.rate_window
        )
        self._logger.info(
            "notification_enqueued",
            subscriber_id=subscriber_id,
            item_id=item.id,
            triggers=len(send),
            filtered=len(dropped),
            priority=item.priority.value,
        )
        return item

    async def flush_due(self, now: int | None = None) -> list[QueueItem]:
        """Flush every pending batch older than its subscriber's period."""
        at = int(self._clock()) if now is None else now
        flushed: list[QueueItem] = []

        for entry in await self._store.list_entries(KeyPrefix.PENDING.scan):
            subscriber_id = entry.key[len(KeyPrefix.PENDING.scan) :]
            try:
                batch = PendingBatch.from_dict(entry.value)
            except (KeyError, TypeError, ValueError) as e:
                self._logger.warning("pending_batch_invalid", key=entry.key, error=str(e))
                await self._store.delete(entry.key, expected_version=entry.version)
                continue

            subscriber = await self._registry.get(subscriber_id)
            if subscriber is None:
                await self._store.delete(entry.key, expected_version=entry.version)
                continue

            if at - batch.since < self._period(subscriber.preferences.frequency):
                continue

            item = await self.flush(subscriber_id, now=at)
            if item is not None:
                flushed.append(item)

        if flushed:
            self._logger.info("pending_batches_flushed", count=len(flushed))
        return flushed
