"""
Persistent delivery queue with bounded retries.

Every notification that survives the aggregator becomes one
[QueueItem][pushbrotr.models.notification.QueueItem] stored under
``queue:{id}``. [DeliveryQueue.drain()][pushbrotr.services.common.queue.DeliveryQueue.drain]
pushes the due items and decides their fate:

| Transport outcome      | Action                                                     |
|------------------------|------------------------------------------------------------|
| success                | delete the item, record the delivery time                  |
| invalid subscription   | delete the item, unsubscribe the subscriber                |
| transient failure      | ``attempts += 1``; reschedule with backoff or dead-letter  |
| subscriber unknown     | delete the orphaned item                                   |

Backoff is logical: a failed item gets a later ``next_attempt_at`` and is
picked up by whichever drain runs after that time (the notifier tick or an
API kick). No task sleeps on behalf of an item.

Note:
    Subscribers are drained concurrently, bounded by ``concurrency``. The
    items of a single subscriber are sent one at a time under a
    per-subscriber lock. Rewrites of an item use compare-and-set; when
    another drainer changed the item first, this drainer leaves it alone.
"""

from __future__ import annotations

import asyncio
import time
import uuid
import weakref
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from pushbrotr.core.logger import Logger
from pushbrotr.core.metrics import observe_delivery
from pushbrotr.models.constants import KeyPrefix, Priority
from pushbrotr.models.notification import QueueItem
from pushbrotr.utils.webpush import DeliveryOutcome


if TYPE_CHECKING:
    from collections.abc import Callable

    from pushbrotr.core.store import Store
    from pushbrotr.models.notification import NotificationPayload
    from pushbrotr.models.subscriber import Subscriber
    from pushbrotr.utils.webpush import PushTransport

    from .configs import PushConfig
    from .registry import SubscriberRegistry
    from .telemetry import DeliveryMetrics


@dataclass(slots=True)
class DrainResult:
    """Counters for one drain pass."""

    delivered: int = 0
    retried: int = 0
    dead_lettered: int = 0
    invalid_subscriptions: int = 0
    orphaned: int = 0
    conflicts: int = 0

    @property
    def attempted(self) -> int:
        return self.delivered + self.retried + self.dead_lettered + self.invalid_subscriptions


class DeliveryQueue:
    """Enqueues payloads and drains due items through the push transport.

    Examples:
        ```python
        queue = DeliveryQueue(store, registry, transport, metrics, config.push)
        await queue.enqueue("npub1...", payload, Priority.HIGH)
        result = await queue.drain()
        ```
    """

    def __init__(
        self,
        store: Store,
        registry: SubscriberRegistry,
        transport: PushTransport,
        metrics: DeliveryMetrics,
        config: PushConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._transport = transport
        self._metrics = metrics
        self._config = config
        self._clock = clock
        self._logger = Logger("queue")
        self._semaphore = asyncio.Semaphore(config.concurrency)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def enqueue(
        self,
        subscriber_id: str,
        payload: NotificationPayload,
        priority: Priority = Priority.NORMAL,
        now: int | None = None,
    ) -> QueueItem:
        """Persist a new item, due immediately."""
        at = int(self._clock()) if now is None else now
        item = QueueItem(
            id=uuid.uuid4().hex,
            subscriber_id=subscriber_id,
            payload=payload,
            priority=priority,
            attempts=0,
            created_at=at,
            next_attempt_at=at,
        )
        await self._store.put(KeyPrefix.QUEUE.key(item.id), item.to_dict())
        self._logger.debug(
            "item_enqueued", item_id=item.id, subscriber_id=subscriber_id, priority=priority
        )
        return item

    async def pending(self) -> list[QueueItem]:
        """Every readable item currently in the queue, oldest first."""
        items = []
        for entry in await self._store.list_entries(KeyPrefix.QUEUE.scan):
            try:
                items.append(QueueItem.from_dict(entry.value))
            except (KeyError, TypeError, ValueError):
                continue
        return sorted(items, key=lambda i: (i.created_at, i.id))

    async def drain(self, now: int | None = None, subscriber_id: str | None = None) -> DrainResult:
        """Send every item with ``next_attempt_at <= now``.

        Args:
            now: Reference time; defaults to the clock.
            subscriber_id: Only drain this subscriber's items.

        Returns:
            Counters for this pass.
        """
        at = int(self._clock()) if now is None else now
        result = DrainResult()

        due: defaultdict[str, list[tuple[QueueItem, int]]] = defaultdict(list)
        for entry in await self._store.list_entries(KeyPrefix.QUEUE.scan):
            try:
                item = QueueItem.from_dict(entry.value)
            except (KeyError, TypeError, ValueError) as e:
                self._logger.warning("queue_item_invalid", key=entry.key, error=str(e))
                await self._store.delete(entry.key, expected_version=entry.version)
                continue
            if subscriber_id is not None and item.subscriber_id != subscriber_id:
                continue
            if item.is_due(at):
                due[item.subscriber_id].append((item, entry.version))

        if not due:
            return result

        try:
            async with asyncio.TaskGroup() as tg:
                for sid, items in due.items():
                    items.sort(key=lambda pair: (pair[0].created_at, pair[0].id))
                    tg.create_task(self._drain_subscriber(sid, items, at, result))
        except ExceptionGroup as eg:
            for exc in eg.exceptions:
                self._logger.error(
                    "drain_worker_failed", error=str(exc), error_type=type(exc).__name__
                )

        self._logger.info(
            "queue_drained",
            delivered=result.delivered,
            retried=result.retried,
            dead_lettered=result.dead_lettered,
            invalid=result.invalid_subscriptions,
            orphaned=result.orphaned,
            conflicts=result.conflicts,
        )
        return result

    def _lock_for(self, subscriber_id: str) -> asyncio.Lock:
        lock = self._locks.get(subscriber_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subscriber_id] = lock
        return lock

    async def _drain_subscriber(
        self,
        subscriber_id: str,
        items: list[tuple[QueueItem, int]],
        now: int,
        result: DrainResult,
    ) -> None:
        lock = self._lock_for(subscriber_id)
        async with lock, self._semaphore:
            subscriber = await self._registry.get(subscriber_id)
            if subscriber is None:
                for item, version in items:
                    await self._store.delete(
                        KeyPrefix.QUEUE.key(item.id), expected_version=version
                    )
                    result.orphaned += 1
                self._logger.info(
                    "orphaned_items_removed", subscriber_id=subscriber_id, count=len(items)
                )
                return

            for index, (item, version) in enumerate(items):
                gone = await self._deliver(subscriber, item, version, now, result)
                if gone:
                    for orphan, orphan_version in items[index + 1 :]:
                        await self._store.delete(
                            KeyPrefix.QUEUE.key(orphan.id), expected_version=orphan_version
                        )
                        result.orphaned += 1
                    return

    async def _deliver(
        self,
        subscriber: Subscriber,
        item: QueueItem,
        version: int,
        now: int,
        result: DrainResult,
    ) -> bool:
        """Push one item. Returns True if the subscription turned out to be gone."""
        key = KeyPrefix.QUEUE.key(item.id)

        # Another drainer may have sent or rescheduled the item meanwhile.
        entry = await self._store.get_entry(key)
        if entry is None or entry.version != version:
            result.conflicts += 1
            return False

        outcome = await self._transport.send(
            subscriber.push_endpoint,
            subscriber.push_keys,
            item.payload,
            ttl=self._config.ttl,
            urgency=item.priority,
        )
        observe_delivery(outcome.outcome.value, outcome.elapsed_ms)

        if outcome.outcome is DeliveryOutcome.SUCCESS:
            await self._store.delete(key, expected_version=version)
            self._metrics.record_success(outcome.elapsed_ms)
            result.delivered += 1
            self._logger.debug(
                "push_delivered",
                item_id=item.id,
                subscriber_id=subscriber.subscriber_id,
                elapsed_ms=round(outcome.elapsed_ms, 1),
            )
            return False

        if outcome.outcome is DeliveryOutcome.INVALID_SUBSCRIPTION:
            await self._store.delete(key, expected_version=version)
            await self._registry.unsubscribe(subscriber.subscriber_id)
            self._metrics.record_invalid_subscription()
            result.invalid_subscriptions += 1
            self._logger.warning(
                "subscription_invalid",
                item_id=item.id,
                subscriber_id=subscriber.subscriber_id,
                status=outcome.status_code,
            )
            return True

        error = outcome.error or "delivery failed"
        attempts = item.attempts + 1
        self._metrics.record_failure(outcome.reason or error)

        if attempts >= self._config.max_attempts:
            await self._store.delete(key, expected_version=version)
            result.dead_lettered += 1
            self._logger.warning(
                "dead_letter",
                item_id=item.id,
                subscriber_id=subscriber.subscriber_id,
                attempts=attempts,
                error=error,
            )
            return False

        retry = replace(
            item,
            attempts=attempts,
            next_attempt_at=now + self._config.retry_delay(attempts),
            last_error=error,
        )
        if await self._store.compare_and_set(key, retry.to_dict(), version):
            result.retried += 1
            self._logger.info(
                "push_retry_scheduled",
                item_id=item.id,
                subscriber_id=subscriber.subscriber_id,
                attempts=attempts,
                next_attempt_at=retry.next_attempt_at,
                error=error,
            )
        else:
            result.conflicts += 1
            self._logger.warning(
                "queue_item_conflict", item_id=item.id, subscriber_id=subscriber.subscriber_id
            )
        return False
