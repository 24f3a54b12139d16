"""Notifier service for pushbrotr.

Watches the configured relays and turns new events into Web Push
notifications. One [run()][pushbrotr.services.notifier.Notifier.run] cycle
performs, in order:

1. Reconcile the group and keyword indices (when ``reconcile_indices``).
2. Poll every relay since its watermark
   ([RelayMonitor][pushbrotr.services.notifier.monitor.RelayMonitor]).
3. Extract triggers from the new events
   ([TriggerExtractor][pushbrotr.services.notifier.extractor.TriggerExtractor]).
4. Gate, collapse and enqueue or batch them
   ([Aggregator][pushbrotr.services.notifier.aggregator.Aggregator]).
5. Commit the per-relay watermarks.
6. Flush pending hourly and daily batches that are due.
7. Drain the delivery queue, including retries whose backoff expired
   ([DeliveryQueue][pushbrotr.services.common.queue.DeliveryQueue]).
8. Purge expired store keys (processed-event markers).
9. Persist delivery metrics and the log buffer.
10. Publish the cycle gauges and counters.

Note:
    Watermarks are committed only after step 4 finished, so a cycle that
    crashes mid-way re-fetches the same events next time. Processed-event
    markers make that replay harmless.

See Also:
    [NotifierConfig][pushbrotr.services.notifier.NotifierConfig]:
        Configuration model for this service.
    [Api][pushbrotr.services.api.Api]: The HTTP service sharing the same
        store, registry and queue.

Examples:
    ```python
    from pushbrotr.core import StoreConfig, create_store
    from pushbrotr.services import Notifier

    store = create_store(StoreConfig(backend="memory"))
    notifier = Notifier.from_yaml("config/services/notifier.yaml", store=store)

    async with store, notifier:
        await notifier.run_forever()
    ```
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, ClassVar, Self

from pushbrotr.core.base_service import BaseService
from pushbrotr.core.exceptions import ConfigurationError
from pushbrotr.models.constants import ServiceName
from pushbrotr.services.common.queue import DeliveryQueue
from pushbrotr.services.common.registry import SubscriberRegistry
from pushbrotr.services.common.state import EventState
from pushbrotr.services.common.telemetry import DeliveryMetrics, LogBuffer
from pushbrotr.utils.webpush import PushTransport

from .aggregator import Aggregator
from .configs import NotifierConfig
from .extractor import TriggerExtractor, Verifier
from .monitor import RelayMonitor


if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from pushbrotr.core.store import Store

    from .monitor import Fetcher


class Notifier(BaseService[NotifierConfig]):
    """Relay-to-push notification pipeline.

    Args:
        store: Shared key-value store.
        config: Service configuration; required because ``relays`` has no
            default.
        transport: Push transport; built from ``config.push`` when omitted.
        fetcher: Relay fetch coroutine passed to the monitor.
        verifier: Signature check passed to the extractor.
        clock: Time source in unix seconds.

    Raises:
        ConfigurationError: If no configuration or no relays are given.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.NOTIFIER
    CONFIG_CLASS: ClassVar[type[NotifierConfig]] = NotifierConfig

    def __init__(
        self,
        store: Store,
        config: NotifierConfig | None = None,
        *,
        transport: PushTransport | None = None,
        fetcher: Fetcher | None = None,
        verifier: Verifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if config is None or not config.relays:
            raise ConfigurationError("The notifier needs at least one relay URL")
        super().__init__(store=store, config=config)
        self._config: NotifierConfig
        self._clock = clock

        push = self._config.push
        self._state = EventState(store, self._config.extractor.processed_ttl)
        self._registry = SubscriberRegistry(store, clock)
        self._metrics = DeliveryMetrics(clock)
        self._logs = LogBuffer(clock=clock)
        self._log_handler = self._logs.handler()
        self._transport = transport or PushTransport(push.vapid, push.request_timeout)
        self._queue = DeliveryQueue(
            store, self._registry, self._transport, self._metrics, push, clock
        )
        self._monitor = RelayMonitor(self._state, self._config.monitor, fetcher)
        self._extractor = TriggerExtractor(
            self._state, self._registry, self._config.extractor, verifier
        )
        self._aggregator = Aggregator(
            store, self._registry, self._queue, self._config.aggregator, push.payload, clock
        )

    @property
    def registry(self) -> SubscriberRegistry:
        return self._registry

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    @property
    def metrics(self) -> DeliveryMetrics:
        return self._metrics

    @property
    def logs(self) -> LogBuffer:
        return self._logs

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        await super().__aenter__()
        await self._transport.open()
        await self._metrics.load(self._store)
        await self._logs.load(self._store)
        logging.getLogger().addHandler(self._log_handler)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        logging.getLogger().removeHandler(self._log_handler)
        await self._metrics.persist(self._store)
        await self._logs.persist(self._store)
        await self._transport.close()
        await super().__aexit__(exc_type, exc_val, exc_tb)

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Execute one complete poll-to-push cycle."""
        now = int(self._clock())
        cycle_start = time.monotonic()
        relays = self._config.relays
        self._logger.info("cycle_started", relays=len(relays))
        self._extractor.reset_counters()

        repaired = 0
        if self._config.reconcile_indices:
            repaired = await self._registry.reconcile_indices()

        poll = await self._monitor.poll(relays, now)
        triggers = await self._extractor.extract(poll.events)
        aggregation = await self._aggregator.process(triggers, now)

        advanced = 0
        # events with a bad signature do not move the watermark
        for relay, created_at in poll.watermarks_without(self._extractor.rejected_ids).items():
            if await self._state.advance_watermark(relay, created_at):
                advanced += 1

        flushed = await self._aggregator.flush_due(now)
        drained = await self._queue.drain(now)
        purged = await self._store.purge_expired()

        await self._metrics.persist(self._store)
        await self._logs.persist(self._store)

        stats: dict[str, Any] = {
            "relays_polled": len(poll.polled_relays),
            "relays_failed": len(poll.failed_relays),
            "events_fetched": len(poll.events),
            "events_invalid": self._extractor.invalid_events + poll.invalid_events,
            "events_skipped": self._extractor.skipped_events,
            "triggers": len(triggers),
            "filtered": aggregation.filtered,
            "enqueued": len(aggregation.enqueued) + len(flushed),
            "pending": len(aggregation.pending),
            "delivered": drained.delivered,
            "retried": drained.retried,
            "dead_lettered": drained.dead_lettered,
            "invalid_subscriptions": drained.invalid_subscriptions,
        }
        for name, value in stats.items():
            self.set_gauge(name, value)
        self.inc_counter("total_events_fetched", stats["events_fetched"])
        self.inc_counter("total_triggers", stats["triggers"])
        self.inc_counter("total_enqueued", stats["enqueued"])
        self.inc_counter("total_delivered", drained.delivered)
        self.inc_counter("total_failed", drained.retried + drained.dead_lettered)
        self.inc_counter("total_dead_lettered", drained.dead_lettered)
        self.inc_counter("total_invalid_subscriptions", drained.invalid_subscriptions)

        self._logger.info(
            "cycle_summary",
            **stats,
            watermarks_advanced=advanced,
            indices_repaired=repaired,
            keys_purged=purged,
            duration_s=round(time.monotonic() - cycle_start, 2),
        )
