"""Relay event monitor.

Polls every configured relay once per tick for stored events of the
notification-relevant kinds, starting at the relay's watermark.

Each relay runs in its own task inside an ``asyncio.TaskGroup``; a relay
that refuses the connection, violates the protocol or exceeds its outer
timeout is logged and reported in
[PollResult.failed_relays][pushbrotr.services.notifier.monitor.PollResult]
without affecting the others.

Watermarks are not written here. The
[Notifier][pushbrotr.services.notifier.Notifier] commits
[PollResult.watermarks][pushbrotr.services.notifier.monitor.PollResult]
after the batch went through extraction and aggregation. A watermark never
lies in the future: an event dated ahead of the poll time only moves it up
to that time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nostr_sdk import Filter, Kind, Timestamp

from pushbrotr.core.exceptions import ConnectivityError
from pushbrotr.core.logger import format_kv_pairs
from pushbrotr.models.event import Event
from pushbrotr.utils.protocol import fetch_stored_events


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Collection, Sequence

    from nostr_sdk import Event as NostrEvent

    from pushbrotr.services.common.state import EventState

    from .configs import MonitorConfig

    Fetcher = Callable[[str, Filter, float], Awaitable[list[NostrEvent]]]


# =============================================================================
# Logging
# =============================================================================

_logger = logging.getLogger(__name__)


def _log(level: str, message: str, **kwargs: Any) -> None:
    """Log a structured message with key=value pairs."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    if _logger.isEnabledFor(log_level):
        formatted = message + format_kv_pairs(kwargs, max_value_length=None)
        _logger.log(log_level, formatted)


# =============================================================================
# Poll Result
# =============================================================================


@dataclass(slots=True)
class PollResult:
    """Outcome of one polling pass.

    Attributes:
        events: Events from all reachable relays, deduplicated by id, in
            ascending ``created_at`` order.
        watermarks: Highest ``created_at`` returned by each successful
            relay that returned at least one event, capped at the poll time.
        sightings: Per relay, the capped ``created_at`` of every parsed
            event by id.
        polled_relays: Relays that answered (possibly with nothing).
        failed_relays: Relays whose poll failed this tick.
        invalid_events: Events dropped because they could not be parsed.
    """

    events: list[Event] = field(default_factory=list)
    watermarks: dict[str, int] = field(default_factory=dict)
    sightings: dict[str, dict[str, int]] = field(default_factory=dict)
    polled_relays: list[str] = field(default_factory=list)
    failed_relays: list[str] = field(default_factory=list)
    invalid_events: int = 0

    def watermarks_without(self, rejected: Collection[str]) -> dict[str, int]:
        """Watermarks computed only from events whose id is not in ``rejected``."""
        if not rejected:
            return dict(self.watermarks)
        marks: dict[str, int] = {}
        for relay, seen in self.sightings.items():
            stamps = [ts for event_id, ts in seen.items() if event_id not in rejected]
            if stamps:
                marks[relay] = max(stamps)
        return marks


def build_filter(kinds: Sequence[int], since: int, limit: int) -> Filter:
    """The nostr-sdk filter for one relay poll."""
    return (
        Filter()
        .kinds([Kind(k) for k in kinds])
        .since(Timestamp.from_secs(since))
        .limit(limit)
    )


class RelayMonitor:
    """Fetches new events from a set of relays concurrently.

    Args:
        state: Watermark source.
        config: Kinds, timeouts and lookback window.
        fetcher: Coroutine ``(relay_url, filter, timeout) -> events``;
            defaults to [fetch_stored_events][pushbrotr.utils.protocol.fetch_stored_events].
    """

    def __init__(
        self,
        state: EventState,
        config: MonitorConfig,
        fetcher: Fetcher | None = None,
    ) -> None:
        self._state = state
        self._config = config
        self._fetch = fetcher or fetch_stored_events

    async def since_for(self, relay: str, now: int) -> int:
        """Start of the polling window for ``relay``."""
        watermark = await self._state.get_watermark(relay)
        if watermark is None:
            return max(now - self._config.lookback_seconds, 0)
        return watermark

    async def poll(self, relays: Sequence[str], now: int) -> PollResult:
        """Poll every relay once and merge the results."""
        result = PollResult()
        seen: dict[str, Event] = {}

        try:
            async with asyncio.TaskGroup() as tg:
                for relay in relays:
                    tg.create_task(self._poll_relay(relay, now, result, seen))
        except ExceptionGroup as eg:
            for exc in eg.exceptions:
                _log(
                    "ERROR",
                    "poll_worker_unexpected_exception",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        result.events = sorted(seen.values(), key=lambda e: (e.created_at, e.id))
        _log(
            "INFO",
            "poll_completed",
            relays=len(relays),
            failed=len(result.failed_relays),
            events=len(result.events),
        )
        return result

    async def _poll_relay(
        self,
        relay: str,
        now: int,
        result: PollResult,
        seen: dict[str, Event],
    ) -> None:
        try:
            since = await self.since_for(relay, now)
            nostr_filter = build_filter(self._config.kinds, since, self._config.limit)
            raw = await asyncio.wait_for(
                self._fetch(relay, nostr_filter, self._config.fetch_timeout),
                timeout=self._config.relay_timeout,
            )
        except (ConnectivityError, TimeoutError, OSError) as e:
            _log("WARNING", "relay_poll_failed", relay=relay, error=str(e) or "timeout")
            result.failed_relays.append(relay)
            return
        except Exception as e:  # nostr-sdk FFI errors surface as arbitrary types
            _log(
                "ERROR",
                "relay_poll_failed",
                relay=relay,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.failed_relays.append(relay)
            return

        highest: int | None = None
        fetched = 0
        sightings: dict[str, int] = {}
        for nostr_event in raw:
            try:
                event = Event.from_nostr(nostr_event)
            except (TypeError, ValueError) as e:
                result.invalid_events += 1
                _log("DEBUG", "event_parse_failed", relay=relay, error=str(e))
                continue
            fetched += 1
            seen.setdefault(event.id, event)
            created_at = min(event.created_at, now)
            sightings[event.id] = created_at
            if highest is None or created_at > highest:
                highest = created_at

        result.polled_relays.append(relay)
        if highest is not None:
            result.watermarks[relay] = highest
            result.sightings[relay] = sightings
        _log("DEBUG", "relay_polled", relay=relay, since=since, events=fetched)
