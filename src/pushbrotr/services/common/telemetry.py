"""
Delivery metrics and the bounded log buffer.

Both observers are shared by the notifier and the API process through the
store (``metrics:delivery`` and ``logs:buffer``). Each process accumulates
changes in memory and merges them into the stored value on
``persist()`` with [Store.update()][pushbrotr.core.store.Store.update], so
neither process overwrites the other's counts.

Neither observer may interfere with delivery: every store failure is logged
and swallowed.

See Also:
    [DELIVERY_DURATION_SECONDS][pushbrotr.core.metrics.DELIVERY_DURATION_SECONDS]:
        Prometheus histogram recorded next to
        [DeliveryMetrics.record_success()][pushbrotr.services.common.telemetry.DeliveryMetrics.record_success].
"""

from __future__ import annotations

import logging
import time
import traceback
from collections import Counter, deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pushbrotr.core.logger import Logger
from pushbrotr.models.constants import KeyPrefix
from pushbrotr.models.telemetry import LogEntry, MetricsSnapshot


if TYPE_CHECKING:
    from pushbrotr.core.store import Store


MAX_DELIVERY_SAMPLES = 1000
DEFAULT_LOG_CAPACITY = 1000
BUFFER_LOGGER_NAME = "push"


def _average(samples: tuple[float, ...]) -> float:
    return sum(samples) / len(samples) if samples else 0.0


def _plain(data: dict[str, Any]) -> dict[str, Any]:
    """Values the store can serialize: JSON scalars as-is, anything else as ``str``."""
    return {
        k: v if v is None or isinstance(v, (str, int, float, bool)) else str(v)
        for k, v in data.items()
    }


def merge_snapshots(base: MetricsSnapshot, delta: MetricsSnapshot) -> MetricsSnapshot:
    """Add ``delta`` counters onto ``base``, keeping the newest delivery samples."""
    samples = (base.delivery_times_ms + delta.delivery_times_ms)[-MAX_DELIVERY_SAMPLES:]
    errors = Counter(base.errors)
    errors.update(delta.errors)
    stamps = [t for t in (base.last_updated, delta.last_updated) if t is not None]
    return MetricsSnapshot(
        total_sent=base.total_sent + delta.total_sent,
        succeeded=base.succeeded + delta.succeeded,
        failed=base.failed + delta.failed,
        invalid_subscriptions=base.invalid_subscriptions + delta.invalid_subscriptions,
        delivery_times_ms=samples,
        average_delivery_ms=_average(samples),
        errors=dict(errors),
        last_updated=max(stamps) if stamps else None,
    )


# ---------------------------------------------------------------------------
# Delivery Metrics
# ---------------------------------------------------------------------------


class DeliveryMetrics:
    """Counters for push delivery outcomes.

    ``total_sent`` counts final outcomes (success or failure); invalid
    subscriptions are counted separately.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._logger = Logger("telemetry")
        self._base = MetricsSnapshot()
        self._reset_delta()

    def _reset_delta(self) -> None:
        self._sent = 0
        self._succeeded = 0
        self._failed = 0
        self._invalid = 0
        self._times: deque[float] = deque(maxlen=MAX_DELIVERY_SAMPLES)
        self._errors: Counter[str] = Counter()
        self._updated: int | None = None

    def _touch(self) -> None:
        self._updated = int(self._clock())

    def record_success(self, duration_ms: float) -> None:
        self._sent += 1
        self._succeeded += 1
        self._times.append(round(float(duration_ms), 3))
        self._touch()

    def record_failure(self, reason: str) -> None:
        self._sent += 1
        self._failed += 1
        self._errors[reason] += 1
        self._touch()

    def record_invalid_subscription(self) -> None:
        self._invalid += 1
        self._touch()

    def _delta(self) -> MetricsSnapshot:
        samples = tuple(self._times)
        return MetricsSnapshot(
            total_sent=self._sent,
            succeeded=self._succeeded,
            failed=self._failed,
            invalid_subscriptions=self._invalid,
            delivery_times_ms=samples,
            average_delivery_ms=_average(samples),
            errors=dict(self._errors),
            last_updated=self._updated,
        )

    def get_metrics(self) -> MetricsSnapshot:
        """Loaded counters plus everything recorded since."""
        return merge_snapshots(self._base, self._delta())

    def get_success_rate(self) -> float:
        """Percentage of successful deliveries, or 0 when nothing was sent."""
        snapshot = self.get_metrics()
        if snapshot.total_sent == 0:
            return 0.0
        return snapshot.succeeded / snapshot.total_sent * 100

    def get_top_errors(self, limit: int = 5) -> list[tuple[str, int]]:
        """The most frequent failure reasons, most frequent first."""
        return Counter(self.get_metrics().errors).most_common(limit)

    def reset(self) -> None:
        """Drop all counters held by this process (the stored copy is untouched until persist)."""
        self._base = MetricsSnapshot()
        self._reset_delta()

    async def load(self, store: Store) -> None:
        """Replace the baseline with the stored snapshot."""
        try:
            value = await store.get(KeyPrefix.METRICS.value)
            self._base = MetricsSnapshot.from_dict(value) if value else MetricsSnapshot()
        except Exception as e:  # observers never break the pipeline
            self._logger.warning("metrics_load_failed", error=str(e))

    def _restore(self, delta: MetricsSnapshot) -> None:
        """Put an unpersisted ``delta`` back in front of what was recorded since."""
        self._sent += delta.total_sent
        self._succeeded += delta.succeeded
        self._failed += delta.failed
        self._invalid += delta.invalid_subscriptions
        self._times = deque(
            delta.delivery_times_ms + tuple(self._times), maxlen=MAX_DELIVERY_SAMPLES
        )
        self._errors.update(delta.errors)
        stamps = [t for t in (self._updated, delta.last_updated) if t is not None]
        self._updated = max(stamps) if stamps else None

    async def persist(self, store: Store) -> None:
        """Merge the changes recorded since the last persist into the stored snapshot.

        The delta is detached before the write, so deliveries recorded while
        it is in flight go into the next persist.
        """
        delta = self._delta()
        previous = self._base
        self._base = merge_snapshots(previous, delta)
        self._reset_delta()

        def apply(current: Any) -> Any:
            stored = MetricsSnapshot.from_dict(current) if current else MetricsSnapshot()
            return merge_snapshots(stored, delta).to_dict()

        try:
            merged = await store.update(KeyPrefix.METRICS.value, apply)
        except Exception as e:  # observers never break the pipeline
            self._logger.warning("metrics_persist_failed", error=str(e))
            self._base = previous
            self._restore(delta)
            return
        self._base = MetricsSnapshot.from_dict(merged)


# ---------------------------------------------------------------------------
# Log Buffer
# ---------------------------------------------------------------------------


class _BufferHandler(logging.Handler):
    """Copies structured log records into a LogBuffer."""

    def __init__(self, buffer: LogBuffer, level: int) -> None:
        super().__init__(level)
        self._buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == BUFFER_LOGGER_NAME:
            return
        try:
            data = getattr(record, "structured_kv", None)
            error = None
            if record.exc_info and record.exc_info[1] is not None:
                error = "".join(traceback.format_exception_only(record.exc_info[1])).strip()
            self._buffer.append(
                LogEntry(
                    timestamp=int(record.created),
                    level=record.levelname.lower(),
                    message=record.getMessage(),
                    data={k: str(v) for k, v in data.items()} if data else None,
                    error=error,
                )
            )
        except Exception:  # logging handlers must never raise
            self.handleError(record)


class LogBuffer:
    """Ring buffer of the most recent log entries.

    Entries arrive either through the level methods, which also forward to
    the structured logger, or through [handler()][pushbrotr.services.common.telemetry.LogBuffer.handler]
    attached to the root logger.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_LOG_CAPACITY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._capacity = capacity
        self._clock = clock
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._unsaved: deque[LogEntry] = deque(maxlen=capacity)
        self._logger = Logger(BUFFER_LOGGER_NAME)
        self._self_logger = Logger("telemetry")

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)
        self._unsaved.append(entry)

    def _log(self, level: str, message: str, error: str | None, data: dict[str, Any]) -> None:
        self.append(
            LogEntry(
                timestamp=int(self._clock()),
                level=level,
                message=message,
                data=_plain(data) or None,
                error=error,
            )
        )
        getattr(self._logger, level)(message, **data, **({"error": error} if error else {}))

    def debug(self, message: str, **data: Any) -> None:
        self._log("debug", message, None, data)

    def info(self, message: str, **data: Any) -> None:
        self._log("info", message, None, data)

    def warning(self, message: str, **data: Any) -> None:
        self._log("warning", message, None, data)

    def error(self, message: str, error: BaseException | str | None = None, **data: Any) -> None:
        self._log("error", message, str(error) if error is not None else None, data)

    def get_logs(self, level: str | None = None, limit: int = 100) -> list[LogEntry]:
        """The newest ``limit`` entries, optionally of one level, oldest first."""
        entries = [e for e in self._entries if level is None or e.level == level]
        return entries[-limit:] if limit > 0 else []

    def clear(self) -> None:
        self._entries.clear()
        self._unsaved.clear()

    def handler(self, level: int = logging.INFO) -> logging.Handler:
        """A ``logging.Handler`` feeding this buffer."""
        return _BufferHandler(self, level)

    async def load(self, store: Store) -> None:
        """Replace the buffer with the stored entries plus those not yet persisted."""
        try:
            stored = await store.get(KeyPrefix.LOGS.value) or []
            entries = [LogEntry.from_dict(item) for item in stored]
        except Exception as e:  # observers never break the pipeline
            self._self_logger.warning("logs_load_failed", error=str(e))
            return
        self._entries = deque(entries + list(self._unsaved), maxlen=self._capacity)

    async def persist(self, store: Store) -> None:
        """Append the entries recorded since the last persist to the stored buffer."""
        if not self._unsaved:
            return
        pending = list(self._unsaved)
        self._unsaved.clear()
        fresh = [e.to_dict() for e in pending]
        capacity = self._capacity

        def apply(current: Any) -> Any:
            return (list(current or []) + fresh)[-capacity:]

        try:
            await store.update(KeyPrefix.LOGS.value, apply)
        except Exception as e:  # observers never break the pipeline
            self._unsaved = deque(pending + list(self._unsaved), maxlen=capacity)
            self._self_logger.warning("logs_persist_failed", error=str(e))
