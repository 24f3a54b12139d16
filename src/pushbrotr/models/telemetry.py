"""Delivery metrics snapshots and log buffer entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    """Point-in-time copy of the delivery counters.

    ``delivery_times_ms`` holds at most the last 1000 samples;
    ``average_delivery_ms`` is derived from them.
    """

    total_sent: int = 0
    succeeded: int = 0
    failed: int = 0
    invalid_subscriptions: int = 0
    delivery_times_ms: tuple[float, ...] = ()
    average_delivery_ms: float = 0.0
    errors: dict[str, int] = field(default_factory=dict)
    last_updated: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sent": self.total_sent,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "invalid_subscriptions": self.invalid_subscriptions,
            "delivery_times_ms": list(self.delivery_times_ms),
            "average_delivery_ms": self.average_delivery_ms,
            "errors": dict(self.errors),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricsSnapshot:
        return cls(
            total_sent=data.get("total_sent", 0),
            succeeded=data.get("succeeded", 0),
            failed=data.get("failed", 0),
            invalid_subscriptions=data.get("invalid_subscriptions", 0),
            delivery_times_ms=tuple(data.get("delivery_times_ms", ())),
            average_delivery_ms=data.get("average_delivery_ms", 0.0),
            errors=dict(data.get("errors") or {}),
            last_updated=data.get("last_updated"),
        )


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One record of the bounded log ring buffer."""

    timestamp: int
    level: str
    message: str
    data: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
        }
        if self.data:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        return cls(
            timestamp=data["timestamp"],
            level=data["level"],
            message=data["message"],
            data=data.get("data"),
            error=data.get("error"),
        )
