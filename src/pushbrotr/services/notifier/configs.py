"""Notifier service configuration models.

See Also:
    [Notifier][pushbrotr.services.notifier.Notifier]: The service class that
        consumes these configurations.
    [BaseServiceConfig][pushbrotr.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, ``max_consecutive_failures`` and
        ``metrics`` fields.
    [PushConfig][pushbrotr.services.common.configs.PushConfig]: Delivery
        settings shared with the API.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from pushbrotr.core.base_service import BaseServiceConfig
from pushbrotr.models.constants import NOTIFICATION_KINDS
from pushbrotr.services.common.configs import PushConfig


_EVENT_KIND_MAX = 65_535


class MonitorConfig(BaseModel):
    """Relay polling settings.

    See Also:
        [RelayMonitor][pushbrotr.services.notifier.monitor.RelayMonitor]:
            Consumes this configuration.
    """

    kinds: list[int] = Field(
        default_factory=lambda: list(NOTIFICATION_KINDS),
        min_length=1,
        description="Event kinds requested from every relay",
    )
    fetch_timeout: float = Field(
        default=5.0, ge=0.5, le=120.0, description="Seconds to wait for EOSE per relay"
    )
    relay_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=600.0,
        description="Outer guard per relay, including connect and shutdown",
    )
    lookback_seconds: int = Field(
        default=3_600, ge=60, le=604_800, description="Window used when a relay has no watermark"
    )
    limit: int = Field(default=500, ge=1, le=5_000, description="Events per relay per tick")

    @field_validator("kinds", mode="after")
    @classmethod
    def validate_kinds(cls, v: list[int]) -> list[int]:
        for kind in v:
            if not 0 <= kind <= _EVENT_KIND_MAX:
                raise ValueError(f"Event kind {kind} out of valid range (0-{_EVENT_KIND_MAX})")
        return v


class ExtractorConfig(BaseModel):
    """Trigger classification settings."""

    urgent_keywords: list[str] = Field(
        default_factory=lambda: ["urgent", "emergency", "action", "important"],
        description="Keywords whose matches are delivered with high priority",
    )
    processed_ttl: int = Field(
        default=86_400, ge=3_600, description="Seconds an event stays marked as processed"
    )

    @field_validator("urgent_keywords", mode="after")
    @classmethod
    def normalize_urgent(cls, v: list[str]) -> list[str]:
        return [k.strip().lower() for k in v if k.strip()]


class AggregatorConfig(BaseModel):
    """Gating and batching settings.

    See Also:
        [Aggregator][pushbrotr.services.notifier.aggregator.Aggregator]:
            Consumes this configuration.
    """

    rate_limit: int = Field(
        default=10, ge=1, description="Max non-urgent notifications per window"
    )
    rate_window: int = Field(default=3_600, ge=60, description="Rate window in seconds")
    hourly_period: int = Field(default=3_600, ge=60, description="Flush age for hourly batches")
    daily_period: int = Field(default=86_400, ge=3_600, description="Flush age for daily batches")


class NotifierConfig(BaseServiceConfig):
    """Notifier service configuration.

    Raises:
        ValueError: If ``relays`` is empty or contains a non-websocket URL
            (surfaced as ``ConfigurationError`` by ``from_dict``).
    """

    relays: list[str] = Field(description="Relay websocket URLs to poll")
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    reconcile_indices: bool = Field(
        default=True, description="Repair group and keyword indices every tick"
    )

    @field_validator("relays", mode="after")
    @classmethod
    def validate_relays(cls, v: list[str]) -> list[str]:
        relays = list(dict.fromkeys(url.strip().rstrip("/") for url in v if url.strip()))
        if not relays:
            raise ValueError("at least one relay URL is required")
        for url in relays:
            if not url.startswith(("wss://", "ws://")):
                raise ValueError(f"Relay URL must use ws:// or wss://: {url}")
        return relays
