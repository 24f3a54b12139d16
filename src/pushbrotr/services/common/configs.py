"""Shared configuration models for pushbrotr services.

Both the [Notifier][pushbrotr.services.notifier.Notifier] and the
[Api][pushbrotr.services.api.Api] deliver push messages, so the delivery
settings live here and are embedded by both service configs.

Examples:
    ```yaml
    push:
      vapid:
        subject: "mailto:ops@example.com"
      ttl: 86400
      backoff: [1, 5, 15]
      max_attempts: 3
      payload:
        icon: /icon-192x192.png
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from pushbrotr.utils.keys import VapidConfig


class PayloadConfig(BaseModel):
    """Static fields added to every notification payload."""

    icon: str = Field(default="/icon-192x192.png", description="Notification icon URL")
    badge: str = Field(default="/icon-96x96.png", description="Monochrome badge URL")
    default_url: str = Field(
        default="/settings/notifications",
        description="URL opened when a notification has no group or event link",
    )


class PushConfig(BaseModel):
    """Web Push delivery and retry settings.

    ``backoff[i]`` is the delay after the ``i+1``-th failed attempt. Once
    ``attempts`` reaches ``max_attempts`` the item is dead-lettered; later
    backoff entries are reused when the list is shorter than the attempts.

    See Also:
        [DeliveryQueue][pushbrotr.services.common.queue.DeliveryQueue]:
            Consumes the retry settings.
        [PushTransport][pushbrotr.utils.webpush.PushTransport]: Consumes
            ``vapid`` and ``request_timeout``.
    """

    vapid: VapidConfig = Field(default_factory=lambda: VapidConfig.model_validate({}))
    ttl: int = Field(default=86_400, ge=0, le=2_419_200, description="Push TTL header, seconds")
    backoff: list[int] = Field(
        default_factory=lambda: [1, 5, 15],
        min_length=1,
        description="Retry delays in seconds",
    )
    max_attempts: int = Field(default=3, ge=1, le=20, description="Attempts before dead-letter")
    request_timeout: float = Field(default=10.0, ge=1.0, le=120.0)
    concurrency: int = Field(default=10, ge=1, le=200, description="Subscribers drained at once")
    payload: PayloadConfig = Field(default_factory=PayloadConfig)

    @field_validator("backoff", mode="after")
    @classmethod
    def validate_backoff(cls, v: list[int]) -> list[int]:
        if any(delay < 0 for delay in v):
            raise ValueError("backoff delays must be non-negative")
        return v

    def retry_delay(self, attempts: int) -> int:
        """Delay before the next attempt after ``attempts`` failures."""
        return self.backoff[min(max(attempts, 1), len(self.backoff)) - 1]
