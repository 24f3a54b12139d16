"""
Web Push transport: payload encryption, VAPID signing and HTTP delivery.

[PushTransport.send()][pushbrotr.utils.webpush.PushTransport.send] performs
one delivery attempt and never raises for delivery failures. It returns a
[DeliveryResult][pushbrotr.utils.webpush.DeliveryResult] classified as:

| Outcome                | Cause                                            |
|------------------------|--------------------------------------------------|
| `success`              | any 2xx response                                 |
| `invalid_subscription` | 404 or 410: the browser subscription is gone     |
| `transient`            | any other status, network errors, encryption errors |

Retries are not done here. The
[DeliveryQueue][pushbrotr.services.common.queue.DeliveryQueue] owns the
retry schedule.

Note:
    Payloads are encrypted with ``pywebpush.WebPusher`` (RFC 8291,
    ``aes128gcm``) and requests are signed with ``py_vapid`` (RFC 8292). The
    HTTP request itself goes through ``aiohttp`` so delivery never blocks the
    event loop.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Self
from urllib.parse import urlparse

import aiohttp
from py_vapid import Vapid
from pywebpush import WebPusher

from pushbrotr.core.exceptions import (
    ConfigurationError,
    PermanentSubscriptionError,
    TransientDeliveryError,
)
from pushbrotr.models.constants import Priority


if TYPE_CHECKING:
    from types import TracebackType

    from pushbrotr.models.notification import NotificationPayload
    from pushbrotr.models.subscriber import PushKeys

    from .keys import VapidConfig


CONTENT_ENCODING = "aes128gcm"
VAPID_EXPIRATION_SECONDS = 12 * 3600
DEFAULT_TTL = 86_400
_MAX_ERROR_BODY = 200
_GONE_STATUSES = frozenset({404, 410})


class DeliveryOutcome(StrEnum):
    """Classification of one push attempt."""

    SUCCESS = "success"
    INVALID_SUBSCRIPTION = "invalid_subscription"
    TRANSIENT = "transient"


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Result of a single push attempt.

    Attributes:
        success: Whether the push service accepted the message.
        status_code: HTTP status, or ``None`` if no response was received.
        error: Human-readable failure text (``"HTTP 500: ..."``).
        outcome: Classification driving the queue's decision.
        elapsed_ms: Wall time of the attempt in milliseconds.
        reason: Short failure category used to group errors (``"HTTP 500"``,
            ``"Network error: ClientConnectorError"``); ``None`` on success.
    """

    success: bool
    status_code: int | None = None
    error: str | None = None
    outcome: DeliveryOutcome = DeliveryOutcome.SUCCESS
    elapsed_ms: float = 0.0
    reason: str | None = None

    @classmethod
    def from_status(cls, status: int, body: str, elapsed_ms: float = 0.0) -> DeliveryResult:
        """Classify an HTTP response from the push service."""
        if 200 <= status < 300:  # noqa: PLR2004
            return cls(True, status, None, DeliveryOutcome.SUCCESS, elapsed_ms)
        reason = f"HTTP {status}"
        error = f"{reason}: {body[:_MAX_ERROR_BODY]}".rstrip()
        if status in _GONE_STATUSES:
            outcome = DeliveryOutcome.INVALID_SUBSCRIPTION
        else:
            outcome = DeliveryOutcome.TRANSIENT
        return cls(False, status, error, outcome, elapsed_ms, reason)

    @classmethod
    def transient(
        cls, error: str, elapsed_ms: float = 0.0, reason: str | None = None
    ) -> DeliveryResult:
        """A failure before any HTTP response was received."""
        return cls(False, None, error, DeliveryOutcome.TRANSIENT, elapsed_ms, reason or error)

    def raise_for_outcome(self) -> None:
        """Raise the matching delivery error unless the attempt succeeded.

        Raises:
            PermanentSubscriptionError: For 404/410.
            TransientDeliveryError: For every other failure.
        """
        if self.outcome is DeliveryOutcome.SUCCESS:
            return
        message = self.error or "delivery failed"
        if self.outcome is DeliveryOutcome.INVALID_SUBSCRIPTION:
            raise PermanentSubscriptionError(message, self.status_code)
        raise TransientDeliveryError(message, self.status_code)


def _urgency(priority: Priority) -> str:
    return {Priority.HIGH: "high", Priority.LOW: "low"}.get(priority, "normal")


def _audience(endpoint: str) -> str:
    parsed = urlparse(endpoint)
    return f"{parsed.scheme}://{parsed.netloc}"


class PushTransport:
    """Sends encrypted, VAPID-signed Web Push messages.

    Use as an async context manager, or call
    [open()][pushbrotr.utils.webpush.PushTransport.open] and
    [close()][pushbrotr.utils.webpush.PushTransport.close] explicitly. A
    session is opened on first use if needed.

    Raises:
        ConfigurationError: At construction, if the VAPID private key cannot
            be parsed.

    Examples:
        ```python
        async with PushTransport(vapid_config) as transport:
            result = await transport.send(sub.push_endpoint, sub.push_keys, payload)
            result.raise_for_outcome()
        ```
    """

    def __init__(self, vapid: VapidConfig, request_timeout: float = 10.0) -> None:
        try:
            self._vapid = Vapid.from_string(private_key=vapid.private_key.get_secret_value())
        except Exception as e:  # py_vapid raises assorted decoding errors
            raise ConfigurationError(f"Invalid VAPID private key: {type(e).__name__}") from e
        self._subject = vapid.subject
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session: aiohttp.ClientSession | None = None

    async def open(self) -> aiohttp.ClientSession:
        """Open the HTTP session if needed and return it."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _encrypt(self, endpoint: str, keys: PushKeys, payload: NotificationPayload) -> bytes:
        pusher = WebPusher({"endpoint": endpoint, "keys": keys.to_dict()})
        data = json.dumps(payload.to_dict(), separators=(",", ":"))
        encoded = pusher.encode(data, content_encoding=CONTENT_ENCODING)
        return bytes(encoded["body"])

    def _authorization(self, endpoint: str) -> dict[str, str]:
        claims = {
            "sub": self._subject,
            "aud": _audience(endpoint),
            "exp": int(time.time()) + VAPID_EXPIRATION_SECONDS,
        }
        return {k: str(v) for k, v in self._vapid.sign(claims).items()}

    async def send(
        self,
        endpoint: str,
        keys: PushKeys,
        payload: NotificationPayload,
        *,
        ttl: int = DEFAULT_TTL,
        urgency: Priority = Priority.NORMAL,
    ) -> DeliveryResult:
        """Encrypt ``payload`` for ``keys`` and POST it to ``endpoint``.

        Returns:
            The classified [DeliveryResult][pushbrotr.utils.webpush.DeliveryResult].
        """
        start = time.monotonic()

        def elapsed() -> float:
            return (time.monotonic() - start) * 1000

        try:
            body = self._encrypt(endpoint, keys, payload)
            headers = self._authorization(endpoint)
        except Exception as e:  # cryptography/pywebpush raise on malformed keys
            return DeliveryResult.transient(
                f"Encryption failed: {e}", elapsed(), reason="Encryption failed"
            )

        headers.update(
            {
                "TTL": str(ttl),
                "Urgency": _urgency(urgency),
                "Content-Encoding": CONTENT_ENCODING,
                "Content-Type": "application/octet-stream",
            }
        )

        session = await self.open()

        try:
            async with session.post(endpoint, data=body, headers=headers) as response:
                text = await response.text()
                return DeliveryResult.from_status(response.status, text, elapsed())
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            reason = f"Network error: {type(e).__name__}"
            return DeliveryResult.transient(f"{reason}: {e}", elapsed(), reason=reason)
