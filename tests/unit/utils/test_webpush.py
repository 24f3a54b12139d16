"""
Unit tests for utils.webpush module.

Tests:
- DeliveryResult classification of HTTP statuses
- raise_for_outcome() error mapping
- PushTransport construction, headers and failure handling
"""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from pushbrotr.core.exceptions import (
    ConfigurationError,
    PermanentSubscriptionError,
    TransientDeliveryError,
)
from pushbrotr.models.constants import Priority
from pushbrotr.utils.keys import VapidConfig
from pushbrotr.utils.webpush import DeliveryOutcome, DeliveryResult, PushTransport
from tests.conftest import PUSH_KEYS, U1, endpoint_for, make_payload


# ============================================================================
# DeliveryResult
# ============================================================================


class TestDeliveryResult:
    """Status classification."""

    @pytest.mark.parametrize("status", [200, 201, 202, 204])
    def test_success(self, status):
        result = DeliveryResult.from_status(status, "", 5.0)
        assert result.success is True
        assert result.outcome is DeliveryOutcome.SUCCESS
        assert result.error is None
        assert result.elapsed_ms == 5.0

    @pytest.mark.parametrize("status", [404, 410])
    def test_invalid_subscription(self, status):
        result = DeliveryResult.from_status(status, "gone")
        assert result.success is False
        assert result.outcome is DeliveryOutcome.INVALID_SUBSCRIPTION
        assert result.error == f"HTTP {status}: gone"

    @pytest.mark.parametrize("status", [400, 413, 429, 500, 503])
    def test_transient(self, status):
        result = DeliveryResult.from_status(status, "")
        assert result.outcome is DeliveryOutcome.TRANSIENT
        assert result.error == f"HTTP {status}:"
        assert result.reason == f"HTTP {status}"

    def test_long_body_truncated(self):
        result = DeliveryResult.from_status(500, "x" * 500)
        assert len(result.error) == len("HTTP 500: ") + 200

    def test_network_failure(self):
        result = DeliveryResult.transient("Network error: ClientConnectorError")
        assert result.status_code is None
        assert result.outcome is DeliveryOutcome.TRANSIENT
        assert result.reason == "Network error: ClientConnectorError"

    def test_reason_ignores_response_body(self):
        first = DeliveryResult.from_status(503, "overloaded, retry later")
        second = DeliveryResult.from_status(503, "upstream timeout")
        assert first.reason == second.reason == "HTTP 503"
        assert first.error != second.error


class TestRaiseForOutcome:
    def test_success_does_not_raise(self):
        DeliveryResult.from_status(201, "").raise_for_outcome()

    def test_gone(self):
        with pytest.raises(PermanentSubscriptionError) as exc_info:
            DeliveryResult.from_status(410, "").raise_for_outcome()
        assert exc_info.value.status_code == 410

    def test_transient(self):
        with pytest.raises(TransientDeliveryError, match="HTTP 503"):
            DeliveryResult.from_status(503, "unavailable").raise_for_outcome()


# ============================================================================
# PushTransport
# ============================================================================


def _response_cm(status, text=""):
    response = MagicMock(status=status)
    response.text = AsyncMock(return_value=text)
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=response)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


@pytest.fixture
def push_transport():
    with patch("pushbrotr.utils.webpush.Vapid") as vapid_cls:
        vapid_cls.from_string.return_value.sign.return_value = {
            "Authorization": "vapid t=token,k=key"
        }
        transport = PushTransport(VapidConfig(), request_timeout=3.0)
    transport._encrypt = MagicMock(return_value=b"ciphertext")
    return transport


class TestPushTransportInit:
    def test_invalid_private_key(self):
        with patch("pushbrotr.utils.webpush.Vapid") as vapid_cls:
            vapid_cls.from_string.side_effect = ValueError("bad key")
            with pytest.raises(ConfigurationError, match="Invalid VAPID private key"):
                PushTransport(VapidConfig())

    @pytest.mark.asyncio
    async def test_close_without_open(self, push_transport):
        await push_transport.close()
        assert push_transport._session is None


class TestSend:
    """One delivery attempt."""

    @pytest.mark.asyncio
    async def test_headers_and_body(self, push_transport):
        session = MagicMock()
        session.post = MagicMock(return_value=_response_cm(201))
        with patch.object(push_transport, "open", new=AsyncMock(return_value=session)):
            result = await push_transport.send(
                endpoint_for(U1), PUSH_KEYS, make_payload(), ttl=60, urgency=Priority.HIGH
            )

        assert result.success is True
        args, kwargs = session.post.call_args
        assert args == (endpoint_for(U1),)
        assert kwargs["data"] == b"ciphertext"
        headers = kwargs["headers"]
        assert headers["TTL"] == "60"
        assert headers["Urgency"] == "high"
        assert headers["Content-Encoding"] == "aes128gcm"
        assert headers["Authorization"] == "vapid t=token,k=key"

    @pytest.mark.asyncio
    async def test_vapid_audience_is_endpoint_origin(self, push_transport):
        session = MagicMock()
        session.post = MagicMock(return_value=_response_cm(201))
        with patch.object(push_transport, "open", new=AsyncMock(return_value=session)):
            await push_transport.send(endpoint_for(U1), PUSH_KEYS, make_payload())

        claims = push_transport._vapid.sign.call_args.args[0]
        assert claims["aud"] == "https://push.example.com"
        assert claims["sub"] == "mailto:admin@example.com"

    @pytest.mark.asyncio
    async def test_gone(self, push_transport):
        session = MagicMock()
        session.post = MagicMock(return_value=_response_cm(410, "expired"))
        with patch.object(push_transport, "open", new=AsyncMock(return_value=session)):
            result = await push_transport.send(endpoint_for(U1), PUSH_KEYS, make_payload())
        assert result.outcome is DeliveryOutcome.INVALID_SUBSCRIPTION
        assert result.error == "HTTP 410: expired"

    @pytest.mark.asyncio
    async def test_network_error(self, push_transport):
        session = MagicMock()
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with patch.object(push_transport, "open", new=AsyncMock(return_value=session)):
            result = await push_transport.send(endpoint_for(U1), PUSH_KEYS, make_payload())
        assert result.outcome is DeliveryOutcome.TRANSIENT
        assert result.error.startswith("Network error: ClientConnectionError")
        assert result.reason == "Network error: ClientConnectionError"

    @pytest.mark.asyncio
    async def test_encryption_error_is_transient(self, push_transport):
        push_transport._encrypt = MagicMock(side_effect=ValueError("bad p256dh"))
        result = await push_transport.send(endpoint_for(U1), PUSH_KEYS, make_payload())
        assert result.outcome is DeliveryOutcome.TRANSIENT
        assert result.error == "Encryption failed: bad p256dh"
        assert result.reason == "Encryption failed"
