"""
Unit tests for services.common.configs module.
"""

import pytest
from pydantic import ValidationError

from pushbrotr.services.common.configs import PayloadConfig, PushConfig


class TestPushConfig:
    """Delivery and retry settings."""

    def test_defaults(self):
        config = PushConfig()
        assert config.ttl == 86_400
        assert config.backoff == [1, 5, 15]
        assert config.max_attempts == 3
        assert config.payload == PayloadConfig()
        assert config.vapid.public_key == "test-public-key"

    @pytest.mark.parametrize(("attempts", "delay"), [(0, 1), (1, 1), (2, 5), (3, 15), (9, 15)])
    def test_retry_delay(self, attempts, delay):
        assert PushConfig().retry_delay(attempts) == delay

    def test_negative_backoff(self):
        with pytest.raises(ValidationError):
            PushConfig(backoff=[1, -5])

    def test_empty_backoff(self):
        with pytest.raises(ValidationError):
            PushConfig(backoff=[])

    def test_max_attempts_bounds(self):
        with pytest.raises(ValidationError):
            PushConfig(max_attempts=0)

    def test_missing_vapid_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("VAPID_PUBLIC_KEY")
        with pytest.raises(ValidationError):
            PushConfig()

    def test_from_mapping(self):
        config = PushConfig.model_validate(
            {"vapid": {"subject": "mailto:ops@example.com"}, "payload": {"icon": "/i.png"}}
        )
        assert config.vapid.subject == "mailto:ops@example.com"
        assert config.payload.icon == "/i.png"
        assert config.payload.badge == "/icon-96x96.png"
