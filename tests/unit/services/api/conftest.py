"""Shared fixtures and helpers for services.api test package."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from pushbrotr.services.api.service import Api, ApiConfig
from tests.conftest import PUSH_KEYS, endpoint_for


TOKEN = "test-token"  # noqa: S105  # pragma: allowlist secret
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def api_config() -> ApiConfig:
    """Minimal API config for testing; the token comes from ``PUSH_API_TOKEN``."""
    return ApiConfig(interval=60.0, host="127.0.0.1", port=9999)


@pytest.fixture
def api_service(store, api_config: ApiConfig, transport, clock) -> Api:
    return Api(store, api_config, transport=transport, clock=clock)


@pytest.fixture
def test_client(api_service: Api) -> TestClient:
    """FastAPI TestClient from the Api service."""
    return TestClient(api_service.app)


def subscribe_body(subscriber_id: str, **preferences: Any) -> dict[str, Any]:
    """A ``/subscribe`` request body in the camelCase wire format."""
    return {
        "subscriberId": subscriber_id,
        "pushEndpoint": endpoint_for(subscriber_id),
        "pushKeys": {"p256dh": PUSH_KEYS.p256dh, "auth": PUSH_KEYS.auth},
        "preferences": preferences,
    }
