"""Settings for the subscription API ([Api][pushbrotr.services.api.Api]).

The API shares ``push`` and ``aggregator`` settings with the notifier so a
``/notify`` call is gated and delivered exactly like a relay-sourced trigger.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import Field, SecretStr, model_validator

from pushbrotr.core.base_service import BaseServiceConfig
from pushbrotr.services.common.configs import PushConfig
from pushbrotr.services.notifier.configs import AggregatorConfig


DEFAULT_TOKEN_ENV = "PUSH_API_TOKEN"  # noqa: S105  # pragma: allowlist secret


class ApiConfig(BaseServiceConfig):
    """HTTP server, auth and delivery settings.

    Attributes:
        host: uvicorn bind address.
        port: uvicorn port.
        cors_origins: Origins allowed by the CORS middleware; empty means no
            CORS middleware at all.
        request_timeout: Upper bound for a synchronous test delivery.
        token_env: Environment variable holding the bearer token for the
            administrative routes.
        token: Bearer token, loaded from ``token_env`` during validation.
            ``None`` leaves the administrative routes locked.
        push: Delivery settings shared with the notifier.
        aggregator: Rate limit and batching periods applied to ``/notify``.
    """

    host: str = Field(default="0.0.0.0", min_length=1, description="HTTP bind address")  # noqa: S104
    port: int = Field(default=8080, ge=1, le=65535, description="HTTP port")
    cors_origins: list[str] = Field(default_factory=list)
    request_timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    token_env: str = Field(default=DEFAULT_TOKEN_ENV, min_length=1)
    token: SecretStr | None = Field(default=None, description="Bearer token (loaded from env)")
    push: PushConfig = Field(default_factory=PushConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)

    @model_validator(mode="before")
    @classmethod
    def _load_token_from_env(cls, data: Any) -> Any:
        if isinstance(data, dict) and "token" not in data:
            value = os.getenv(data.get("token_env", DEFAULT_TOKEN_ENV))
            if value:
                return {**data, "token": SecretStr(value)}
        return data
