"""
Prometheus metrics shared by the notifier and the API, plus the tiny aiohttp
server that exposes them.

All metric objects live at module level, so they are registered once per
process with the default ``prometheus_client`` registry.
[BaseService][pushbrotr.core.base_service.BaseService] feeds the cycle
metrics; the push queue feeds the delivery histogram through
[observe_delivery()][pushbrotr.core.metrics.observe_delivery].

Series:
    ``pushbrotr_service_info``:                    service name, set at startup.
    ``pushbrotr_gauge{service,name}``:             point-in-time values.
    ``pushbrotr_counter_total{service,name}``:     cumulative totals.
    ``pushbrotr_cycle_duration_seconds{service}``: one observation per tick.
    ``pushbrotr_push_delivery_seconds{outcome}``:  one observation per push request.

Note:
    The ``/stats`` API reads its success rate and average latency from the
    persisted [DeliveryMetrics][pushbrotr.services.common.telemetry.DeliveryMetrics],
    not from these series, which reset when the process restarts.
"""

from __future__ import annotations

from typing import Self

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from pydantic import BaseModel, Field, field_validator


class MetricsConfig(BaseModel):
    """Where the ``/metrics`` endpoint listens.

    Disabled unless ``enabled`` is set. Inside a container bind ``0.0.0.0``.
    """

    enabled: bool = Field(default=False)
    host: str = Field(default="127.0.0.1", min_length=1)
    port: int = Field(default=8000, ge=1024, le=65535)
    path: str = Field(default="/metrics")

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------

SERVICE_INFO = Info("pushbrotr_service", "Running pushbrotr service")

SERVICE_GAUGE = Gauge(
    "pushbrotr_gauge",
    "Point-in-time service values (subscribers, queue size, failure streak)",
    ["service", "name"],
)

SERVICE_COUNTER = Counter(
    "pushbrotr_counter",
    "Cumulative service totals (cycles, events, deliveries, errors)",
    ["service", "name"],
)

CYCLE_DURATION_SECONDS = Histogram(
    "pushbrotr_cycle_duration_seconds",
    "Wall time of one service tick",
    ["service"],
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

DELIVERY_DURATION_SECONDS = Histogram(
    "pushbrotr_push_delivery_seconds",
    "Wall time of one Web Push request, by outcome",
    ["outcome"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


def observe_delivery(outcome: str, elapsed_ms: float) -> None:
    """Record one push request in ``pushbrotr_push_delivery_seconds``."""
    DELIVERY_DURATION_SECONDS.labels(outcome=outcome).observe(max(elapsed_ms, 0.0) / 1000)


# ---------------------------------------------------------------------------
# Exposition
# ---------------------------------------------------------------------------


class MetricsServer:
    """Serves ``generate_latest()`` on ``config.path`` with aiohttp.

    When the config is disabled, [start()][pushbrotr.core.metrics.MetricsServer.start]
    and [stop()][pushbrotr.core.metrics.MetricsServer.stop] do nothing.

    Examples:
        ```python
        async with MetricsServer(MetricsConfig(enabled=True, port=9100)) as server:
            print(server.url)
        ```
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    @property
    def config(self) -> MetricsConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def url(self) -> str:
        return f"http://{self._config.host}:{self._config.port}{self._config.path}"

    async def start(self) -> None:
        """Bind the port.

        Raises:
            OSError: The port is taken.
        """
        if not self._config.enabled or self._runner is not None:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self.handle_metrics)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._config.host, self._config.port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    @staticmethod
    async def handle_metrics(_request: web.Request) -> web.Response:
        return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.stop()


async def start_metrics_server(config: MetricsConfig | None = None) -> MetricsServer:
    """Build a [MetricsServer][pushbrotr.core.metrics.MetricsServer] and start it."""
    server = MetricsServer(config or MetricsConfig())
    await server.start()
    return server
