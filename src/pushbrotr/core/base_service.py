"""
Lifecycle shared by the notifier and the HTTP API.

A service is an object with one bounded unit of work,
[run()][pushbrotr.core.base_service.BaseService.run].
[run_forever()][pushbrotr.core.base_service.BaseService.run_forever] repeats
it on a fixed interval until shutdown is requested or too many cycles fail in
a row. Everything a service needs to remember between cycles lives in the
injected [Store][pushbrotr.core.store.Store]; the object itself can be thrown
away and rebuilt at any time.

Typical wiring (see ``pushbrotr.__main__``):

```python
async with store:
    service = Notifier.from_yaml("config/services/notifier.yaml", store=store)
    async with service:
        await service.run_forever()
```
"""

import asyncio
import time
from abc import ABC, abstractmethod
from types import TracebackType
from typing import Any, ClassVar, Generic, Self, TypeVar, cast

import pydantic
from pydantic import BaseModel, Field

from pushbrotr.models.constants import ServiceName

from .exceptions import ConfigurationError
from .logger import Logger
from .metrics import (
    CYCLE_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
)
from .store import Store
from .yaml import load_yaml


class BaseServiceConfig(BaseModel):
    """Loop settings every service config inherits.

    ``interval`` defaults to the notifier's five-minute tick. A
    ``max_consecutive_failures`` of ``0`` never gives up.
    """

    interval: float = Field(default=300.0, ge=60.0, description="Seconds between cycles")
    max_consecutive_failures: int = Field(default=5, ge=0)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


ConfigT = TypeVar("ConfigT", bound=BaseServiceConfig)


class BaseService(ABC, Generic[ConfigT]):
    """Base class for pushbrotr services.

    Subclasses declare ``SERVICE_NAME`` (used as logger name and metrics
    label) and ``CONFIG_CLASS`` (the pydantic model the factories validate
    against), then implement [run()][pushbrotr.core.base_service.BaseService.run].
    """

    SERVICE_NAME: ClassVar[ServiceName]
    CONFIG_CLASS: ClassVar[type[BaseModel]]

    def __init__(self, store: Store, config: ConfigT | None = None) -> None:
        self._store = store
        self._config = cast("ConfigT", config if config is not None else self.CONFIG_CLASS())
        self._logger = Logger(self.SERVICE_NAME)
        self._stop = asyncio.Event()

    @property
    def config(self) -> ConfigT:
        return self._config

    @property
    def store(self) -> Store:
        return self._store

    @property
    def is_running(self) -> bool:
        return not self._stop.is_set()

    @abstractmethod
    async def run(self) -> None:
        """Do one cycle of work. Raising marks the cycle as failed."""

    def request_shutdown(self) -> None:
        """Ask the loop to stop after the current cycle. Signal-handler safe."""
        self._stop.set()

    async def wait(self, timeout: float) -> bool:  # noqa: ASYNC109
        """Sleep up to ``timeout`` seconds; return True if shutdown cut it short."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    # ---------------------------------------------------------------------
    # Loop
    # ---------------------------------------------------------------------

    async def _cycle(self) -> Exception | None:
        """Run once and record the outcome; return the error of a failed cycle."""
        started = time.monotonic()
        try:
            await self.run()
        except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
            raise
        except Exception as e:  # one failed cycle must not end the loop
            self.inc_counter("cycles_failed")
            self.inc_counter(f"errors_{type(e).__name__}")
            return e

        self.inc_counter("cycles_success")
        self.set_gauge("last_cycle_timestamp", time.time())
        if self._config.metrics.enabled:
            CYCLE_DURATION_SECONDS.labels(service=self.SERVICE_NAME).observe(
                time.monotonic() - started
            )
        return None

    async def run_forever(self) -> None:
        """Repeat [run()][pushbrotr.core.base_service.BaseService.run] every ``interval`` seconds.

        Stops when shutdown is requested (also while sleeping) or when
        ``max_consecutive_failures`` cycles fail back to back. A successful
        cycle resets the streak. Cancellation is never counted as a failure.
        """
        interval = self._config.interval
        limit = self._config.max_consecutive_failures
        if self._config.metrics.enabled:
            SERVICE_INFO.info({"service": str(self.SERVICE_NAME)})
        self._logger.info("run_forever_started", interval=interval, failure_limit=limit)

        streak = 0
        while self.is_running:
            error = await self._cycle()
            if error is None:
                streak = 0
                self._logger.info("cycle_completed", next_cycle_s=interval)
            else:
                streak += 1
                self._logger.error(
                    "run_cycle_error",
                    error=str(error),
                    error_type=type(error).__name__,
                    consecutive_failures=streak,
                )
            self.set_gauge("consecutive_failures", streak)

            if limit and streak >= limit:
                self._logger.critical("max_consecutive_failures_reached", failures=streak)
                break
            if await self.wait(interval):
                break

        self._logger.info("run_forever_stopped")

    # ---------------------------------------------------------------------
    # Factories
    # ---------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any], store: Store, **kwargs: Any) -> Self:
        """Validate ``data`` against ``CONFIG_CLASS`` and build the service.

        Raises:
            ConfigurationError: The mapping does not validate.
        """
        try:
            config = cls.CONFIG_CLASS.model_validate(data)
        except pydantic.ValidationError as e:
            raise ConfigurationError(f"Invalid {cls.SERVICE_NAME} configuration: {e}") from e
        return cls(store=store, config=config, **kwargs)

    @classmethod
    def from_yaml(cls, config_path: str, store: Store, **kwargs: Any) -> Self:
        """Like [from_dict()][pushbrotr.core.base_service.BaseService.from_dict], reading a YAML file.

        Raises:
            FileNotFoundError: No file at ``config_path``.
            ConfigurationError: Malformed YAML or an invalid config.
        """
        return cls.from_dict(load_yaml(config_path), store=store, **kwargs)

    async def __aenter__(self) -> Self:
        self._stop.clear()
        self._logger.info("service_started")
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        self._stop.set()
        self._logger.info("service_stopped")

    # ---------------------------------------------------------------------
    # Metrics
    # ---------------------------------------------------------------------

    def set_gauge(self, name: str, value: float) -> None:
        """Set ``pushbrotr_gauge{service,name}``. Does nothing with metrics disabled."""
        if self._config.metrics.enabled:
            SERVICE_GAUGE.labels(service=self.SERVICE_NAME, name=name).set(value)

    def inc_counter(self, name: str, value: float = 1) -> None:
        if self._config.metrics.enabled:
            SERVICE_COUNTER.labels(service=self.SERVICE_NAME, name=name).inc(value)
