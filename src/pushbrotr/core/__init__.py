"""Core layer providing the foundation for all pushbrotr services.

Sits in the middle of the diamond DAG: depends only on
``pushbrotr.models`` and is depended upon by ``pushbrotr.services``.

Attributes:
    Store: Versioned key-value store interface with
        [MemoryStore][pushbrotr.core.store.MemoryStore] and
        [PostgresStore][pushbrotr.core.store.PostgresStore] backends.
    Pool: Async PostgreSQL connection pool with retry/backoff.
        See [Pool][pushbrotr.core.pool.Pool].
    BaseService: Abstract generic base class with lifecycle management,
        factory methods and Prometheus metrics integration.
    Logger: Structured logger supporting key=value and JSON output modes.
    MetricsServer: Prometheus ``/metrics`` HTTP endpoint.
    load_yaml: Safe YAML loading with ``yaml.safe_load()``.

Examples:
    ```python
    from pushbrotr.core import StoreConfig, create_store

    store = create_store(StoreConfig(backend="memory"))
    async with store:
        await store.put("watermark:wss://relay.example.com", {"created_at": 1700000000})
    ```
"""

from .base_service import (
    BaseService,
    BaseServiceConfig,
    ConfigT,
)
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .metrics import (
    CYCLE_DURATION_SECONDS,
    DELIVERY_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
    MetricsServer,
    observe_delivery,
    start_metrics_server,
)
from .pool import (
    DatabaseConfig,
    Pool,
    PoolConfig,
    PoolLimitsConfig,
    PoolRetryConfig,
    ServerSettingsConfig,
)
from .store import (
    MemoryStore,
    PostgresStore,
    Store,
    StoreConfig,
    StoreEntry,
    StoreTimeoutsConfig,
    create_store,
)
from .yaml import load_yaml


__all__ = [
    "CYCLE_DURATION_SECONDS",
    "DELIVERY_DURATION_SECONDS",
    "SERVICE_COUNTER",
    "SERVICE_GAUGE",
    "SERVICE_INFO",
    "BaseService",
    "BaseServiceConfig",
    "ConfigT",
    "DatabaseConfig",
    "Logger",
    "MemoryStore",
    "MetricsConfig",
    "MetricsServer",
    "Pool",
    "PoolConfig",
    "PoolLimitsConfig",
    "PoolRetryConfig",
    "PostgresStore",
    "ServerSettingsConfig",
    "Store",
    "StoreConfig",
    "StoreEntry",
    "StoreTimeoutsConfig",
    "StructuredFormatter",
    "create_store",
    "format_kv_pairs",
    "load_yaml",
    "observe_delivery",
    "start_metrics_server",
]
