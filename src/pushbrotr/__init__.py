r"""pushbrotr -- Nostr relay to Web Push notification pipeline.

Two async services turn activity on Nostr relays into browser push
notifications, communicating exclusively through a shared key-value store
(PostgreSQL or in-memory).

Architecture follows a **diamond DAG** dependency structure where imports
flow strictly downward:

```text
              services         Notifier, Api, shared registry and queue
             /        \
          core        utils    Infrastructure, keys, relay and push transport
             \        /
              models           Pure frozen dataclasses (zero I/O)
```

Attributes:
    models: Pure frozen dataclasses. Zero I/O, depends only on stdlib.
    core: Store backends, connection pool, base service, exceptions,
        logging, metrics.
    utils: Nostr key conversion, relay fetching, Web Push transport.
    services: The notifier pipeline and the HTTP subscription API.

Note:
    For lightweight usage, import directly from subpackages::

        from pushbrotr.models import Subscriber
        from pushbrotr.core import MemoryStore

    Top-level imports (``from pushbrotr import Notifier``) use lazy loading
    and resolve on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("pushbrotr")

__all__ = [
    "Api",
    "ApiConfig",
    "BaseService",
    "ConfigT",
    "Event",
    "Logger",
    "MemoryStore",
    "NotificationTrigger",
    "Notifier",
    "NotifierConfig",
    "PostgresStore",
    "Preferences",
    "QueueItem",
    "Store",
    "StoreConfig",
    "Subscriber",
    "create_store",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseService": ("pushbrotr.core", "BaseService"),
    "ConfigT": ("pushbrotr.core", "ConfigT"),
    "Logger": ("pushbrotr.core", "Logger"),
    "MemoryStore": ("pushbrotr.core", "MemoryStore"),
    "PostgresStore": ("pushbrotr.core", "PostgresStore"),
    "Store": ("pushbrotr.core", "Store"),
    "StoreConfig": ("pushbrotr.core", "StoreConfig"),
    "create_store": ("pushbrotr.core", "create_store"),
    "Event": ("pushbrotr.models", "Event"),
    "NotificationTrigger": ("pushbrotr.models", "NotificationTrigger"),
    "Preferences": ("pushbrotr.models", "Preferences"),
    "QueueItem": ("pushbrotr.models", "QueueItem"),
    "Subscriber": ("pushbrotr.models", "Subscriber"),
    "Api": ("pushbrotr.services", "Api"),
    "ApiConfig": ("pushbrotr.services", "ApiConfig"),
    "Notifier": ("pushbrotr.services", "Notifier"),
    "NotifierConfig": ("pushbrotr.services", "NotifierConfig"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'pushbrotr' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
