"""
Versioned key-value store shared by every pushbrotr service.

All persistent state lives in one flat namespace of string keys (``sub:``,
``group:``, ``queue:``, ...; see
[KeyPrefix][pushbrotr.models.constants.KeyPrefix]). Every entry carries a
monotonically increasing ``version`` used for optimistic concurrency, and an
optional absolute expiry.

Two backends implement the [Store][pushbrotr.core.store.Store] interface:

- [PostgresStore][pushbrotr.core.store.PostgresStore]: one ``kv_store``
  table with JSONB values, accessed through the
  [Pool][pushbrotr.core.pool.Pool].
- [MemoryStore][pushbrotr.core.store.MemoryStore]: a dict guarded by an
  ``asyncio.Lock``, used by tests and single-process deployments.

Read-modify-write of shared records goes through
[update()][pushbrotr.core.store.Store.update]: a compare-and-set loop that
falls back to last-writer-wins after a bounded number of conflicts and logs
the lost update.

Examples:
    ```python
    store = create_store(StoreConfig(backend="memory"))

    async with store:
        version = await store.put("watermark:wss://r.example", {"created_at": 1700000000})
        ok = await store.compare_and_set("watermark:wss://r.example", {"created_at": 1700000300}, version)
    ```
"""

from __future__ import annotations

import asyncio
import copy
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Literal, NamedTuple, Self

import asyncpg
from pydantic import BaseModel, Field, field_validator

from .exceptions import QueryError
from .logger import Logger
from .pool import Pool, PoolConfig


if TYPE_CHECKING:
    from types import TracebackType


_MIN_TIMEOUT_SECONDS = 0.1


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class StoreTimeoutsConfig(BaseModel):
    """Timeout settings for store operations (in seconds, ``None`` = infinite)."""

    query: float | None = Field(default=30.0, description="Per-query timeout")
    purge: float | None = Field(default=120.0, description="Expired key purge timeout")

    @field_validator("query", "purge", mode="after")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        """Validate timeout: None (infinite) or >= 0.1 seconds."""
        if v is not None and v < _MIN_TIMEOUT_SECONDS:
            raise ValueError(
                f"Timeout must be None (infinite) or >= {_MIN_TIMEOUT_SECONDS} seconds"
            )
        return v


class StoreConfig(BaseModel):
    """Selects and configures the store backend.

    ``pool`` is only read for the ``postgres`` backend; when omitted, a
    default [PoolConfig][pushbrotr.core.pool.PoolConfig] is built, which
    requires the database password in the environment.
    """

    backend: Literal["postgres", "memory"] = Field(
        default="postgres", description="Store backend"
    )
    pool: PoolConfig | None = Field(default=None, description="PostgreSQL pool settings")
    timeouts: StoreTimeoutsConfig = Field(default_factory=StoreTimeoutsConfig)
    update_retries: int = Field(
        default=3, ge=1, le=20, description="CAS attempts before last-writer-wins"
    )


class StoreEntry(NamedTuple):
    """A live store entry: value plus its concurrency version and expiry."""

    key: str
    value: Any
    version: int
    expires_at: int | None


# ---------------------------------------------------------------------------
# Store Interface
# ---------------------------------------------------------------------------


class Store(ABC):
    """Abstract versioned key-value store.

    Expired entries are invisible to every read and write, even before
    [purge_expired()][pushbrotr.core.store.Store.purge_expired] removes
    them physically.

    Note:
        A ``compare_and_set`` with ``expected_version=0`` succeeds only when
        the key does not exist (or has expired). That is how callers create
        a record without overwriting a concurrent writer's.
    """

    def __init__(
        self,
        *,
        update_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._update_retries = update_retries
        self._clock = clock
        self._logger = Logger("store")

    def _now(self) -> int:
        return int(self._clock())

    def _expiry(self, ttl: int | None) -> int | None:
        return None if ttl is None else self._now() + ttl

    # -- Lifecycle ------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """Open backend resources."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources. Idempotent."""

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # -- Primitive operations ---------------------------------------------------

    @abstractmethod
    async def get_entry(self, key: str) -> StoreEntry | None:
        """Return the live entry for ``key``, or ``None``."""

    @abstractmethod
    async def put(self, key: str, value: Any, *, ttl: int | None = None) -> int:
        """Write ``value`` unconditionally and return the new version."""

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
        *,
        ttl: int | None = None,
    ) -> bool:
        """Write ``value`` only if the current version equals ``expected_version``."""

    @abstractmethod
    async def delete(self, key: str, *, expected_version: int | None = None) -> bool:
        """Delete ``key``; with ``expected_version``, only if it still matches.

        Returns:
            True if a live entry was removed.
        """

    @abstractmethod
    async def list_entries(self, prefix: str) -> list[StoreEntry]:
        """Return all live entries whose key starts with ``prefix``, sorted by key."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Physically delete expired entries and return how many were removed."""

    # -- Derived operations -----------------------------------------------------

    async def get(self, key: str) -> Any:
        """Return the live value for ``key``, or ``None``."""
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def list_keys(self, prefix: str) -> list[str]:
        """Return the live keys starting with ``prefix``, sorted."""
        return [entry.key for entry in await self.list_entries(prefix)]

    async def update(
        self,
        key: str,
        fn: Callable[[Any], Any],
        *,
        ttl: int | None = None,
        retries: int | None = None,
    ) -> Any:
        """Read-modify-write ``key`` through ``fn`` with optimistic concurrency.

        ``fn`` receives the current value (``None`` when absent) and returns
        the new value, or ``None`` to delete the key. It may be called more
        than once and must not have side effects.

        After ``retries`` consecutive version conflicts the write is forced
        (last-writer-wins) and ``store_lost_update`` is logged with the key,
        so a concurrent change that was overwritten can be traced.

        Returns:
            The value written, or ``None`` if the key was deleted.
        """
        attempts = retries if retries is not None else self._update_retries

        for _ in range(attempts):
            entry = await self.get_entry(key)
            new_value = fn(entry.value if entry is not None else None)

            if new_value is None:
                if entry is None:
                    return None
                if await self.delete(key, expected_version=entry.version):
                    return None
                continue

            expected = entry.version if entry is not None else 0
            if await self.compare_and_set(key, new_value, expected, ttl=ttl):
                return new_value

        self._logger.warning("store_lost_update", key=key, attempts=attempts)
        entry = await self.get_entry(key)
        new_value = fn(entry.value if entry is not None else None)
        if new_value is None:
            await self.delete(key)
            return None
        await self.put(key, new_value, ttl=ttl)
        return new_value


# ---------------------------------------------------------------------------
# Memory Backend
# ---------------------------------------------------------------------------


class MemoryStore(Store):
    """In-process store backed by a dict.

    Values are deep-copied on the way in and out so callers can never mutate
    stored state by accident.
    """

    def __init__(
        self,
        *,
        update_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(update_retries=update_retries, clock=clock)
        self._data: dict[str, StoreEntry] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _live(self, key: str) -> StoreEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._now():
            return None
        return entry

    def _write(self, key: str, value: Any, ttl: int | None, previous: StoreEntry | None) -> int:
        stale = self._data.get(key)
        base = previous.version if previous else (stale.version if stale else 0)
        version = base + 1
        self._data[key] = StoreEntry(key, copy.deepcopy(value), version, self._expiry(ttl))
        return version

    async def get_entry(self, key: str) -> StoreEntry | None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return entry._replace(value=copy.deepcopy(entry.value))

    async def put(self, key: str, value: Any, *, ttl: int | None = None) -> int:
        async with self._lock:
            return self._write(key, value, ttl, self._live(key))

    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
        *,
        ttl: int | None = None,
    ) -> bool:
        async with self._lock:
            current = self._live(key)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                return False
            self._write(key, value, ttl, current)
            return True

    async def delete(self, key: str, *, expected_version: int | None = None) -> bool:
        async with self._lock:
            current = self._live(key)
            if current is None:
                self._data.pop(key, None)
                return False
            if expected_version is not None and current.version != expected_version:
                return False
            del self._data[key]
            return True

    async def list_entries(self, prefix: str) -> list[StoreEntry]:
        async with self._lock:
            entries = []
            for key in sorted(self._data):
                if not key.startswith(prefix):
                    continue
                entry = self._live(key)
                if entry is not None:
                    entries.append(entry._replace(value=copy.deepcopy(entry.value)))
            return entries

    async def purge_expired(self) -> int:
        async with self._lock:
            expired = [key for key in self._data if self._live(key) is None]
            for key in expired:
                del self._data[key]
            return len(expired)

    def __len__(self) -> int:
        return sum(1 for key in self._data if self._live(key) is not None)


# ---------------------------------------------------------------------------
# PostgreSQL Backend
# ---------------------------------------------------------------------------


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value JSONB NOT NULL,
        version BIGINT NOT NULL DEFAULT 1,
        expires_at BIGINT,
        updated_at BIGINT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS kv_store_key_prefix_idx ON kv_store (key text_pattern_ops)",
    "CREATE INDEX IF NOT EXISTS kv_store_expires_at_idx ON kv_store (expires_at)"
    " WHERE expires_at IS NOT NULL",
)

_LIVE = "(expires_at IS NULL OR expires_at > $now)"


def _live(param: int) -> str:
    return _LIVE.replace("$now", f"${param}")


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"


class PostgresStore(Store):
    """Store backed by a single ``kv_store`` table.

    Every write bumps ``version`` inside one statement, so concurrent
    notifier and API processes racing on the same key see exactly one
    winner per version.

    Raises:
        ConnectionPoolError: From the [Pool][pushbrotr.core.pool.Pool] when
            the database stays unreachable after its retries.
        QueryError: For any other PostgreSQL error.
    """

    def __init__(
        self,
        pool: Pool | None = None,
        timeouts: StoreTimeoutsConfig | None = None,
        *,
        update_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(update_retries=update_retries, clock=clock)
        self._pool = pool or Pool()
        self._timeouts = timeouts or StoreTimeoutsConfig()

    @property
    def pool(self) -> Pool:
        """The underlying connection pool."""
        return self._pool

    async def connect(self) -> None:
        await self._pool.connect()
        async with self._pool.transaction() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)
        self._logger.info("store_schema_ready", backend="postgres")

    async def close(self) -> None:
        await self._pool.close()

    async def _call(self, method: str, query: str, *args: Any, timeout: float | None = None) -> Any:
        try:
            return await getattr(self._pool, method)(
                query, *args, timeout=timeout or self._timeouts.query
            )
        except asyncpg.PostgresError as e:
            self._logger.error("store_query_failed", error=str(e))
            raise QueryError(str(e)) from e

    async def get_entry(self, key: str) -> StoreEntry | None:
        row = await self._call(
            "fetchrow",
            f"SELECT key, value, version, expires_at FROM kv_store WHERE key = $1 AND {_live(2)}",
            key,
            self._now(),
        )
        if row is None:
            return None
        return StoreEntry(row["key"], row["value"], row["version"], row["expires_at"])

    async def put(self, key: str, value: Any, *, ttl: int | None = None) -> int:
        version = await self._call(
            "fetchval",
            """
            INSERT INTO kv_store (key, value, version, expires_at, updated_at)
            VALUES ($1, $2, 1, $3, $4)
            ON CONFLICT (key) DO UPDATE SET
                value = EXCLUDED.value,
                version = kv_store.version + 1,
                expires_at = EXCLUDED.expires_at,
                updated_at = EXCLUDED.updated_at
            RETURNING version
            """,
            key,
            value,
            self._expiry(ttl),
            self._now(),
        )
        return int(version)

    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
        *,
        ttl: int | None = None,
    ) -> bool:
        now = self._now()
        if expected_version == 0:
            # Only an absent or expired row may be replaced.
            version = await self._call(
                "fetchval",
                f"""
                INSERT INTO kv_store (key, value, version, expires_at, updated_at)
                VALUES ($1, $2, 1, $3, $4)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    version = kv_store.version + 1,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = EXCLUDED.updated_at
                WHERE NOT {_live(4).replace("expires_at", "kv_store.expires_at")}
                RETURNING version
                """,
                key,
                value,
                self._expiry(ttl),
                now,
            )
        else:
            version = await self._call(
                "fetchval",
                f"""
                UPDATE kv_store
                SET value = $2, version = version + 1, expires_at = $4, updated_at = $5
                WHERE key = $1 AND version = $3 AND {_live(5)}
                RETURNING version
                """,
                key,
                value,
                expected_version,
                self._expiry(ttl),
                now,
            )
        return version is not None

    async def delete(self, key: str, *, expected_version: int | None = None) -> bool:
        if expected_version is None:
            deleted = await self._call(
                "fetchval",
                f"DELETE FROM kv_store WHERE key = $1 AND {_live(2)} RETURNING key",
                key,
                self._now(),
            )
        else:
            deleted = await self._call(
                "fetchval",
                f"DELETE FROM kv_store WHERE key = $1 AND version = $3 AND {_live(2)}"
                " RETURNING key",
                key,
                self._now(),
                expected_version,
            )
        return deleted is not None

    async def list_entries(self, prefix: str) -> list[StoreEntry]:
        rows = await self._call(
            "fetch",
            f"""
            SELECT key, value, version, expires_at FROM kv_store
            WHERE key LIKE $1 ESCAPE '\\' AND {_live(2)}
            ORDER BY key
            """,
            _escape_like(prefix),
            self._now(),
        )
        return [StoreEntry(r["key"], r["value"], r["version"], r["expires_at"]) for r in rows]

    async def purge_expired(self) -> int:
        status = await self._call(
            "execute",
            "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= $1",
            self._now(),
            timeout=self._timeouts.purge,
        )
        # Status tag looks like "DELETE 12"
        try:
            return int(str(status).rsplit(" ", 1)[-1])
        except ValueError:
            return 0


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_store(config: StoreConfig | None = None) -> Store:
    """Build the backend selected by ``config.backend`` (not yet connected)."""
    config = config or StoreConfig()
    if config.backend == "memory":
        return MemoryStore(update_retries=config.update_retries)
    pool = Pool(config.pool or PoolConfig())
    return PostgresStore(pool, config.timeouts, update_retries=config.update_retries)
