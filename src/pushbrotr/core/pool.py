"""
asyncpg connection pool behind the [PostgresStore][pushbrotr.core.store.PostgresStore].

The pool is created lazily by [connect()][pushbrotr.core.pool.Pool.connect],
which retries with capped exponential backoff while the database is still
starting. Every connection gets JSON/JSONB codecs, so store values go in and
come out as plain Python objects.

Query helpers retry only when the connection itself broke (the socket died,
the server restarted). SQL errors are raised on the first attempt.

Examples:
    ```python
    async with Pool(PoolConfig()) as pool:
        version = await pool.fetchval("SELECT version FROM kv_store WHERE key = $1", "sub:npub1...")
    ```
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator  # noqa: TC003
from contextlib import asynccontextmanager
from typing import Any, Literal, Self

import asyncpg
from pydantic import BaseModel, Field, SecretStr, model_validator

from .exceptions import ConnectionPoolError
from .logger import Logger


DEFAULT_PASSWORD_ENV = "DB_PASSWORD"  # pragma: allowlist secret

QueryKind = Literal["fetch", "fetchrow", "fetchval", "execute"]

# Errors meaning "this connection is gone", as opposed to "this query is wrong".
_BROKEN_CONNECTION = (asyncpg.InterfaceError, asyncpg.ConnectionDoesNotExistError)


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """Where the ``kv_store`` table lives.

    The password never comes from YAML: it is read from the environment
    variable named by ``password_env`` during validation.
    """

    host: str = Field(default="localhost", min_length=1)
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(default="pushbrotr", min_length=1)
    user: str = Field(default="pushbrotr", min_length=1)
    password_env: str = Field(default=DEFAULT_PASSWORD_ENV, min_length=1)
    password: SecretStr

    @model_validator(mode="before")
    @classmethod
    def _password_from_env(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "password" in data:
            return data
        env_var = data.get("password_env", DEFAULT_PASSWORD_ENV)
        secret = os.getenv(env_var)
        if not secret:
            raise ValueError(f"{env_var} environment variable not set")
        return {**data, "password": SecretStr(secret)}


class PoolLimitsConfig(BaseModel):
    """Pool sizing and connection acquisition."""

    min_size: int = Field(default=1, ge=1, le=100)
    max_size: int = Field(default=5, ge=1, le=200)
    acquire_timeout: float = Field(
        default=10.0, ge=0.1, description="Seconds to wait for a free connection"
    )

    @model_validator(mode="after")
    def _check_sizes(self) -> Self:
        if self.max_size < self.min_size:
            raise ValueError(f"max_size ({self.max_size}) must be >= min_size ({self.min_size})")
        return self


class PoolRetryConfig(BaseModel):
    """Backoff for connecting and for queries on a broken connection.

    Attempt ``n`` (zero-based) waits ``min(base_delay * 2**n, max_delay)``.
    """

    attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=1.0, ge=0.1)
    max_delay: float = Field(default=10.0, ge=0.1)

    def delay(self, attempt: int) -> float:
        return float(min(self.base_delay * (2**attempt), self.max_delay))


class ServerSettingsConfig(BaseModel):
    """Session settings sent with every new connection.

    ``statement_timeout`` is in milliseconds; ``0`` disables it.
    """

    application_name: str = Field(default="pushbrotr")
    statement_timeout: int = Field(default=60_000, ge=0)

    def as_server_settings(self) -> dict[str, str]:
        return {
            "application_name": self.application_name,
            "statement_timeout": str(self.statement_timeout),
            "timezone": "UTC",
        }


class PoolConfig(BaseModel):
    """Everything [Pool][pushbrotr.core.pool.Pool] needs; each section has defaults."""

    database: DatabaseConfig = Field(default_factory=lambda: DatabaseConfig.model_validate({}))
    limits: PoolLimitsConfig = Field(default_factory=PoolLimitsConfig)
    retry: PoolRetryConfig = Field(default_factory=PoolRetryConfig)
    server_settings: ServerSettingsConfig = Field(default_factory=ServerSettingsConfig)


async def _register_json_codecs(conn: asyncpg.Connection[asyncpg.Record]) -> None:
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class Pool:
    """Lazily connected ``asyncpg.Pool`` with retrying query helpers.

    Note:
        Services never query the pool themselves; they go through the
        [Store][pushbrotr.core.store.Store] interface.
    """

    def __init__(self, config: PoolConfig | None = None) -> None:
        self._config = config or PoolConfig()
        self._pool: asyncpg.Pool[asyncpg.Record] | None = None
        self._lock = asyncio.Lock()
        self._logger = Logger("pool")

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Create the pool. A no-op when already connected.

        Raises:
            ConnectionPoolError: When the database is still unreachable after
                ``retry.attempts`` tries.
        """
        async with self._lock:
            if self._pool is not None:
                return

            db = self._config.database
            retry = self._config.retry
            self._logger.info("pool_connecting", host=db.host, port=db.port, database=db.database)

            attempt = 0
            while True:
                try:
                    self._pool = await self._create_pool()
                except (asyncpg.PostgresError, OSError) as e:
                    attempt += 1
                    if attempt >= retry.attempts:
                        self._logger.error("pool_connect_failed", attempts=attempt, error=str(e))
                        raise ConnectionPoolError(
                            f"Could not connect to {db.host}:{db.port} "
                            f"after {attempt} attempts: {e}"
                        ) from e
                    delay = retry.delay(attempt - 1)
                    self._logger.warning(
                        "pool_connect_retry", attempt=attempt, delay_s=delay, error=str(e)
                    )
                    await asyncio.sleep(delay)
                else:
                    self._logger.info("pool_connected", attempts=attempt + 1)
                    return

    async def _create_pool(self) -> asyncpg.Pool[asyncpg.Record]:
        db = self._config.database
        limits = self._config.limits
        return await asyncpg.create_pool(
            host=db.host,
            port=db.port,
            database=db.database,
            user=db.user,
            password=db.password.get_secret_value(),
            min_size=limits.min_size,
            max_size=limits.max_size,
            timeout=limits.acquire_timeout,
            init=_register_json_codecs,
            server_settings=self._config.server_settings.as_server_settings(),
        )

    async def close(self) -> None:
        """Close every connection. Safe to call when not connected."""
        async with self._lock:
            pool, self._pool = self._pool, None
            if pool is not None:
                await pool.close()
                self._logger.info("pool_closed")

    def _require_pool(self) -> asyncpg.Pool[asyncpg.Record]:
        if self._pool is None:
            raise ConnectionPoolError("Pool is not connected")
        return self._pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection[asyncpg.Record]]:
        """A connection inside a transaction: committed on exit, rolled back on error."""
        async with self._require_pool().acquire() as conn, conn.transaction():
            yield conn

    async def _query(
        self,
        kind: QueryKind,
        query: str,
        args: tuple[Any, ...],
        timeout: float | None,  # noqa: ASYNC109
    ) -> Any:
        retry = self._config.retry
        for attempt in range(retry.attempts):
            try:
                async with self._require_pool().acquire() as conn:
                    return await getattr(conn, kind)(query, *args, timeout=timeout)
            except _BROKEN_CONNECTION as e:
                if attempt + 1 >= retry.attempts:
                    self._logger.error(
                        "query_failed", kind=kind, attempts=attempt + 1, error=str(e)
                    )
                    raise ConnectionPoolError(f"{kind} failed on a broken connection: {e}") from e
                delay = retry.delay(attempt)
                self._logger.warning("query_retry", kind=kind, attempt=attempt + 1, delay_s=delay)
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    async def fetch(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> list[Any]:
        return list(await self._query("fetch", query, args, timeout))

    async def fetchrow(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any:
        return await self._query("fetchrow", query, args, timeout)

    async def fetchval(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> Any:
        return await self._query("fetchval", query, args, timeout)

    async def execute(
        self, query: str, *args: Any, timeout: float | None = None  # noqa: ASYNC109
    ) -> str:
        """Run a statement and return its status tag, e.g. ``DELETE 3``."""
        return str(await self._query("execute", query, args, timeout))

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    def __repr__(self) -> str:
        db = self._config.database
        return f"Pool(host={db.host}, database={db.database}, connected={self.is_connected})"
