"""
Unit tests for core.pool module.

Tests:
- Configuration models: password from env, size and retry validation
- connect(): success, idempotence, retry with backoff, exhausted retries
- Query helpers: delegation, retry on broken connections, SQL errors
- transaction() and the async context manager
"""

from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest
from pydantic import ValidationError

from pushbrotr.core.exceptions import ConnectionPoolError
from pushbrotr.core.pool import (
    DatabaseConfig,
    Pool,
    PoolConfig,
    PoolLimitsConfig,
    PoolRetryConfig,
    ServerSettingsConfig,
)


def _async_cm(value):
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=value)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


@pytest.fixture
def conn() -> MagicMock:
    connection = MagicMock()
    connection.transaction.return_value = _async_cm(None)
    return connection


@pytest.fixture
def asyncpg_pool(conn: MagicMock) -> MagicMock:
    pool = MagicMock()
    pool.acquire.return_value = _async_cm(conn)
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def fast_config() -> PoolConfig:
    return PoolConfig(retry=PoolRetryConfig(attempts=3, base_delay=0.1, max_delay=0.1))


@pytest.fixture
async def pool(fast_config: PoolConfig, asyncpg_pool: MagicMock) -> Pool:
    pool = Pool(fast_config)
    with patch("asyncpg.create_pool", new=AsyncMock(return_value=asyncpg_pool)):
        await pool.connect()
    return pool


# ============================================================================
# Configuration
# ============================================================================


class TestDatabaseConfig:
    def test_defaults(self) -> None:
        config = DatabaseConfig.model_validate({})
        assert config.host == "localhost"
        assert config.port == 5432
        assert config.database == "pushbrotr"
        assert config.password.get_secret_value() == "test-password"

    def test_custom_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("API_DB_PASSWORD", "api-secret")
        config = DatabaseConfig.model_validate({"password_env": "API_DB_PASSWORD"})
        assert config.password.get_secret_value() == "api-secret"

    def test_password_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DB_PASSWORD")
        with pytest.raises(ValidationError, match="DB_PASSWORD environment variable not set"):
            DatabaseConfig.model_validate({})

    def test_password_hidden(self) -> None:
        assert "test-password" not in repr(DatabaseConfig.model_validate({}))

    @pytest.mark.parametrize("port", [0, 70_000])
    def test_invalid_port(self, port: int) -> None:
        with pytest.raises(ValidationError):
            DatabaseConfig.model_validate({"port": port})


class TestPoolSubConfigs:
    def test_max_gte_min(self) -> None:
        with pytest.raises(ValidationError, match="must be >= min_size"):
            PoolLimitsConfig(min_size=5, max_size=2)

    @pytest.mark.parametrize(("attempt", "delay"), [(0, 1.0), (1, 2.0), (2, 4.0), (5, 10.0)])
    def test_retry_delay(self, attempt: int, delay: float) -> None:
        assert PoolRetryConfig().delay(attempt) == delay

    def test_server_settings(self) -> None:
        settings = ServerSettingsConfig(application_name="notifier").as_server_settings()
        assert settings == {
            "application_name": "notifier",
            "statement_timeout": "60000",
            "timezone": "UTC",
        }

    def test_pool_config_from_mapping(self) -> None:
        config = PoolConfig.model_validate(
            {"database": {"host": "db"}, "limits": {"max_size": 3}}
        )
        assert config.database.host == "db"
        assert config.limits.max_size == 3
        assert config.retry.attempts == 3


# ============================================================================
# Connection Lifecycle
# ============================================================================


class TestConnect:
    async def test_success(self, fast_config, asyncpg_pool) -> None:
        pool = Pool(fast_config)
        with patch("asyncpg.create_pool", new=AsyncMock(return_value=asyncpg_pool)) as create:
            await pool.connect()

        assert pool.is_connected is True
        kwargs = create.await_args.kwargs
        assert kwargs["password"] == "test-password"
        assert kwargs["server_settings"]["application_name"] == "pushbrotr"

    async def test_already_connected(self, pool: Pool) -> None:
        with patch("asyncpg.create_pool", new=AsyncMock()) as create:
            await pool.connect()
        create.assert_not_awaited()

    async def test_retry(self, fast_config, asyncpg_pool) -> None:
        pool = Pool(fast_config)
        create = AsyncMock(side_effect=[OSError("refused"), asyncpg_pool])
        with patch("asyncpg.create_pool", new=create):
            await pool.connect()
        assert create.await_count == 2
        assert pool.is_connected is True

    async def test_retries_exhausted(self, fast_config) -> None:
        pool = Pool(fast_config)
        create = AsyncMock(side_effect=OSError("refused"))
        with (
            patch("asyncpg.create_pool", new=create),
            pytest.raises(ConnectionPoolError, match="after 3 attempts"),
        ):
            await pool.connect()
        assert create.await_count == 3
        assert pool.is_connected is False

    async def test_close(self, pool: Pool, asyncpg_pool) -> None:
        await pool.close()
        asyncpg_pool.close.assert_awaited_once()
        assert pool.is_connected is False

    async def test_close_not_connected(self, fast_config) -> None:
        await Pool(fast_config).close()

    async def test_context_manager(self, fast_config, asyncpg_pool) -> None:
        with patch("asyncpg.create_pool", new=AsyncMock(return_value=asyncpg_pool)):
            async with Pool(fast_config) as pool:
                assert pool.is_connected is True
        assert pool.is_connected is False

    def test_repr(self, fast_config) -> None:
        assert repr(Pool(fast_config)) == (
            "Pool(host=localhost, database=pushbrotr, connected=False)"
        )


# ============================================================================
# Queries
# ============================================================================


class TestQueries:
    async def test_not_connected(self, fast_config) -> None:
        with pytest.raises(ConnectionPoolError, match="not connected"):
            await Pool(fast_config).fetchval("SELECT 1")

    async def test_fetch(self, pool: Pool, conn) -> None:
        conn.fetch = AsyncMock(return_value=[{"key": "a"}])
        assert await pool.fetch("SELECT key FROM kv_store") == [{"key": "a"}]

    async def test_fetchrow(self, pool: Pool, conn) -> None:
        conn.fetchrow = AsyncMock(return_value=None)
        assert await pool.fetchrow("SELECT 1 WHERE false") is None

    async def test_fetchval_passes_args_and_timeout(self, pool: Pool, conn) -> None:
        conn.fetchval = AsyncMock(return_value=2)
        assert await pool.fetchval("SELECT $1::int", 2, timeout=5.0) == 2
        conn.fetchval.assert_awaited_once_with("SELECT $1::int", 2, timeout=5.0)

    async def test_execute_status(self, pool: Pool, conn) -> None:
        conn.execute = AsyncMock(return_value="DELETE 3")
        assert await pool.execute("DELETE FROM kv_store") == "DELETE 3"

    async def test_retry_on_broken_connection(self, pool: Pool, conn) -> None:
        conn.fetchval = AsyncMock(side_effect=[asyncpg.InterfaceError("connection lost"), 7])
        assert await pool.fetchval("SELECT 7") == 7
        assert conn.fetchval.await_count == 2

    async def test_broken_connection_exhausted(self, pool: Pool, conn) -> None:
        conn.fetchval = AsyncMock(side_effect=asyncpg.InterfaceError("connection lost"))
        with pytest.raises(ConnectionPoolError, match="broken connection"):
            await pool.fetchval("SELECT 1")
        assert conn.fetchval.await_count == 3

    async def test_sql_error_not_retried(self, pool: Pool, conn) -> None:
        conn.fetchval = AsyncMock(side_effect=asyncpg.PostgresError("syntax error"))
        with pytest.raises(asyncpg.PostgresError):
            await pool.fetchval("SELEC 1")
        assert conn.fetchval.await_count == 1

    async def test_transaction(self, pool: Pool, conn) -> None:
        async with pool.transaction() as tx_conn:
            assert tx_conn is conn
        conn.transaction.assert_called_once()
