"""
Unit tests for database pool creation and health checks.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from shared.db import get_connection_pool, health_check


def _pool_with(conn):
    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    pool = MagicMock()
    pool.acquire.return_value = acquire
    return pool


class TestConnectionPool:
    @pytest.mark.asyncio
    async def test_fields_passed_through(self):
        with patch("shared.db.asyncpg.create_pool", new=AsyncMock(return_value="pool")) as create:
            pool = await get_connection_pool(
                {"host": "db", "database": "inbox", "user": "sync", "password": "pw", "max_size": 3}
            )
        assert pool == "pool"
        kwargs = create.await_args.kwargs
        assert kwargs["host"] == "db"
        assert kwargs["port"] == 5432
        assert kwargs["password"] == "pw"
        assert (kwargs["min_size"], kwargs["max_size"]) == (1, 3)

    @pytest.mark.asyncio
    async def test_dsn_takes_precedence(self):
        with patch("shared.db.asyncpg.create_pool", new=AsyncMock(return_value="pool")) as create:
            await get_connection_pool({"dsn": "postgresql://u@h/db", "host": "ignored"})
        kwargs = create.await_args.kwargs
        assert kwargs["dsn"] == "postgresql://u@h/db"
        assert "host" not in kwargs


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=1)
        assert await health_check(_pool_with(conn)) is True

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(side_effect=asyncpg.CannotConnectNowError("starting"))
        assert await health_check(_pool_with(conn)) is False
