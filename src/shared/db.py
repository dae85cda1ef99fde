"""
Database helpers: connection pool management and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The schema (``accounts``,
``conversations``, ``messages``, ``contacts``, ``sync_watermarks``,
``sync_audit_log``) is owned by the application database and is not
created here; the sync role only needs INSERT, UPDATE and SELECT on it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: The ``[database]`` section: ``host``, ``database``, ``user``,
                and optionally ``port``, ``password``, ``min_size``,
                ``max_size``, ``command_timeout``.  A ``dsn`` key, when
                present, takes precedence over the individual fields.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    min_size = int(config.get("min_size", 1))
    max_size = max(min_size, int(config.get("max_size", 5)))
    command_timeout = float(config.get("command_timeout", 30.0))

    if config.get("dsn"):
        pool = await asyncpg.create_pool(
            dsn=config["dsn"],
            password=config.get("password"),
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
        )
        logger.info("Database pool created from DSN (size %d-%d)", min_size, max_size)
        return pool

    pool = await asyncpg.create_pool(
        host=config["host"],
        port=int(config.get("port", 5432)),
        database=config["database"],
        user=config["user"],
        password=config.get("password"),
        min_size=min_size,
        max_size=max_size,
        command_timeout=command_timeout,
    )
    logger.info(
        "Database pool created: %s@%s/%s", config["user"], config["host"], config["database"]
    )
    return pool


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database health check failed")
        return False
