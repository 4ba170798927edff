"""asyncpg pool for the conversation store."""

import json
from typing import Any

import asyncpg

from src.utils.config import get_database_url, get_db_pool_sizes
from src.utils.logging import get_logger

logger = get_logger(__name__)


async def init_connection(conn: asyncpg.Connection) -> None:
    """Run on every new pooled connection."""
    await conn.set_type_codec(
        "jsonb",
        # Callsites json.dumps() explicitly; encoding here too would double-encode
        encoder=lambda x: x,
        decoder=json.loads,
        schema="pg_catalog",
    )


class ChatDBManager:
    """Owns the single process-wide connection pool.

    Created by the application lifespan and handed to the repository; business
    code never reaches for a module-level pool.
    """

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url
        self.pool: asyncpg.Pool | None = None

    async def initialize(self) -> None:
        min_size, max_size = get_db_pool_sizes()
        self.pool = await asyncpg.create_pool(
            self._database_url or get_database_url(),
            min_size=min_size,
            max_size=max_size,
            timeout=30,  # connection acquisition timeout
            command_timeout=10,
            init=init_connection,
        )
        logger.info("Chat database pool initialized", min_size=min_size, max_size=max_size)

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Chat database pool closed")

    async def health_check(self) -> dict[str, Any]:
        """Return {"status": "healthy"|"unhealthy", ...} for the storage connection."""
        if self.pool is None:
            return {"status": "unhealthy", "error": "not initialized"}
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}
        return {
            "status": "healthy",
            "pool_size": self.pool.get_size(),
            "pool_idle": self.pool.get_idle_size(),
        }
