"""Database connection management."""

import asyncio
import logging
from contextlib import asynccontextmanager
from importlib import resources
from typing import Optional

import asyncpg

logger = logging.getLogger("wassist.db")


class Database:
    """asyncpg pool owner. Constructed once in main and injected."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> asyncpg.Pool:
        """Create the connection pool with retry.

        Retries up to 5 times with exponential backoff (2, 4, 8, 8, 8 seconds).
        This handles the case where the DB container isn't ready yet at boot.
        """
        max_retries = 5
        delays = [2, 4, 8, 8, 8]

        for attempt in range(max_retries):
            try:
                self._pool = await asyncpg.create_pool(self.dsn, min_size=self.min_size, max_size=self.max_size)
                if attempt > 0:
                    logger.info(f"Database connected after {attempt + 1} attempts")
                return self._pool
            except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                if attempt < max_retries - 1:
                    delay = delays[attempt]
                    logger.warning(f"Database not ready (attempt {attempt + 1}/{max_retries}): {e}. Retrying in {delay}s...")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Database connection failed after {max_retries} attempts: {e}")
                    raise

    async def close(self):
        if self._pool:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not initialized. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def connection(self):
        """Get a database connection from the pool."""
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """Get a database connection with an active transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def init_schema(self):
        """Create tables if missing. Idempotent."""
        schema = resources.files("wassist.db").joinpath("schema.sql").read_text(encoding="utf-8")
        async with self.connection() as conn:
            await conn.execute(schema)
        logger.info("Database schema ready")
