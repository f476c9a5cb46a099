"""
Database Module
===============
Durable persistence for orders and newsletter subscribers.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Schema migrations (orders, subscribers)
- A migration entry point: `python -m database` or `echobeats-migrate`

pip install asyncpg
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

from config import AppConfig

logger = structlog.get_logger(component="database")


# =============================================================================
# MIGRATIONS
# =============================================================================

MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS subscribers (
        id SERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        product_id TEXT NOT NULL,
        product_name TEXT NOT NULL,
        amount NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
        currency TEXT NOT NULL DEFAULT 'usd',
        stripe_payment_intent_id TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'pending',
        customer_email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_payment_intent ON orders(stripe_payment_intent_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: AppConfig) -> "Database":
        if not config.database_url:
            raise ValueError("DATABASE_URL environment variable is required")
        return cls(
            config.database_url,
            min_size=config.db_min_pool_size,
            max_size=config.db_max_pool_size,
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self, run_migrations: bool = True):
        """Initialize the connection pool"""
        async with self._init_lock:
            if self._pool is not None:
                return

            try:
                self._pool = await asyncpg.create_pool(
                    self._dsn,
                    min_size=self._min_size,
                    max_size=self._max_size,
                )
            except Exception as e:
                logger.error("pool_init_failed", error=str(e))
                raise

            logger.info("pool_initialized", min_size=self._min_size, max_size=self._max_size)

        if run_migrations:
            await self.run_migrations()

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """Acquire a connection inside a transaction"""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def run_migrations(self):
        """Run database migrations"""
        async with self.transaction() as conn:
            for migration in MIGRATIONS:
                await conn.execute(migration)

        logger.info("migrations_complete", count=len(MIGRATIONS))


# =============================================================================
# MIGRATION ENTRY POINT
# =============================================================================

async def migrate(config: AppConfig) -> int:
    db = Database.from_config(config)
    try:
        await db.initialize(run_migrations=True)
    except Exception as e:
        logger.error("migrations_failed", error=str(e))
        return 1
    finally:
        await db.close()
    return 0


def main() -> int:
    config = AppConfig.from_env()
    if not config.database_url:
        logger.error("database_url_missing")
        return 1

    logger.info("running_migrations")
    return asyncio.run(migrate(config))


if __name__ == "__main__":
    sys.exit(main())
