"""
Database Connection Pool

Manages async PostgreSQL connections using asyncpg.
Supports automatic schema initialization on startup.

Connection-level failures surface as StoreUnavailableError so that callers
can tell "the store is down" apart from a bad query.
"""

import logging
import re
from pathlib import Path
from typing import Any, Optional

import asyncpg

from ..core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Errors that mean the store itself is unreachable
_CONNECTION_ERRORS = (
    OSError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
)


class DatabasePool:
    """
    Async database connection pool for PostgreSQL.

    Usage:
        pool = DatabasePool()
        await pool.connect(database_url)
        async with pool.acquire() as conn:
            await conn.fetch("SELECT * FROM listings")
        await pool.close()
    """

    def __init__(self):
        self._pool: Optional[asyncpg.Pool] = None
        self._database_url: Optional[str] = None

    async def connect(
        self,
        database_url: str,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        """
        Create connection pool.

        Args:
            database_url: PostgreSQL connection string
            min_size: Minimum pool connections
            max_size: Maximum pool connections
        """
        if self._pool is not None:
            logger.warning("Pool already connected")
            return

        self._database_url = database_url
        try:
            self._pool = await asyncpg.create_pool(
                database_url,
                min_size=min_size,
                max_size=max_size,
            )
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(f"Cannot connect to database: {e}") from e
        logger.info(f"Database pool created (min={min_size}, max={max_size})")

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if not self._pool:
            raise StoreUnavailableError("Database pool not connected")
        return self._pool

    def acquire(self):
        """Acquire a connection from the pool."""
        return self._require_pool().acquire()

    async def execute(self, query: str, *args) -> str:
        """Execute a query that doesn't return rows."""
        pool = self._require_pool()
        try:
            return await pool.execute(query, *args)
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def executemany(self, query: str, args: list[tuple]) -> None:
        """Execute a statement once per argument tuple."""
        pool = self._require_pool()
        try:
            await pool.executemany(query, args)
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def fetch(self, query: str, *args) -> list:
        """Execute a query and fetch all rows."""
        pool = self._require_pool()
        try:
            return await pool.fetch(query, *args)
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def fetchrow(self, query: str, *args):
        """Execute a query and fetch one row."""
        pool = self._require_pool()
        try:
            return await pool.fetchrow(query, *args)
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def fetchval(self, query: str, *args) -> Any:
        """Execute a query and fetch a single value."""
        pool = self._require_pool()
        try:
            return await pool.fetchval(query, *args)
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    @property
    def is_connected(self) -> bool:
        """Check if pool is connected."""
        return self._pool is not None

    async def check_health(self) -> bool:
        """Check database connectivity."""
        if not self._pool:
            return False
        try:
            await self._pool.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def initialize_schema(self) -> bool:
        """
        Initialize database schema if tables don't exist.

        Safe to call multiple times - uses CREATE TABLE IF NOT EXISTS.

        Returns:
            True if schema initialized successfully, False otherwise
        """
        pool = self._require_pool()

        try:
            schema_path = Path(__file__).parent / "schema_postgres.sql"
            if not schema_path.exists():
                logger.error(f"Schema file not found: {schema_path}")
                return False

            schema_sql = schema_path.read_text()
            schema_sql = re.sub(r'--[^\n]*', '', schema_sql)
            schema_sql = re.sub(r'/\*.*?\*/', '', schema_sql, flags=re.DOTALL)

            async with pool.acquire() as conn:
                async with conn.transaction():
                    for statement in schema_sql.split(";"):
                        statement = statement.strip()
                        if statement:
                            try:
                                logger.debug(f"Executing: {statement[:80]}...")
                                await conn.execute(statement)
                            except asyncpg.exceptions.DuplicateObjectError:
                                logger.debug("Object already exists, skipping")
                            except asyncpg.exceptions.DuplicateTableError:
                                logger.debug("Table already exists, skipping")

            for table in ("listings", "listing_stats", "price_history", "pricelist", "key_prices"):
                exists = await pool.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM information_schema.tables WHERE table_name = $1)",
                    table,
                )
                if not exists:
                    logger.error(f"Schema executed but {table} table not found!")
                    return False

            logger.info("Database schema initialized successfully")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize schema: {e}")
            return False
