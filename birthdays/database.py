"""PostgreSQL connection management with separate write and read pools."""
from __future__ import annotations

import enum
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import anyio
import asyncpg

from .config import DatabaseSettings, EndpointSettings, PoolSettings

logger = logging.getLogger("birthdays.database")

MAX_INIT_RETRIES = 5
RETRY_DELAY_SECONDS = 5.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    username VARCHAR(255) UNIQUE NOT NULL CHECK (username ~ '^[a-zA-Z]+$'),
    date_of_birth DATE NOT NULL CHECK (date_of_birth < CURRENT_DATE),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_username ON users(username);
CREATE INDEX IF NOT EXISTS idx_date_of_birth ON users(date_of_birth);

CREATE OR REPLACE FUNCTION update_updated_at_column()
RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = CURRENT_TIMESTAMP;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS update_users_updated_at ON users;

CREATE TRIGGER update_users_updated_at
BEFORE UPDATE ON users
FOR EACH ROW
EXECUTE FUNCTION update_updated_at_column();
"""


class DatabaseError(Exception):
    """Base class for failures raised by the data-access layer."""


class DatabaseConnectionError(DatabaseError):
    """Raised when a pool cannot be created or fails its connectivity probe."""


class SchemaCreationError(DatabaseError):
    """Raised when the ``users`` schema cannot be created."""


class DatabaseNotInitializedError(DatabaseError):
    """Raised when a pool is requested before :meth:`ConnectionManager.initialize` succeeded."""

    def __init__(self, message: str = "Database not initialized") -> None:
        super().__init__(message)


class ConstraintViolationError(DatabaseError):
    """The store rejected a write because of a uniqueness or check constraint."""

    UNIQUE = "unique"
    CHECK = "check"

    def __init__(self, message: str, *, kind: str, constraint: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.constraint = constraint


class PoolTopology(enum.Enum):
    """How the read role is served."""

    DISTINCT = "distinct"
    SHARED = "shared"


@dataclass(frozen=True)
class DatabaseHealth:
    primary: bool
    read_replica: bool

    def as_dict(self) -> Dict[str, bool]:
        return {"primary": self.primary, "readReplica": self.read_replica}


class ConnectionPool:
    """Thin wrapper around :class:`asyncpg.Pool` that enforces an acquire timeout."""

    def __init__(self, pool: asyncpg.Pool, *, name: str, acquire_timeout: Optional[float] = None) -> None:
        self._pool = pool
        self._name = name
        self._acquire_timeout = acquire_timeout

    @property
    def name(self) -> str:
        return self._name

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        async with self._pool.acquire(timeout=self._acquire_timeout) as conn:
            yield conn

    async def fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def close(self) -> None:
        await self._pool.close()


PoolFactory = Callable[..., Awaitable[ConnectionPool]]


async def create_pool(endpoint: EndpointSettings, settings: PoolSettings, *, name: str) -> ConnectionPool:
    """Open an asyncpg pool for ``endpoint`` sized according to ``settings``."""

    pool = await asyncpg.create_pool(
        host=endpoint.host,
        port=endpoint.port,
        database=endpoint.database,
        user=endpoint.user,
        password=endpoint.password,
        # "require" encrypts without verifying the server certificate.
        ssl="require" if endpoint.ssl else False,
        min_size=settings.min_size,
        max_size=settings.max_size,
        max_inactive_connection_lifetime=settings.idle_timeout_ms / 1000,
        timeout=settings.connection_timeout_ms / 1000,
        command_timeout=settings.query_timeout_ms / 1000,
        server_settings={
            "application_name": settings.application_name,
            "statement_timeout": str(settings.statement_timeout_ms),
        },
    )
    return ConnectionPool(pool, name=name, acquire_timeout=settings.connection_timeout_ms / 1000)


class ConnectionManager:
    """Owns the write and read pools and the schema they serve.

    The read role is backed by a dedicated pool when a read replica is
    configured and by the write pool otherwise; callers never need to know
    which. Pools must not be used before :meth:`initialize` has completed.
    """

    def __init__(
        self,
        settings: DatabaseSettings,
        *,
        pool_factory: Optional[PoolFactory] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        max_retries: int = MAX_INIT_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if retry_delay < 0:
            raise ValueError("retry_delay must not be negative")

        self._settings = settings
        self._pool_factory: PoolFactory = pool_factory or create_pool
        self._sleep = sleep or anyio.sleep
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._topology = PoolTopology.DISTINCT if settings.has_read_replica else PoolTopology.SHARED
        self._write_pool: Optional[ConnectionPool] = None
        self._read_pool: Optional[ConnectionPool] = None

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def topology(self) -> PoolTopology:
        return self._topology

    @property
    def initialized(self) -> bool:
        return self._write_pool is not None and self._read_pool is not None

    async def initialize(self) -> None:
        """Open the pools and create the schema, retrying the whole sequence on failure."""

        if self.initialized:
            return

        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._initialize_once()
            except DatabaseError as exc:
                logger.error(
                    "Database initialization attempt %d/%d failed: %s",
                    attempt,
                    attempts,
                    exc,
                )
                if attempt >= attempts:
                    raise
                logger.info("Retrying in %s seconds...", self._retry_delay)
                await self._sleep(self._retry_delay)
            else:
                logger.info(
                    "Database initialized after %d attempt(s) (topology=%s)",
                    attempt,
                    self._topology.value,
                )
                return

    async def _initialize_once(self) -> None:
        opened: List[Tuple[str, ConnectionPool]] = []
        try:
            write_pool = await self._open_pool(self._settings.primary, "primary")
            opened.append(("Primary", write_pool))

            if self._topology is PoolTopology.DISTINCT:
                replica = self._settings.read_replica
                if replica is None:
                    raise DatabaseConnectionError("Read replica topology requires read replica settings")
                read_pool = await self._open_pool(replica, "read-replica")
                opened.append(("Read replica", read_pool))
            else:
                read_pool = write_pool

            await self._test_connection(write_pool, "Primary")
            if self._topology is PoolTopology.DISTINCT:
                await self._test_connection(read_pool, "Read replica")

            await self._create_schema(write_pool)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self._discard(opened)
            raise

        self._write_pool = write_pool
        self._read_pool = read_pool

    async def _open_pool(self, endpoint: EndpointSettings, name: str) -> ConnectionPool:
        try:
            return await self._pool_factory(endpoint, self._settings.pool, name=name)
        except Exception as exc:
            raise DatabaseConnectionError(
                f"Unable to open {name} pool at {endpoint.host}:{endpoint.port}: {exc}"
            ) from exc

    async def _test_connection(self, pool: ConnectionPool, label: str) -> None:
        try:
            await pool.fetchval("SELECT 1")
        except Exception as exc:
            logger.error("%s database connection test failed: %s", label, exc)
            raise DatabaseConnectionError(f"{label} database connection test failed: {exc}") from exc
        logger.info("%s database connection established", label)

    async def _create_schema(self, pool: ConnectionPool) -> None:
        try:
            await pool.execute(SCHEMA_SQL)
        except Exception as exc:
            logger.error("Error creating tables: %s", exc)
            raise SchemaCreationError(f"Unable to create database schema: {exc}") from exc
        logger.info("Database tables created/verified successfully")

    async def _discard(self, pools: List[Tuple[str, ConnectionPool]]) -> None:
        for label, pool in pools:
            try:
                await pool.close()
            except Exception as exc:
                logger.warning("Failed to close %s pool after failed attempt: %s", label.lower(), exc)

    def get_write_pool(self) -> ConnectionPool:
        if self._write_pool is None:
            raise DatabaseNotInitializedError()
        return self._write_pool

    def get_read_pool(self) -> ConnectionPool:
        if self._read_pool is None:
            raise DatabaseNotInitializedError()
        return self._read_pool

    async def check_health(self) -> DatabaseHealth:
        """Probe each distinct pool; failures are reported as ``False``, never raised."""

        primary = await self._probe(self._write_pool, "Primary")
        if self._topology is PoolTopology.SHARED:
            read_replica = primary
        else:
            read_replica = await self._probe(self._read_pool, "Read replica")
        return DatabaseHealth(primary=primary, read_replica=read_replica)

    async def _probe(self, pool: Optional[ConnectionPool], label: str) -> bool:
        if pool is None:
            logger.warning("%s database health check skipped: not initialized", label)
            return False
        try:
            await pool.fetchval("SELECT 1")
        except Exception as exc:
            logger.error("%s database health check failed: %s", label, exc)
            return False
        return True

    async def close(self) -> None:
        """Release the pools, closing a shared pool only once.

        Both pools are always attempted; the first failure is re-raised
        afterwards. Calling ``close`` on a closed manager does nothing.
        """

        write_pool, read_pool = self._write_pool, self._read_pool
        self._write_pool = None
        self._read_pool = None

        pools: List[Tuple[str, ConnectionPool]] = []
        if write_pool is not None:
            pools.append(("Primary", write_pool))
        if self._topology is PoolTopology.DISTINCT and read_pool is not None:
            pools.append(("Read replica", read_pool))

        first_error: Optional[Exception] = None
        for label, pool in pools:
            try:
                await pool.close()
            except Exception as exc:
                logger.error("Error closing %s database pool: %s", label.lower(), exc)
                if first_error is None:
                    first_error = exc
            else:
                logger.info("%s database pool closed", label)

        if first_error is not None:
            raise first_error


__all__ = [
    "ConnectionManager",
    "ConnectionPool",
    "ConstraintViolationError",
    "DatabaseConnectionError",
    "DatabaseError",
    "DatabaseHealth",
    "DatabaseNotInitializedError",
    "MAX_INIT_RETRIES",
    "PoolTopology",
    "RETRY_DELAY_SECONDS",
    "SCHEMA_SQL",
    "SchemaCreationError",
    "create_pool",
]
