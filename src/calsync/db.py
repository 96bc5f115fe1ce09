"""Postgres access for calsync: database provisioning plus one asyncpg pool.

:class:`Database` doubles as the query executor handed to
:class:`calsync.store.PostgresCalendarStore`; its ``fetch*``/``execute``
methods forward to the pool once :meth:`Database.connect` has run.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "calsync"
DEFAULT_DB_USER = "calsync"

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
# asyncpg reports a server that refuses STARTTLS this way when sslmode is implicit.
_STARTTLS_REFUSED = "unexpected connection_lost() call"

_T = TypeVar("_T")


def normalize_ssl_mode(value: str | None) -> str | None:
    """Lower-case a libpq ``sslmode``; blank or unknown values become None."""
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", value)
        return None
    return mode


def db_params_from_env() -> dict[str, str | int | None]:
    """Connection parameters from ``DATABASE_URL``, else the ``POSTGRES_*`` variables."""
    url = os.environ.get("DATABASE_URL")
    if url:
        parts = urlparse(url)
        query = parse_qs(parts.query)
        return {
            "host": parts.hostname or "localhost",
            "port": parts.port or 5432,
            "user": parts.username or DEFAULT_DB_USER,
            "password": parts.password or DEFAULT_DB_USER,
            "db_name": parts.path.lstrip("/") or DEFAULT_DB_NAME,
            "ssl": normalize_ssl_mode(query.get("sslmode", [None])[0]),
        }

    env = os.environ.get
    return {
        "host": env("POSTGRES_HOST", "localhost"),
        "port": int(env("POSTGRES_PORT", "5432")),
        "user": env("POSTGRES_USER", DEFAULT_DB_USER),
        "password": env("POSTGRES_PASSWORD", DEFAULT_DB_USER),
        "db_name": env("POSTGRES_DB", DEFAULT_DB_NAME),
        "ssl": normalize_ssl_mode(env("POSTGRES_SSLMODE")),
    }


class Database:
    """One calsync database: its connection settings and, once connected, its pool."""

    def __init__(
        self,
        db_name: str = DEFAULT_DB_NAME,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str | None = None) -> Database:
        params = db_params_from_env()
        ssl = params["ssl"]
        return cls(
            db_name=db_name or str(params["db_name"]),
            host=str(params["host"]),
            port=int(params["port"] or 5432),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=ssl if isinstance(ssl, str) else None,
        )

    @property
    def dsn(self) -> str:
        """libpq URL for this database; alembic builds its engine from it."""
        dsn = f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db_name}"
        return dsn if self.ssl is None else f"{dsn}?sslmode={self.ssl}"

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def _open(self, opener: Callable[..., Awaitable[_T]], kwargs: dict[str, Any]) -> _T:
        """Call ``opener``; retry once without TLS if an implicit STARTTLS was refused."""
        try:
            return await opener(**kwargs)
        except ConnectionError as exc:
            if self.ssl is not None or _STARTTLS_REFUSED not in str(exc):
                raise
            logger.info(
                "Postgres at %s:%s refused TLS; retrying with ssl=disable", self.host, self.port
            )
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance DB when it is missing."""
        conn = await self._open(asyncpg.connect, self._connect_kwargs("postgres"))
        try:
            found = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if found:
                logger.info("Database %s already exists", self.db_name)
                return
            quoted = self.db_name.replace('"', '""')
            # Identifiers cannot be bound as parameters.
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        kwargs = self._connect_kwargs(self.db_name)
        kwargs.update(min_size=self.min_pool_size, max_size=self.max_pool_size)
        self.pool = await self._open(asyncpg.create_pool, kwargs)
        logger.info(
            "Opened pool for %s (min=%d, max=%d)",
            self.db_name,
            self.min_pool_size,
            self.max_pool_size,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Closed pool for %s", self.db_name)

    # -- executor interface used by the store -------------------------------

    @property
    def _active_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:
        return await self._active_pool.fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        return await self._active_pool.fetchrow(query, *args, timeout=timeout)

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        return await self._active_pool.fetchval(query, *args, timeout=timeout)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        return await self._active_pool.execute(query, *args, timeout=timeout)
