"""Database provisioning and connection pool management."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def _db_params_from_database_url(database_url: str) -> dict[str, str | int | None]:
    """Parse connection params from a libpq-style DATABASE_URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    db_name = parsed.path.lstrip("/") or None
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "matterflow",
        "password": parsed.password or "matterflow",
        "database": db_name,
        "ssl": sslmode,
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


def db_params_from_env(env: Mapping[str, str] | None = None) -> dict[str, str | int | None]:
    """Read DB connection params from DATABASE_URL or POSTGRES_* variables."""
    env = os.environ if env is None else env
    database_url = env.get("DATABASE_URL")
    if database_url:
        return _db_params_from_database_url(database_url)
    return {
        "host": env.get("POSTGRES_HOST", "localhost"),
        "port": int(env.get("POSTGRES_PORT", "5432")),
        "user": env.get("POSTGRES_USER", "matterflow"),
        "password": env.get("POSTGRES_PASSWORD", "matterflow"),
        "database": env.get("POSTGRES_DB"),
        "ssl": _normalize_ssl_mode(env.get("POSTGRES_SSLMODE")),
    }


def sqlalchemy_url(db_name: str, env: Mapping[str, str] | None = None) -> str:
    """Build a psycopg2 SQLAlchemy URL for Alembic from the same env params."""
    params = db_params_from_env(env)
    url = (
        f"postgresql://{params['user']}:{params['password']}"
        f"@{params['host']}:{params['port']}/{params['database'] or db_name}"
    )
    if params["ssl"]:
        url += f"?sslmode={params['ssl']}"
    return url


class Database:
    """Owns the engine's asyncpg pool.

    ``provision()`` creates the database when missing; ``connect()`` opens
    the pool used by every store. Both retry once with ``ssl=disable`` when
    no sslmode was configured and the server drops the STARTTLS upgrade.
    """

    def __init__(
        self,
        db_name: str,
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

    async def _open(self, opener: Callable[..., Awaitable[Any]], what: str, **kwargs: Any) -> Any:
        try:
            return await opener(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            logger.info("Retrying PostgreSQL %s with ssl=disable after SSL upgrade loss", what)
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the engine database through the ``postgres`` maintenance database."""
        conn = await self._open(
            asyncpg.connect, "provision connection", **self._connect_kwargs("postgres")
        )
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                logger.info("Database already exists: %s", self.db_name)
                return
            # Identifiers cannot be bound as parameters.
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        self.pool = await self._open(
            asyncpg.create_pool,
            "pool creation",
            **self._connect_kwargs(self.db_name),
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
        )
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Connection pool closed for: %s", self.db_name)

    @classmethod
    def from_env(cls, db_name: str, env: Mapping[str, str] | None = None) -> Database:
        """Build from DATABASE_URL or POSTGRES_* variables.

        A database named in the environment wins over *db_name*.
        """
        params = db_params_from_env(env)
        ssl = params["ssl"]
        return cls(
            db_name=str(params["database"] or db_name),
            host=str(params["host"]),
            port=int(params["port"] or 5432),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=ssl if isinstance(ssl, str) else None,
        )
