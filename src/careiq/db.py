"""Database provisioning and connection pool management for CareIQ calendar sync."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"
_SCHEMA_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


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
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "careiq",
        "password": parsed.password or "careiq",
        "ssl": sslmode,
    }


def _normalize_schema_name(value: str | None) -> str | None:
    """Normalize and validate a schema name."""
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if _SCHEMA_NAME_PATTERN.fullmatch(normalized) is None:
        raise ValueError(f"Invalid schema name: {value!r}. Expected a SQL identifier-style string.")
    return normalized


def schema_search_path(schema: str | None) -> str | None:
    """Build the search_path for schema-scoped runtime access."""
    normalized = _normalize_schema_name(schema)
    if normalized is None:
        return None
    if normalized == "public":
        return "public"
    return f"{normalized},public"


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


def db_params_from_env() -> dict[str, str | int | None]:
    """Read DB connection params from environment variables."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return _db_params_from_database_url(database_url)
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "careiq"),
        "password": os.environ.get("POSTGRES_PASSWORD", "careiq"),
        "ssl": _normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


def build_database_url(db_name: str, params: dict[str, str | int | None] | None = None) -> str:
    """Return a SQLAlchemy-compatible URL for *db_name* (used by migrations)."""
    params = params if params is not None else db_params_from_env()
    user = quote(str(params["user"]), safe="")
    password = quote(str(params["password"]), safe="")
    url = f"postgresql://{user}:{password}@{params['host']}:{params['port']}/{db_name}"
    if isinstance(params.get("ssl"), str):
        url += f"?sslmode={params['ssl']}"
    return url


class Database:
    """asyncpg pool for the calendar tables, plus database provisioning.

    The tables live in one database, optionally inside a dedicated schema
    that is placed first on the pool's ``search_path``.
    """

    def __init__(
        self,
        db_name: str,
        schema: str | None = None,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.schema = _normalize_schema_name(schema)
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str, schema: str | None = None) -> Database:
        """Build from ``DATABASE_URL`` or the ``POSTGRES_*`` variables."""
        params = db_params_from_env()
        return cls(
            db_name=db_name,
            schema=schema,
            host=str(params["host"]),
            port=int(params["port"]),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
        )

    def _params(self) -> dict[str, str | int | None]:
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "ssl": self.ssl,
        }

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = dict(self._params())
        kwargs["database"] = database
        if self.ssl is None:
            del kwargs["ssl"]
        return kwargs

    async def _open(self, factory: Callable[..., Awaitable[Any]], kwargs: dict[str, Any]) -> Any:
        """Call *factory*; retry once with ``ssl=disable`` if the STARTTLS upgrade is dropped."""
        try:
            return await factory(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            logger.info(
                "Retrying PostgreSQL connection to %s with ssl=disable after SSL upgrade loss",
                kwargs["database"],
            )
            return await factory(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the target database through the ``postgres`` maintenance database."""
        conn = await self._open(asyncpg.connect, self._connect_kwargs("postgres"))
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1",
                self.db_name,
            )
            if exists:
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE takes no bind parameters
            safe_name = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{safe_name}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Create and return the connection pool."""
        kwargs = self._connect_kwargs(self.db_name)
        kwargs["min_size"] = self.min_pool_size
        kwargs["max_size"] = self.max_pool_size
        search_path = schema_search_path(self.schema)
        if search_path is not None:
            kwargs["server_settings"] = {"search_path": search_path}
        self.pool = await self._open(asyncpg.create_pool, kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Connection pool closed for: %s", self.db_name)

    def url(self) -> str:
        """SQLAlchemy URL for this database, used by the migration runner."""
        return build_database_url(self.db_name, self._params())
