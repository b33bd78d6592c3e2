"""Unit tests for careiq.db connection parameters and pool wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from careiq.db import (
    Database,
    build_database_url,
    db_params_from_env,
    schema_search_path,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "DATABASE_URL",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_SSLMODE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_from_env_database_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://svc:pw@db.internal:6543/ignored?sslmode=require")

    db = Database.from_env("careiq")

    assert (db.host, db.port, db.user, db.password) == ("db.internal", 6543, "svc", "pw")
    assert db.ssl == "require"
    assert db.db_name == "careiq"


def test_from_env_individual_vars(monkeypatch):
    monkeypatch.setenv("POSTGRES_HOST", "pg")
    monkeypatch.setenv("POSTGRES_PORT", "5433")
    monkeypatch.setenv("POSTGRES_SSLMODE", "bogus")

    params = db_params_from_env()

    assert params["host"] == "pg"
    assert params["port"] == 5433
    assert params["ssl"] is None


def test_database_url_escapes_credentials():
    url = build_database_url(
        "careiq",
        {"host": "h", "port": 5432, "user": "a@b", "password": "p/w", "ssl": "disable"},
    )

    assert url == "postgresql://a%40b:p%2Fw@h:5432/careiq?sslmode=disable"


@pytest.mark.parametrize(
    ("schema", "expected"),
    [(None, None), ("public", "public"), ("calendar", "calendar,public"), ("  ", None)],
)
def test_schema_search_path(schema, expected):
    assert schema_search_path(schema) == expected


def test_invalid_schema_is_rejected():
    with pytest.raises(ValueError, match="Invalid schema name"):
        Database("careiq", schema="drop table;")


@patch("careiq.db.asyncpg.create_pool", new_callable=AsyncMock)
async def test_connect_sets_search_path(mock_create_pool: AsyncMock) -> None:
    pool = AsyncMock()
    mock_create_pool.return_value = pool

    db = Database(db_name="careiq", schema="calendar")
    out = await db.connect()

    assert out is pool
    kwargs = mock_create_pool.await_args.kwargs
    assert kwargs["server_settings"] == {"search_path": "calendar,public"}
    assert "ssl" not in kwargs


@patch("careiq.db.asyncpg.create_pool", new_callable=AsyncMock)
async def test_connect_retries_with_ssl_disable_on_upgrade_loss(
    mock_create_pool: AsyncMock,
) -> None:
    pool = AsyncMock()
    mock_create_pool.side_effect = [ConnectionError("unexpected connection_lost() call"), pool]

    db = Database(db_name="careiq")
    await db.connect()

    assert mock_create_pool.await_count == 2
    assert mock_create_pool.await_args_list[1].kwargs["ssl"] == "disable"


@patch("careiq.db.asyncpg.connect", new_callable=AsyncMock)
async def test_provision_creates_missing_database(mock_connect: AsyncMock) -> None:
    conn = AsyncMock()
    conn.fetchval = AsyncMock(return_value=None)
    mock_connect.return_value = conn

    await Database(db_name="careiq").provision()

    conn.execute.assert_awaited_once_with('CREATE DATABASE "careiq" TEMPLATE template0')
    conn.close.assert_awaited_once()


@patch("careiq.db.asyncpg.connect", new_callable=AsyncMock)
async def test_provision_skips_existing_database(mock_connect: AsyncMock) -> None:
    conn = AsyncMock()
    conn.fetchval = AsyncMock(return_value=1)
    mock_connect.return_value = conn

    await Database(db_name="careiq").provision()

    conn.execute.assert_not_awaited()
