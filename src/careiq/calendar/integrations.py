"""Credential store accessor for the ``calendar_integrations`` table.

One live row per (user, provider).  Rows are soft-deleted on disconnect so
sync logs and event mappings keep their referent.

Usage::

    store = IntegrationStore(pool)
    integration = await store.get(integration_id)
    await store.update(integration.id, last_sync_status="success")
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from careiq.calendar.models import (
    CalendarIntegration,
    CalendarProviderName,
    IntegrationSyncStatus,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_integrations"
_COLUMNS = (
    "id, user_id, provider, access_token, refresh_token, token_expires_at, calendar_id, "
    "server_url, account_username, is_active, sync_enabled, last_sync_at, last_sync_status, "
    "error_message, created_at, updated_at, deleted_at"
)
_UPDATABLE_FIELDS = frozenset(
    {
        "access_token",
        "refresh_token",
        "token_expires_at",
        "calendar_id",
        "server_url",
        "account_username",
        "is_active",
        "sync_enabled",
        "last_sync_at",
        "last_sync_status",
        "error_message",
    }
)


def _row_to_integration(row: Any) -> CalendarIntegration:
    return CalendarIntegration.model_validate(dict(row))


class IntegrationStore:
    """Read/write access to calendar integrations.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, integration_id: uuid.UUID) -> CalendarIntegration | None:
        """Return the integration (soft-deleted rows excluded), or ``None``."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE id = $1 AND deleted_at IS NULL",
                integration_id,
            )
        return _row_to_integration(row) if row is not None else None

    async def get_for_user(
        self, user_id: str, provider: CalendarProviderName
    ) -> CalendarIntegration | None:
        """Return the live integration for (*user_id*, *provider*), or ``None``."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE user_id = $1 AND provider = $2 AND deleted_at IS NULL
                """,
                user_id,
                str(provider),
            )
        return _row_to_integration(row) if row is not None else None

    async def list_for_user(self, user_id: str) -> list[CalendarIntegration]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE user_id = $1 AND deleted_at IS NULL
                ORDER BY provider
                """,
                user_id,
            )
        return [_row_to_integration(row) for row in rows]

    async def list_due(self, last_synced_before: datetime) -> list[CalendarIntegration]:
        """Active, sync-enabled integrations not synced since *last_synced_before*."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE deleted_at IS NULL
                  AND is_active
                  AND sync_enabled
                  AND (last_sync_at IS NULL OR last_sync_at < $1)
                ORDER BY last_sync_at NULLS FIRST, created_at
                """,
                last_synced_before,
            )
        return [_row_to_integration(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_connection(
        self,
        *,
        user_id: str,
        provider: CalendarProviderName,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        calendar_id: str | None = None,
        server_url: str | None = None,
        account_username: str | None = None,
    ) -> CalendarIntegration:
        """Create or re-authorize the live integration for (*user_id*, *provider*).

        Re-authorizing replaces the stored credentials, reactivates the
        integration and resets its sync status to ``pending``.  A refresh
        token omitted by the provider on re-consent keeps the stored one.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE}
                    (id, user_id, provider, access_token, refresh_token, token_expires_at,
                     calendar_id, server_url, account_username, is_active, sync_enabled,
                     last_sync_status)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, true, true, 'pending')
                ON CONFLICT (user_id, provider) WHERE deleted_at IS NULL DO UPDATE SET
                    access_token     = EXCLUDED.access_token,
                    refresh_token    = COALESCE(EXCLUDED.refresh_token,
                                                {_TABLE}.refresh_token),
                    token_expires_at = EXCLUDED.token_expires_at,
                    calendar_id      = COALESCE(EXCLUDED.calendar_id, {_TABLE}.calendar_id),
                    server_url       = COALESCE(EXCLUDED.server_url, {_TABLE}.server_url),
                    account_username = COALESCE(EXCLUDED.account_username,
                                                {_TABLE}.account_username),
                    is_active        = true,
                    last_sync_status = 'pending',
                    error_message    = NULL,
                    updated_at       = now()
                RETURNING {_COLUMNS}
                """,
                uuid.uuid4(),
                user_id,
                str(provider),
                access_token,
                refresh_token,
                token_expires_at,
                calendar_id,
                server_url,
                account_username,
            )
        integration = _row_to_integration(row)
        logger.info(
            "Calendar integration connected: id=%s user=%s provider=%s",
            integration.id,
            user_id,
            provider,
        )
        return integration

    async def update(self, integration_id: uuid.UUID, **fields: Any) -> None:
        """Write *fields* to the integration row.

        Raises
        ------
        ValueError
            If *fields* is empty or names a column that may not be updated.
        """
        if not fields:
            raise ValueError("update() requires at least one field")
        unknown = sorted(set(fields) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update integration field(s): {', '.join(unknown)}")

        assignments: list[str] = []
        values: list[Any] = []
        for index, (name, value) in enumerate(sorted(fields.items()), start=2):
            if isinstance(value, IntegrationSyncStatus | CalendarProviderName):
                value = str(value)
            assignments.append(f"{name} = ${index}")
            values.append(value)

        async with self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE {_TABLE} SET {', '.join(assignments)}, updated_at = now() WHERE id = $1",
                integration_id,
                *values,
            )

    async def soft_delete(self, integration_id: uuid.UUID) -> bool:
        """Disconnect: mark deleted, deactivate, and drop stored credentials."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    deleted_at = now(),
                    is_active = false,
                    access_token = NULL,
                    refresh_token = NULL,
                    token_expires_at = NULL,
                    updated_at = now()
                WHERE id = $1 AND deleted_at IS NULL
                """,
                integration_id,
            )
        deleted = result.endswith(" 1")
        if deleted:
            logger.info("Calendar integration disconnected: id=%s", integration_id)
        return deleted
