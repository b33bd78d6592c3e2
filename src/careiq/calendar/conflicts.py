"""Conflict store for the ``calendar_sync_conflicts`` table.

Every time a pull overwrites a local edit because the remote copy changed
after the last sync, the orchestrator records both sides here first.  Rows
are written already resolved in favour of the remote copy.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from careiq.calendar.events import decode_jsonb, encode_jsonb
from careiq.calendar.models import (
    CalendarEvent,
    CalendarProviderName,
    ConflictResolution,
    ConflictType,
    RemoteEvent,
    SyncConflict,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_sync_conflicts"
_COLUMNS = (
    "id, user_id, event_id, integration_id, provider, external_id, conflict_type, "
    "local_data, external_data, resolution_status, resolved_at, created_at"
)


def _row_to_conflict(row: Any) -> SyncConflict:
    data = dict(row)
    data["local_data"] = decode_jsonb(data.get("local_data"))
    data["external_data"] = decode_jsonb(data.get("external_data"))
    return SyncConflict.model_validate(data)


def local_snapshot(event: CalendarEvent) -> dict[str, Any]:
    """The internal event as JSON, without provider bookkeeping."""
    return event.model_dump(mode="json", exclude={"provider_metadata"})


class ConflictStore:
    """Append-only record of pull conflicts, readable per user."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def record(
        self,
        *,
        local: CalendarEvent,
        remote: RemoteEvent,
        integration_id: uuid.UUID | None,
        resolved_at: datetime,
        conflict_type: ConflictType = ConflictType.EXTERNAL_CHANGE,
        resolution: ConflictResolution = ConflictResolution.RESOLVED_EXTERNAL,
    ) -> SyncConflict:
        """Store the losing local state and the winning remote payload.

        Raises
        ------
        ValueError
            If *local* has never been stored (it has no id).
        """
        if local.id is None:
            raise ValueError("Cannot record a conflict for an unsaved event")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE} (
                    id, user_id, event_id, integration_id, provider, external_id,
                    conflict_type, local_data, external_data, resolution_status, resolved_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11)
                RETURNING {_COLUMNS}
                """,
                uuid.uuid4(),
                local.user_id,
                local.id,
                integration_id,
                str(remote.provider),
                remote.remote_id,
                str(conflict_type),
                encode_jsonb(local_snapshot(local)),
                encode_jsonb(remote.payload),
                str(resolution),
                resolved_at if resolution != ConflictResolution.PENDING else None,
            )
        conflict = _row_to_conflict(row)
        logger.info(
            "Recorded sync conflict %s: event=%s provider=%s resolution=%s",
            conflict.id,
            conflict.event_id,
            conflict.provider,
            conflict.resolution_status,
        )
        return conflict

    async def list_for_user(
        self,
        user_id: str,
        *,
        resolution: ConflictResolution | None = None,
        provider: CalendarProviderName | None = None,
        limit: int = 50,
    ) -> list[SyncConflict]:
        """Conflicts for *user_id*, newest first, optionally filtered."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE user_id = $1
                  AND ($2::text IS NULL OR resolution_status = $2)
                  AND ($3::text IS NULL OR provider = $3)
                ORDER BY created_at DESC
                LIMIT $4
                """,
                user_id,
                str(resolution) if resolution is not None else None,
                str(provider) if provider is not None else None,
                limit,
            )
        return [_row_to_conflict(row) for row in rows]
