"""Event store accessor for the ``calendar_events`` table.

Each provider owns one external-identifier column.  Those columns are the
idempotency key of the whole subsystem: an event is only ever created
remotely while its column is NULL, and partial unique indexes on
``(user_id, <column>)`` make a second link impossible at the storage layer.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from careiq.calendar.errors import sanitize_error_message
from careiq.calendar.models import CalendarEvent, CalendarProviderName, EventSyncStatus

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_events"

EXTERNAL_ID_COLUMNS: dict[CalendarProviderName, str] = {
    CalendarProviderName.GOOGLE: "google_event_id",
    CalendarProviderName.OUTLOOK: "outlook_event_id",
    CalendarProviderName.APPLE_CALDAV: "caldav_event_href",
}

_COLUMNS = (
    "id, user_id, calendar_type_id, title, description, location, start_at, end_at, "
    "all_day, category, show_as, google_event_id, outlook_event_id, caldav_event_href, "
    "sync_status, sync_error, last_synced_at, provider_metadata, created_at, updated_at"
)


def _external_column(provider: CalendarProviderName | str) -> str:
    return EXTERNAL_ID_COLUMNS[CalendarProviderName(provider)]


def encode_jsonb(value: dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def decode_jsonb(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Discarding undecodable JSONB value")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _row_to_event(row: Any) -> CalendarEvent:
    data = dict(row)
    external_ids: dict[CalendarProviderName, str] = {}
    for provider, column in EXTERNAL_ID_COLUMNS.items():
        value = data.pop(column, None)
        if value:
            external_ids[provider] = value
    data["external_ids"] = external_ids
    data["provider_metadata"] = decode_jsonb(data.get("provider_metadata"))
    return CalendarEvent.model_validate(data)


class EventStore:
    """Read/write access to internal calendar events.

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

    async def get(self, event_id: uuid.UUID) -> CalendarEvent | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM {_TABLE} WHERE id = $1", event_id)
        return _row_to_event(row) if row is not None else None

    async def get_by_external_id(
        self,
        user_id: str,
        provider: CalendarProviderName,
        external_id: str,
    ) -> CalendarEvent | None:
        """Return the event *user_id* has linked to *external_id* on *provider*."""
        column = _external_column(provider)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND {column} = $2",
                user_id,
                external_id,
            )
        return _row_to_event(row) if row is not None else None

    async def list_pending_push(
        self,
        user_id: str,
        provider: CalendarProviderName,
        *,
        include_errored: bool = False,
    ) -> list[CalendarEvent]:
        """Events never created on *provider* that are waiting to be pushed.

        Selection is by absence of the provider's external identifier; an
        event that already carries one is never offered for creation again.
        """
        column = _external_column(provider)
        statuses = [str(EventSyncStatus.PENDING)]
        if include_errored:
            statuses.append(str(EventSyncStatus.ERROR))
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE user_id = $1
                  AND {column} IS NULL
                  AND sync_status = ANY($2::text[])
                ORDER BY start_at, created_at, id
                """,
                user_id,
                statuses,
            )
        return [_row_to_event(row) for row in rows]

    async def list_pending_updates(
        self, user_id: str, provider: CalendarProviderName
    ) -> list[CalendarEvent]:
        """Linked events with local edits not yet written to *provider*.

        Events whose last update attempt failed (status ``error``) are
        included: their remote copy is still stale.
        """
        column = _external_column(provider)
        statuses = [str(EventSyncStatus.PENDING), str(EventSyncStatus.ERROR)]
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE user_id = $1
                  AND {column} IS NOT NULL
                  AND sync_status = ANY($2::text[])
                ORDER BY start_at, created_at, id
                """,
                user_id,
                statuses,
            )
        return [_row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_from_pull(self, event: CalendarEvent) -> tuple[CalendarEvent, bool]:
        """Insert or overwrite *event* with pulled field values.

        When ``event.id`` names an existing row owned by the same user, that
        row is overwritten in place; otherwise a new row is inserted.
        Returns the stored event and whether it was newly created.
        """
        event_id = event.id or uuid.uuid4()
        columns = {provider: event.external_ids.get(provider) for provider in EXTERNAL_ID_COLUMNS}
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE} (
                    id, user_id, calendar_type_id, title, description, location,
                    start_at, end_at, all_day, category, show_as,
                    google_event_id, outlook_event_id, caldav_event_href,
                    sync_status, sync_error, last_synced_at, provider_metadata
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                        $15, NULL, $16, $17::jsonb)
                ON CONFLICT (id) DO UPDATE SET
                    calendar_type_id   = COALESCE(EXCLUDED.calendar_type_id,
                                                  {_TABLE}.calendar_type_id),
                    title              = EXCLUDED.title,
                    description        = EXCLUDED.description,
                    location           = EXCLUDED.location,
                    start_at           = EXCLUDED.start_at,
                    end_at             = EXCLUDED.end_at,
                    all_day            = EXCLUDED.all_day,
                    category           = EXCLUDED.category,
                    show_as            = EXCLUDED.show_as,
                    google_event_id    = COALESCE(EXCLUDED.google_event_id,
                                                  {_TABLE}.google_event_id),
                    outlook_event_id   = COALESCE(EXCLUDED.outlook_event_id,
                                                  {_TABLE}.outlook_event_id),
                    caldav_event_href  = COALESCE(EXCLUDED.caldav_event_href,
                                                  {_TABLE}.caldav_event_href),
                    sync_status        = EXCLUDED.sync_status,
                    sync_error         = NULL,
                    last_synced_at     = EXCLUDED.last_synced_at,
                    provider_metadata  = {_TABLE}.provider_metadata
                                         || EXCLUDED.provider_metadata,
                    updated_at         = now()
                WHERE {_TABLE}.user_id = EXCLUDED.user_id
                RETURNING {_COLUMNS}, (xmax = 0) AS inserted
                """,
                event_id,
                event.user_id,
                event.calendar_type_id,
                event.title,
                event.description,
                event.location,
                event.start_at,
                event.end_at,
                event.all_day,
                event.category,
                str(event.show_as),
                columns[CalendarProviderName.GOOGLE],
                columns[CalendarProviderName.OUTLOOK],
                columns[CalendarProviderName.APPLE_CALDAV],
                str(event.sync_status),
                event.last_synced_at,
                encode_jsonb(event.provider_metadata),
            )
        if row is None:
            raise ValueError(f"Event {event_id} belongs to another user")
        data = dict(row)
        created = bool(data.pop("inserted"))
        return _row_to_event(data), created

    async def mark_synced(
        self,
        event_id: uuid.UUID,
        external_id: str,
        provider: CalendarProviderName,
        synced_at: datetime,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Stamp the provider's identifier on the event and mark it synced."""
        column = _external_column(provider)
        patch = {str(provider): metadata} if metadata else {}
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    {column} = $2,
                    sync_status = $3,
                    sync_error = NULL,
                    last_synced_at = $4,
                    provider_metadata = provider_metadata || $5::jsonb,
                    updated_at = now()
                WHERE id = $1
                """,
                event_id,
                external_id,
                str(EventSyncStatus.SYNCED),
                synced_at,
                encode_jsonb(patch),
            )

    async def mark_error(self, event_id: uuid.UUID, message: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE} SET sync_status = $2, sync_error = $3, updated_at = now()
                WHERE id = $1
                """,
                event_id,
                str(EventSyncStatus.ERROR),
                sanitize_error_message(message),
            )

    async def delete(self, event_id: uuid.UUID) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(f"DELETE FROM {_TABLE} WHERE id = $1", event_id)
        return result.endswith(" 1")
