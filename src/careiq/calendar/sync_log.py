"""Sync log recorder for the ``calendar_sync_logs`` table.

A row is inserted in ``in_progress`` when a run starts and finalized exactly
once.  The partial unique index on ``integration_id`` where
``status = 'in_progress'`` is what makes mutual exclusion hold even when two
callers race past ``has_in_progress``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

import asyncpg

from careiq.calendar.errors import SyncAlreadyInProgress, sanitize_error_message
from careiq.calendar.models import (
    RunType,
    SyncDirection,
    SyncLog,
    SyncLogStatus,
    SyncRunResult,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

_TABLE = "calendar_sync_logs"
_COLUMNS = (
    "id, integration_id, run_type, direction, status, events_processed, events_created, "
    "events_updated, events_deleted, events_failed, conflicts_detected, execution_time_ms, "
    "error_message, started_at, completed_at"
)
STALE_RUN_MESSAGE = "Sync run abandoned before completion"


def _row_to_log(row: Any) -> SyncLog:
    return SyncLog.model_validate(dict(row))


class SyncLogRecorder:
    """Creates and finalizes sync-run audit rows."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def has_in_progress(self, integration_id: uuid.UUID) -> bool:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                f"SELECT EXISTS (SELECT 1 FROM {_TABLE} "
                "WHERE integration_id = $1 AND status = 'in_progress')",
                integration_id,
            )
        return bool(value)

    async def start(
        self,
        integration_id: uuid.UUID,
        run_type: RunType,
        direction: SyncDirection,
    ) -> SyncLog:
        """Insert the ``in_progress`` row that opens a run.

        Raises
        ------
        SyncAlreadyInProgress
            If another run for *integration_id* holds the in-progress slot.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {_TABLE} (id, integration_id, run_type, direction, status)
                    VALUES ($1, $2, $3, $4, 'in_progress')
                    RETURNING {_COLUMNS}
                    """,
                    uuid.uuid4(),
                    integration_id,
                    str(run_type),
                    str(direction),
                )
        except asyncpg.UniqueViolationError as exc:
            raise SyncAlreadyInProgress(integration_id) from exc
        return _row_to_log(row)

    async def finish(self, log_id: uuid.UUID, result: SyncRunResult) -> None:
        """Write final counts and terminal status for the run."""
        status = SyncLogStatus.SUCCESS if result.success else SyncLogStatus.ERROR
        error_message = sanitize_error_message(result.error) if result.error else None
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    status = $2,
                    events_processed = $3,
                    events_created = $4,
                    events_updated = $5,
                    events_deleted = $6,
                    events_failed = $7,
                    conflicts_detected = $8,
                    execution_time_ms = $9,
                    error_message = $10,
                    completed_at = now()
                WHERE id = $1
                """,
                log_id,
                str(status),
                result.processed,
                result.created,
                result.updated,
                result.deleted,
                result.failed,
                result.conflicts,
                result.duration_ms,
                error_message,
            )

    async def recent(self, integration_id: uuid.UUID, limit: int = 10) -> list[SyncLog]:
        """Most recent runs for *integration_id*, newest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE integration_id = $1
                ORDER BY started_at DESC
                LIMIT $2
                """,
                integration_id,
                limit,
            )
        return [_row_to_log(row) for row in rows]

    async def sweep_stale(self, started_before: datetime) -> Sequence[SyncLog]:
        """Close ``in_progress`` runs started before *started_before* as errors.

        The owning integrations are flagged ``error`` in the same transaction.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    UPDATE {_TABLE} SET
                        status = 'error',
                        error_message = $2,
                        completed_at = now()
                    WHERE status = 'in_progress' AND started_at < $1
                    RETURNING {_COLUMNS}
                    """,
                    started_before,
                    STALE_RUN_MESSAGE,
                )
                if rows:
                    await conn.execute(
                        """
                        UPDATE calendar_integrations SET
                            last_sync_status = 'error',
                            error_message = $2,
                            updated_at = now()
                        WHERE id = ANY($1::uuid[])
                        """,
                        [row["integration_id"] for row in rows],
                        STALE_RUN_MESSAGE,
                    )
        swept = [_row_to_log(row) for row in rows]
        for log in swept:
            logger.warning(
                "Swept stale sync run: log=%s integration=%s started_at=%s",
                log.id,
                log.integration_id,
                log.started_at,
            )
        return swept
