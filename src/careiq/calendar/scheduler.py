"""Scheduled sync dispatch and stale-run recovery.

At each ``tick()`` the scheduler selects integrations that are due (active,
sync-enabled and not synced within ``interval_minutes``) and runs a
bidirectional scheduled sync for each, bounded by ``max_concurrent_runs``.
Each run is a single sequential unit of work; parallelism exists only
across integrations.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from careiq.calendar.errors import (
    IntegrationInactive,
    IntegrationNotFound,
    SyncAlreadyInProgress,
)
from careiq.calendar.models import RunType, SyncDirection, SyncLog, SyncRunResult
from careiq.calendar.tokens import utc_now
from careiq.core.telemetry import sync_span

if TYPE_CHECKING:
    from careiq.calendar.config import CalendarSyncConfig
    from careiq.calendar.integrations import IntegrationStore
    from careiq.calendar.models import CalendarIntegration
    from careiq.calendar.orchestrator import SyncOrchestrator
    from careiq.calendar.sync_log import SyncLogRecorder

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs due scheduled syncs and sweeps abandoned runs."""

    def __init__(
        self,
        *,
        orchestrator: SyncOrchestrator,
        integrations: IntegrationStore,
        sync_logs: SyncLogRecorder,
        config: CalendarSyncConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._orchestrator = orchestrator
        self._integrations = integrations
        self._sync_logs = sync_logs
        self._config = config
        self._clock = clock

    async def tick(self) -> list[SyncRunResult]:
        """Run every due integration once; returns the results of runs that started.

        Integrations already syncing, or disabled between selection and
        dispatch, are skipped.  A failed run never stops the others.
        """
        settings = self._config.scheduler
        with sync_span("calendar.scheduler.tick") as span:
            cutoff = self._clock() - timedelta(minutes=settings.interval_minutes)
            due = await self._integrations.list_due(cutoff)
            span.set_attribute("careiq.integrations_due", len(due))
            if not due:
                return []

            logger.info("Scheduler tick: %d integration(s) due", len(due))
            semaphore = asyncio.Semaphore(settings.max_concurrent_runs)

            async def _run_one(integration: CalendarIntegration) -> SyncRunResult | None:
                async with semaphore:
                    return await self._run_scheduled(integration)

            outcomes = await asyncio.gather(*(_run_one(item) for item in due))
            results = [result for result in outcomes if result is not None]
            span.set_attribute("careiq.runs_started", len(results))
            return results

    async def _run_scheduled(self, integration: CalendarIntegration) -> SyncRunResult | None:
        try:
            return await self._orchestrator.run(
                integration.id,
                SyncDirection.BIDIRECTIONAL,
                run_type=RunType.SCHEDULED,
            )
        except SyncAlreadyInProgress:
            logger.info("Skipping scheduled sync, run in progress: integration=%s", integration.id)
        except (IntegrationNotFound, IntegrationInactive) as exc:
            logger.info("Skipping scheduled sync: integration=%s reason=%s", integration.id, exc)
        except Exception:
            logger.exception("Scheduled sync dispatch failed: integration=%s", integration.id)
        return None

    async def sweep_stale(self) -> Sequence[SyncLog]:
        """Close in-progress runs older than ``stale_run_minutes`` as errors."""
        cutoff = self._clock() - timedelta(minutes=self._config.stale_run_minutes)
        swept = await self._sync_logs.sweep_stale(cutoff)
        if swept:
            logger.warning("Swept %d stale sync run(s)", len(swept))
        return swept

    async def run_forever(self) -> None:
        """Sweep and tick every ``tick_interval_seconds`` until cancelled."""
        interval = self._config.scheduler.tick_interval_seconds
        logger.info("Calendar sync scheduler started: tick every %ds", interval)
        while True:
            try:
                await self.sweep_stale()
                await self.tick()
            except Exception:
                logger.exception("Calendar sync scheduler tick failed")
            await asyncio.sleep(interval)
