"""Sync orchestrator: runs one push, pull or bidirectional sync for an integration.

A run moves through Starting, Refreshing, the push and/or pull phases, and
Finalizing.  It always opens with an ``in_progress`` sync log row and always
closes it, whichever phase failed.

Idempotency rests on a single rule: an internal event is created remotely
only while it carries no external identifier for that provider.  A retried
run therefore never duplicates a remote event that an earlier run already
stamped.

Bidirectional conflict policy
-----------------------------
When a pulled remote event matches a local event that still has unpushed
edits, the remote copy wins if it changed after the local event was last
synced (or if the provider does not report a modification time).  Local
edits made in that window are overwritten; both versions are kept in the
conflict store first and the run's ``conflicts`` counter records it.  Events
whose last push failed count as having unpushed edits.  This is a
last-writer-wins simplification, not a merge.

A bidirectional run lists the remote window before it creates anything.
Remote copies carrying the marker of a local event that was never linked
are relinked by the pull instead of being created a second time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from calendar import monthrange
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import asyncpg

from careiq.calendar.errors import (
    CalendarSyncError,
    EventNotFound,
    IntegrationInactive,
    IntegrationNotFound,
    MappingError,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    SyncAlreadyInProgress,
    TransientNetworkError,
    UnauthorizedError,
    sanitize_error_message,
)
from careiq.calendar.mapping import EventMapper, get_mapper
from careiq.calendar.models import (
    AccessCredential,
    CalendarEvent,
    CalendarIntegration,
    CalendarProviderName,
    EventSyncStatus,
    IntegrationSyncStatus,
    RemoteEvent,
    RunType,
    SyncDirection,
    SyncLog,
    SyncRunResult,
    SyncStatusReport,
    TimeRange,
)
from careiq.calendar.tokens import TokenRefresher, utc_now
from careiq.core.logging import sync_context
from careiq.core.metrics import SyncMetrics, sync_metrics
from careiq.core.telemetry import sync_span

if TYPE_CHECKING:
    from careiq.calendar.config import CalendarSyncConfig
    from careiq.calendar.conflicts import ConflictStore
    from careiq.calendar.events import EventStore
    from careiq.calendar.integrations import IntegrationStore
    from careiq.calendar.providers.base import CalendarProviderClient
    from careiq.calendar.sync_log import SyncLogRecorder

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[CalendarIntegration], "CalendarProviderClient"]

RECENT_RUNS_LIMIT = 10


def shift_months(value: datetime, months: int) -> datetime:
    """Move *value* by whole calendar months, clamping the day to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass
class _RunTally:
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def all_failed(self) -> bool:
        return self.processed > 0 and self.failed == self.processed

    @property
    def success(self) -> bool:
        return self.error is None and not self.all_failed

    def summary_error(self) -> str | None:
        if self.error is not None:
            return self.error
        if self.all_failed:
            return sanitize_error_message("; ".join(self.errors)) or "All events failed to sync"
        return None


@dataclass
class _RunContext:
    integration: CalendarIntegration
    provider: CalendarProviderClient
    mapper: EventMapper
    calendar_id: str | None
    tally: _RunTally
    calendar_type_id: str | None = None
    credential: AccessCredential | None = None

    @property
    def provider_name(self) -> CalendarProviderName:
        return self.integration.provider


class SyncOrchestrator:
    """Executes sync runs against the stores and a provider client.

    Parameters
    ----------
    integrations, events, sync_logs:
        The credential store, event store and sync log recorder.
    conflicts:
        Receives a record of every local edit a pull overwrites.
    config:
        Calendar sync settings (timeouts, window, retry policy).
    provider_factory:
        Builds the provider client for an integration.
    """

    def __init__(
        self,
        *,
        integrations: IntegrationStore,
        events: EventStore,
        sync_logs: SyncLogRecorder,
        conflicts: ConflictStore,
        config: CalendarSyncConfig,
        provider_factory: ProviderFactory,
        refresher: TokenRefresher | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: SyncMetrics = sync_metrics,
    ) -> None:
        self._integrations = integrations
        self._events = events
        self._sync_logs = sync_logs
        self._conflicts = conflicts
        self._config = config
        self._provider_factory = provider_factory
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self._refresher = refresher or TokenRefresher(
            integrations,
            skew=timedelta(seconds=config.token_refresh_skew_seconds),
            clock=clock,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        integration_id: UUID,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        *,
        run_type: RunType = RunType.MANUAL,
        target_calendar_id: str | None = None,
        calendar_type_id: str | None = None,
    ) -> SyncRunResult:
        """Execute one sync run and return its outcome.

        *calendar_type_id*, when given, is applied to every event the pull
        writes.

        Raises
        ------
        IntegrationNotFound
            No live integration with *integration_id*.
        IntegrationInactive
            The integration is disconnected or paused.
        SyncAlreadyInProgress
            Another run for the integration has not finished.

        All three are raised before a sync log row exists.  Every failure
        after that point is reported through the returned result.
        """
        direction = SyncDirection(direction)
        integration = await self._integrations.get(integration_id)
        if integration is None:
            raise IntegrationNotFound(integration_id)
        if not integration.is_active:
            raise IntegrationInactive(integration.id, str(integration.provider))
        if await self._sync_logs.has_in_progress(integration.id):
            raise SyncAlreadyInProgress(integration.id)

        sync_log = await self._sync_logs.start(integration.id, run_type, direction)
        provider_name = str(integration.provider)
        tally = _RunTally()
        started = time.monotonic()
        self._metrics.run_started(provider_name)

        with (
            sync_context(
                integration_id=integration.id,
                sync_log_id=sync_log.id,
                provider=provider_name,
            ),
            sync_span(
                "calendar.sync.run",
                integration_id=integration.id,
                provider=provider_name,
                direction=direction,
                run_type=run_type,
            ) as span,
        ):
            logger.info(
                "Sync run started: integration=%s provider=%s direction=%s run_type=%s",
                integration.id,
                provider_name,
                direction,
                run_type,
            )
            try:
                async with asyncio.timeout(self._config.sync_timeout_seconds):
                    await self._execute(
                        integration, direction, target_calendar_id, calendar_type_id, tally
                    )
            except TimeoutError:
                tally.error = f"Sync timed out after {self._config.sync_timeout_seconds:g}s"
                logger.warning("Sync run timed out: integration=%s", integration.id)
            except CalendarSyncError as exc:
                tally.error = sanitize_error_message(str(exc))
                logger.warning(
                    "Sync run failed: integration=%s error=%s", integration.id, tally.error
                )
            except (asyncpg.PostgresError, OSError) as exc:
                tally.error = sanitize_error_message(f"Datastore error: {exc}")
                logger.error("Sync run failed on datastore access: integration=%s", integration.id)
            except Exception as exc:
                tally.error = sanitize_error_message(f"Unexpected error: {exc}")
                logger.exception("Unexpected sync failure: integration=%s", integration.id)
            finally:
                result = await self._finalize(
                    integration,
                    sync_log,
                    direction=direction,
                    run_type=run_type,
                    tally=tally,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

            span.set_attribute("careiq.success", result.success)
            span.set_attribute("careiq.processed", result.processed)
            logger.info(
                "Sync run finished: integration=%s success=%s processed=%d created=%d "
                "updated=%d failed=%d conflicts=%d duration_ms=%d",
                integration.id,
                result.success,
                result.processed,
                result.created,
                result.updated,
                result.failed,
                result.conflicts,
                result.duration_ms,
            )
        return result

    async def delete_event(self, user_id: str, event_id: UUID) -> list[CalendarProviderName]:
        """Delete an event everywhere, remote copies first.

        Returns the providers whose remote copy was removed (or was already
        gone).  Any provider failure other than not-found aborts before the
        local row is touched.
        """
        event = await self._events.get(event_id)
        if event is None or event.user_id != user_id:
            raise EventNotFound(event_id)

        removed: list[CalendarProviderName] = []
        for provider_name, remote_id in sorted(event.external_ids.items()):
            integration = await self._integrations.get_for_user(user_id, provider_name)
            if integration is None:
                logger.warning(
                    "No %s integration for user %s; remote copy %s left in place",
                    provider_name,
                    user_id,
                    remote_id,
                )
                continue
            await self._delete_remote(integration, remote_id)
            removed.append(provider_name)

        await self._events.delete(event_id)
        logger.info("Calendar event deleted: id=%s providers=%s", event_id, removed)
        return removed

    async def status(self, integration_id: UUID) -> SyncStatusReport:
        integration = await self._integrations.get(integration_id)
        if integration is None:
            raise IntegrationNotFound(integration_id)
        recent = await self._sync_logs.recent(integration.id, limit=RECENT_RUNS_LIMIT)
        return SyncStatusReport(
            integration_id=integration.id,
            provider=integration.provider,
            is_active=integration.is_active,
            sync_enabled=integration.sync_enabled,
            last_sync_at=integration.last_sync_at,
            last_sync_status=integration.last_sync_status,
            error_message=integration.error_message,
            recent_runs=recent,
        )

    def pull_window(self) -> TimeRange:
        now = self._clock()
        return TimeRange(
            start=shift_months(now, -self._config.pull_months_back),
            end=shift_months(now, self._config.pull_months_ahead),
        )

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------

    async def _execute(
        self,
        integration: CalendarIntegration,
        direction: SyncDirection,
        target_calendar_id: str | None,
        calendar_type_id: str | None,
        tally: _RunTally,
    ) -> None:
        provider = self._provider_factory(integration)
        ctx = _RunContext(
            integration=integration,
            provider=provider,
            mapper=get_mapper(integration.provider),
            calendar_id=target_calendar_id or integration.calendar_id,
            calendar_type_id=calendar_type_id,
            tally=tally,
        )
        try:
            ctx.credential = await self._with_retry(
                lambda: self._refresher.ensure_valid(integration, provider),
                what="token refresh",
            )
            # The listing is taken before any create so this run's own copies
            # never come back through the pull.
            remote_events: list[RemoteEvent] = []
            if direction.pulls:
                remote_events = await self._list_remote(ctx)
            if direction.pushes:
                await self._push_creates(ctx, skip=self._marked_event_ids(ctx, remote_events))
            if direction.pulls:
                await self._pull(ctx, remote_events)
            if direction.pushes:
                await self._push_updates(ctx)
        finally:
            await provider.shutdown()

    async def _push_creates(self, ctx: _RunContext, *, skip: set[UUID]) -> None:
        pending = await self._events.list_pending_push(
            ctx.integration.user_id,
            ctx.provider_name,
            include_errored=self._config.retry_errored_events,
        )
        logger.debug("Push phase: %d event(s) awaiting creation", len(pending))
        for event in pending:
            if event.id in skip:
                logger.info(
                    "Event %s already has an unlinked %s copy; linking it on pull",
                    event.id,
                    ctx.provider_name,
                )
                continue
            ctx.tally.processed += 1
            try:
                await self._create_remote(ctx, event)
            except UnauthorizedError:
                raise
            except (MappingError, ProviderError) as exc:
                await self._record_failure(ctx, event, exc)
                continue
            ctx.tally.created += 1
            self._metrics.event_outcome(str(ctx.provider_name), "created")

    async def _create_remote(self, ctx: _RunContext, event: CalendarEvent) -> RemoteEvent:
        if event.id is None:
            raise MappingError(f"Cannot push an unsaved event to {ctx.provider_name}")
        event_id = event.id
        outgoing = ctx.mapper.to_remote(event)
        stored = await self._with_retry(
            lambda: ctx.provider.create_event(
                self._credential(ctx), calendar_id=ctx.calendar_id, event=outgoing
            ),
            what="create event",
        )
        if not stored.remote_id:
            raise MappingError(f"{ctx.provider_name} did not return an id for event {event_id}")
        await self._events.mark_synced(
            event_id,
            stored.remote_id,
            ctx.provider_name,
            self._clock(),
            metadata=ctx.mapper.sync_metadata(outgoing, stored),
        )
        return stored

    async def _push_updates(self, ctx: _RunContext) -> None:
        pending = await self._events.list_pending_updates(
            ctx.integration.user_id, ctx.provider_name
        )
        logger.debug("Push phase: %d linked event(s) with local edits", len(pending))
        for event in pending:
            ctx.tally.processed += 1
            try:
                await self._update_remote(ctx, event)
            except UnauthorizedError:
                raise
            except (MappingError, ProviderError) as exc:
                await self._record_failure(ctx, event, exc)
                continue
            ctx.tally.updated += 1
            self._metrics.event_outcome(str(ctx.provider_name), "updated")

    async def _update_remote(self, ctx: _RunContext, event: CalendarEvent) -> None:
        if event.id is None:
            raise MappingError(f"Cannot push an unsaved event to {ctx.provider_name}")
        event_id = event.id
        remote_id = event.external_id(ctx.provider_name)
        if remote_id is None:
            raise MappingError(f"Event {event_id} is not linked to {ctx.provider_name}")
        outgoing = ctx.mapper.to_remote(event)
        stored = await self._with_retry(
            lambda: ctx.provider.update_event(
                self._credential(ctx),
                calendar_id=ctx.calendar_id,
                remote_id=remote_id,
                event=outgoing,
            ),
            what="update event",
        )
        await self._events.mark_synced(
            event_id,
            stored.remote_id or remote_id,
            ctx.provider_name,
            self._clock(),
            metadata=ctx.mapper.sync_metadata(outgoing, stored),
        )

    async def _list_remote(self, ctx: _RunContext) -> list[RemoteEvent]:
        window = self.pull_window()
        remote_events = await self._with_retry(
            lambda: ctx.provider.list_events(
                self._credential(ctx),
                calendar_id=ctx.calendar_id,
                time_range=window,
                max_results=self._config.pull_max_results,
            ),
            what="list events",
        )
        logger.debug(
            "Pull phase: %d remote event(s) in %s..%s", len(remote_events), window.start, window.end
        )
        return remote_events

    def _marked_event_ids(self, ctx: _RunContext, remote_events: list[RemoteEvent]) -> set[UUID]:
        """Internal ids named by the markers on *remote_events*."""
        marked: set[UUID] = set()
        for remote in remote_events:
            try:
                incoming = ctx.mapper.to_internal(remote, ctx.integration.user_id)
            except (MappingError, ValueError):
                continue
            if incoming.id is not None:
                marked.add(incoming.id)
        return marked

    async def _pull(self, ctx: _RunContext, remote_events: list[RemoteEvent]) -> None:
        for remote in remote_events:
            ctx.tally.processed += 1
            try:
                outcome = await self._apply_remote(ctx, remote)
            except UnauthorizedError:
                raise
            except (MappingError, ProviderError, ValueError) as exc:
                await self._record_failure(ctx, None, exc, label=f"remote {remote.remote_id}")
                continue
            if outcome == "created":
                ctx.tally.created += 1
            elif outcome == "updated":
                ctx.tally.updated += 1
            else:
                continue
            self._metrics.event_outcome(str(ctx.provider_name), outcome)

    async def _apply_remote(self, ctx: _RunContext, remote: RemoteEvent) -> str:
        """Upsert one pulled event.

        Returns ``"created"``, ``"updated"``, or ``"skipped"`` for a stray
        duplicate of an event that is already linked to another remote copy.
        """
        user_id = ctx.integration.user_id
        incoming = ctx.mapper.to_internal(remote, user_id, calendar_type_id=ctx.calendar_type_id)
        local = await self._events.get_by_external_id(
            user_id, ctx.provider_name, remote.remote_id or ""
        )
        if local is None and incoming.id is not None:
            candidate = await self._events.get(incoming.id)
            if candidate is not None and candidate.user_id == user_id:
                linked_to = candidate.external_id(ctx.provider_name)
                if linked_to is not None:
                    logger.warning(
                        "Skipping %s %s: duplicate of event %s, which is linked to %s",
                        ctx.provider_name,
                        remote.remote_id,
                        candidate.id,
                        linked_to,
                    )
                    return "skipped"
                # Our own marker on a remote copy whose link was never recorded.
                logger.info(
                    "Relinking event %s to %s %s", candidate.id, ctx.provider_name, remote.remote_id
                )
                local = candidate

        if (
            local is not None
            and local.sync_status in (EventSyncStatus.PENDING, EventSyncStatus.ERROR)
            and local.external_id(ctx.provider_name) is not None
        ):
            if not self._remote_wins(local, remote):
                await self._update_remote(ctx, local)
                return "updated"
            await self._conflicts.record(
                local=local,
                remote=remote,
                integration_id=ctx.integration.id,
                resolved_at=self._clock(),
            )
            ctx.tally.conflicts += 1
            self._metrics.event_outcome(str(ctx.provider_name), "conflict")
            logger.info(
                "Conflict on event %s: remote copy changed since last sync, remote wins",
                local.id,
            )

        merged = incoming.model_copy(
            update={
                "id": local.id if local is not None else None,
                "calendar_type_id": incoming.calendar_type_id
                or (local.calendar_type_id if local is not None else None),
                "last_synced_at": self._clock(),
                "sync_status": EventSyncStatus.SYNCED,
            }
        )
        _, created = await self._events.upsert_from_pull(merged)
        return "created" if created else "updated"

    @staticmethod
    def _remote_wins(local: CalendarEvent, remote: RemoteEvent) -> bool:
        if remote.updated_at is None or local.last_synced_at is None:
            return True
        return remote.updated_at > local.last_synced_at

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _credential(ctx: _RunContext) -> AccessCredential:
        if ctx.credential is None:
            raise CalendarSyncError("Provider call attempted before the credential was resolved")
        return ctx.credential

    async def _with_retry[T](self, call: Callable[[], Awaitable[T]], *, what: str) -> T:
        """Await *call*, retrying throttling and transient failures with backoff."""
        attempt = 0
        while True:
            try:
                return await call()
            except (RateLimitedError, TransientNetworkError) as exc:
                if attempt >= self._config.event_retry_attempts:
                    raise
                delay = self._config.retry_base_backoff_seconds * (2**attempt)
                if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
                    delay = exc.retry_after
                attempt += 1
                logger.warning(
                    "%s failed (%s); retry %d/%d in %.1fs",
                    what,
                    exc,
                    attempt,
                    self._config.event_retry_attempts,
                    delay,
                )
                await self._sleep(delay)

    async def _record_failure(
        self,
        ctx: _RunContext,
        event: CalendarEvent | None,
        exc: Exception,
        *,
        label: str | None = None,
    ) -> None:
        message = sanitize_error_message(str(exc))
        subject = label or f"event {event.id if event is not None else '?'}"
        ctx.tally.failed += 1
        ctx.tally.errors.append(f"{subject}: {message}")
        self._metrics.event_outcome(str(ctx.provider_name), "failed")
        logger.warning("Event sync failed: %s: %s", subject, message)
        if event is not None and event.id is not None:
            await self._events.mark_error(event.id, message)

    async def _delete_remote(self, integration: CalendarIntegration, remote_id: str) -> None:
        provider = self._provider_factory(integration)
        try:
            credential = await self._with_retry(
                lambda: self._refresher.ensure_valid(integration, provider),
                what="token refresh",
            )
            try:
                await self._with_retry(
                    lambda: provider.delete_event(
                        credential, calendar_id=integration.calendar_id, remote_id=remote_id
                    ),
                    what="delete event",
                )
            except NotFoundError:
                logger.info("Remote %s event %s already gone", integration.provider, remote_id)
        finally:
            await provider.shutdown()

    async def _finalize(
        self,
        integration: CalendarIntegration,
        sync_log: SyncLog,
        *,
        direction: SyncDirection,
        run_type: RunType,
        tally: _RunTally,
        duration_ms: int,
    ) -> SyncRunResult:
        result = SyncRunResult(
            integration_id=integration.id,
            sync_log_id=sync_log.id,
            provider=integration.provider,
            direction=direction,
            run_type=run_type,
            success=tally.success,
            processed=tally.processed,
            created=tally.created,
            updated=tally.updated,
            deleted=tally.deleted,
            failed=tally.failed,
            conflicts=tally.conflicts,
            duration_ms=duration_ms,
            error=tally.summary_error(),
            errors=list(tally.errors),
        )
        try:
            await self._sync_logs.finish(sync_log.id, result)
            await self._integrations.update(
                integration.id,
                last_sync_at=self._clock(),
                last_sync_status=(
                    IntegrationSyncStatus.SUCCESS if result.success else IntegrationSyncStatus.ERROR
                ),
                error_message=None if result.success else result.error,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            logger.exception("Failed to finalize sync run %s", sync_log.id)
            result = result.model_copy(
                update={
                    "success": False,
                    "error": result.error or sanitize_error_message(f"Datastore error: {exc}"),
                }
            )
        self._metrics.run_finished(
            str(integration.provider),
            status="success" if result.success else "error",
            duration_ms=duration_ms,
        )
        return result
