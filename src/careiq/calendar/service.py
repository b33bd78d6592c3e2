"""Runtime wiring for calendar synchronization.

``CalendarSyncService`` owns the shared HTTP client, the stores and the
orchestrator, and exposes the operations the API and CLI call: manual
sync, status, conflict history, integration management, the OAuth and
CalDAV connect flows, explicit event deletion, and the scheduled tick.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from uuid import UUID

import httpx

from careiq.calendar.config import CalendarSyncConfig
from careiq.calendar.conflicts import ConflictStore
from careiq.calendar.errors import (
    IntegrationNotFound,
    InvalidOAuthState,
    ProviderNotConfigured,
)
from careiq.calendar.events import EventStore
from careiq.calendar.integrations import IntegrationStore
from careiq.calendar.models import (
    AccessCredential,
    CalendarIntegration,
    CalendarProviderName,
    ConflictResolution,
    RunType,
    SyncConflict,
    SyncDirection,
    SyncLog,
    SyncRunResult,
    SyncStatusReport,
)
from careiq.calendar.oauth import OAuthStateStore
from careiq.calendar.orchestrator import SyncOrchestrator
from careiq.calendar.providers import build_provider
from careiq.calendar.providers.base import CalendarProviderClient, OAuthProviderClient
from careiq.calendar.scheduler import SyncScheduler
from careiq.calendar.sync_log import SyncLogRecorder
from careiq.calendar.tokens import utc_now

logger = logging.getLogger(__name__)

ProviderBuilder = Callable[[CalendarProviderName], CalendarProviderClient]


class CalendarSyncService:
    """Facade over the sync subsystem for request handlers and the CLI.

    Parameters
    ----------
    integrations, events, sync_logs, conflicts:
        Datastore accessors.
    config:
        Calendar sync settings.
    http_client:
        Shared client for provider calls; created (and closed by ``close``)
        when omitted.
    provider_builder:
        Overrides provider construction, mainly for tests.
    """

    def __init__(
        self,
        *,
        integrations: IntegrationStore,
        events: EventStore,
        sync_logs: SyncLogRecorder,
        conflicts: ConflictStore,
        config: CalendarSyncConfig,
        http_client: httpx.AsyncClient | None = None,
        provider_builder: ProviderBuilder | None = None,
        oauth_states: OAuthStateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.integrations = integrations
        self.events = events
        self.sync_logs = sync_logs
        self.conflicts = conflicts
        self.oauth_states = oauth_states or OAuthStateStore()
        self._owns_http_client = http_client is None and provider_builder is None
        self._http_client = http_client
        if provider_builder is None:
            self._http_client = http_client or httpx.AsyncClient(
                timeout=config.http_timeout_seconds
            )
            shared_client = self._http_client

            def provider_builder(provider: CalendarProviderName) -> CalendarProviderClient:
                return build_provider(provider, config, shared_client)

        self._build_provider = provider_builder
        self.orchestrator = SyncOrchestrator(
            integrations=integrations,
            events=events,
            sync_logs=sync_logs,
            conflicts=conflicts,
            config=config,
            provider_factory=lambda integration: self._build_provider(integration.provider),
            clock=clock,
            sleep=sleep,
        )
        self.scheduler = SyncScheduler(
            orchestrator=self.orchestrator,
            integrations=integrations,
            sync_logs=sync_logs,
            config=config,
            clock=clock,
        )

    @classmethod
    def from_pool(
        cls,
        pool,  # noqa: ANN001
        config: CalendarSyncConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> CalendarSyncService:
        """Build a service whose stores all share the asyncpg *pool*."""
        return cls(
            integrations=IntegrationStore(pool),
            events=EventStore(pool),
            sync_logs=SyncLogRecorder(pool),
            conflicts=ConflictStore(pool),
            config=config,
            http_client=http_client,
        )

    async def close(self) -> None:
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    async def get_integration(
        self, integration_id: UUID, *, user_id: str | None = None
    ) -> CalendarIntegration:
        """Return the live integration, optionally requiring *user_id* to own it."""
        integration = await self.integrations.get(integration_id)
        if integration is None or (user_id is not None and integration.user_id != user_id):
            raise IntegrationNotFound(integration_id)
        return integration

    async def list_integrations(self, user_id: str) -> list[CalendarIntegration]:
        return await self.integrations.list_for_user(user_id)

    async def update_integration(
        self,
        integration_id: UUID,
        *,
        user_id: str | None = None,
        is_active: bool | None = None,
        sync_enabled: bool | None = None,
        calendar_id: str | None = None,
    ) -> CalendarIntegration:
        """Toggle integration flags or retarget its calendar."""
        await self.get_integration(integration_id, user_id=user_id)
        fields = {
            name: value
            for name, value in (
                ("is_active", is_active),
                ("sync_enabled", sync_enabled),
                ("calendar_id", calendar_id),
            )
            if value is not None
        }
        if fields:
            await self.integrations.update(integration_id, **fields)
            logger.info(
                "Calendar integration updated: id=%s fields=%s", integration_id, sorted(fields)
            )
        return await self.get_integration(integration_id)

    async def disconnect(self, integration_id: UUID, *, user_id: str | None = None) -> None:
        """Soft-delete the integration; linked events keep their external ids."""
        await self.get_integration(integration_id, user_id=user_id)
        if not await self.integrations.soft_delete(integration_id):
            raise IntegrationNotFound(integration_id)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(
        self,
        integration_id: UUID,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        *,
        user_id: str | None = None,
        target_calendar_id: str | None = None,
        calendar_type_id: str | None = None,
        run_type: RunType = RunType.MANUAL,
    ) -> SyncRunResult:
        if user_id is not None:
            await self.get_integration(integration_id, user_id=user_id)
        return await self.orchestrator.run(
            integration_id,
            direction,
            run_type=run_type,
            target_calendar_id=target_calendar_id,
            calendar_type_id=calendar_type_id,
        )

    async def status(
        self, integration_id: UUID, *, user_id: str | None = None
    ) -> SyncStatusReport:
        if user_id is not None:
            await self.get_integration(integration_id, user_id=user_id)
        return await self.orchestrator.status(integration_id)

    async def list_conflicts(
        self,
        user_id: str,
        *,
        resolution: ConflictResolution | None = None,
        provider: CalendarProviderName | None = None,
        limit: int = 50,
    ) -> list[SyncConflict]:
        """Local edits that pulls overwrote for *user_id*, newest first."""
        return await self.conflicts.list_for_user(
            user_id, resolution=resolution, provider=provider, limit=limit
        )

    async def delete_event(self, user_id: str, event_id: UUID) -> list[CalendarProviderName]:
        return await self.orchestrator.delete_event(user_id, event_id)

    async def tick(self) -> list[SyncRunResult]:
        return await self.scheduler.tick()

    async def sweep_stale(self) -> Sequence[SyncLog]:
        return await self.scheduler.sweep_stale()

    # ------------------------------------------------------------------
    # Connect flows
    # ------------------------------------------------------------------

    def _oauth_client(self, provider: CalendarProviderName | str) -> OAuthProviderClient:
        name = CalendarProviderName(provider)
        client = self._build_provider(name)
        if not isinstance(client, OAuthProviderClient):
            raise ValueError(f"{name} does not use OAuth; connect it with credentials instead")
        if not client.configured:
            raise ProviderNotConfigured(str(name))
        return client

    def authorization_url(self, user_id: str, provider: CalendarProviderName | str) -> str:
        """Start the OAuth flow: returns the provider consent URL for *user_id*."""
        client = self._oauth_client(provider)
        state = self.oauth_states.issue(user_id, client.provider)
        logger.info("OAuth flow started: user=%s provider=%s", user_id, client.provider)
        return client.authorization_url(state)

    async def complete_oauth(
        self,
        state: str,
        code: str,
        *,
        provider: CalendarProviderName | str | None = None,
    ) -> CalendarIntegration:
        """Finish the OAuth flow and store the resulting credentials.

        Raises
        ------
        InvalidOAuthState
            The state is unknown, expired, already used, or was issued for
            a different provider.
        """
        pending = self.oauth_states.consume(state)
        if pending is None:
            raise InvalidOAuthState("OAuth state is invalid or has expired")
        if provider is not None and CalendarProviderName(provider) != pending.provider:
            raise InvalidOAuthState("OAuth state was issued for a different provider")

        client = self._oauth_client(pending.provider)
        try:
            credential = await client.exchange_code(code)
        finally:
            await client.shutdown()

        return await self.integrations.upsert_connection(
            user_id=pending.user_id,
            provider=pending.provider,
            access_token=credential.token,
            refresh_token=credential.refresh_token,
            token_expires_at=credential.expires_at,
            calendar_id=client.default_calendar_id,
        )

    async def connect_caldav(
        self,
        user_id: str,
        *,
        username: str,
        app_password: str,
        calendar_url: str,
        server_url: str | None = None,
    ) -> CalendarIntegration:
        """Verify CalDAV credentials against *calendar_url*, then store them."""
        credential = AccessCredential(token=app_password, username=username)
        client = self._build_provider(CalendarProviderName.APPLE_CALDAV)
        try:
            await client.verify(credential, calendar_id=calendar_url)
        finally:
            await client.shutdown()

        return await self.integrations.upsert_connection(
            user_id=user_id,
            provider=CalendarProviderName.APPLE_CALDAV,
            access_token=app_password,
            refresh_token=None,
            token_expires_at=None,
            calendar_id=calendar_url,
            server_url=server_url or self.config.caldav.default_server_url,
            account_username=username,
        )
