"""Token refresher: yields a usable credential for the current run.

The stored credential is returned untouched while it is still valid.  Once
expired it is exchanged through the provider's refresh endpoint and the new
values are persisted before the credential is handed back, so a run never
uses a token the credential store does not know about.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from careiq.calendar.errors import AuthExpiredNoRefresh, TokenRefreshError
from careiq.calendar.models import AccessCredential, CalendarIntegration
from careiq.core.metrics import SyncMetrics, sync_metrics

if TYPE_CHECKING:
    from careiq.calendar.integrations import IntegrationStore
    from careiq.calendar.providers.base import CalendarProviderClient

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class TokenRefresher:
    """Refreshes expired integration credentials, at most once per call.

    Parameters
    ----------
    integrations:
        Credential store the refreshed tokens are written to.
    skew:
        Treat credentials expiring within this window as already expired.
    clock:
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        integrations: IntegrationStore,
        *,
        skew: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utc_now,
        metrics: SyncMetrics = sync_metrics,
    ) -> None:
        self._integrations = integrations
        self._skew = skew
        self._clock = clock
        self._metrics = metrics

    async def ensure_valid(
        self,
        integration: CalendarIntegration,
        provider: CalendarProviderClient,
    ) -> AccessCredential:
        """Return a credential valid for the rest of the run.

        Raises
        ------
        AuthExpiredNoRefresh
            The stored credential expired and there is nothing to refresh it with.
        TokenRefreshError
            The provider rejected the refresh exchange.
        """
        credential = integration.credential()
        if not credential.token and credential.expires_at is None:
            raise TokenRefreshError(
                f"{integration.provider} integration has no stored access credential"
            )
        if not credential.is_expired(self._clock(), skew=self._skew):
            return credential

        if not credential.refresh_token:
            logger.warning(
                "Access token expired with no refresh token: integration=%s provider=%s",
                integration.id,
                integration.provider,
            )
            raise AuthExpiredNoRefresh()

        logger.info(
            "Refreshing expired access token: integration=%s provider=%s",
            integration.id,
            integration.provider,
        )
        try:
            refreshed = await provider.refresh_access_token(credential.refresh_token)
        except Exception:
            self._metrics.token_refresh(str(integration.provider), success=False)
            raise

        refreshed = refreshed.model_copy(
            update={
                "refresh_token": refreshed.refresh_token or credential.refresh_token,
                "username": credential.username,
            }
        )
        await self._integrations.update(
            integration.id,
            access_token=refreshed.token,
            refresh_token=refreshed.refresh_token,
            token_expires_at=refreshed.expires_at,
        )
        self._metrics.token_refresh(str(integration.provider), success=True)
        logger.info(
            "Access token refreshed: integration=%s expires_at=%s",
            integration.id,
            refreshed.expires_at,
        )
        return refreshed
