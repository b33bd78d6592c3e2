"""Provider client facade: one implementation per provider, chosen by discriminator."""

from __future__ import annotations

import httpx

from careiq.calendar.config import CalendarSyncConfig
from careiq.calendar.models import CalendarProviderName
from careiq.calendar.providers.base import CalendarProviderClient, OAuthProviderClient
from careiq.calendar.providers.caldav import CalDAVCalendarClient
from careiq.calendar.providers.google import GoogleCalendarClient
from careiq.calendar.providers.outlook import OutlookCalendarClient

__all__ = [
    "CalDAVCalendarClient",
    "CalendarProviderClient",
    "GoogleCalendarClient",
    "OAuthProviderClient",
    "OutlookCalendarClient",
    "build_provider",
]


def build_provider(
    provider: CalendarProviderName | str,
    config: CalendarSyncConfig,
    http_client: httpx.AsyncClient | None = None,
) -> CalendarProviderClient:
    """Construct the client for *provider*.

    This is the only place in the sync subsystem that branches on the
    provider name; everything downstream talks to ``CalendarProviderClient``.
    """
    name = CalendarProviderName(provider)
    timeout = config.http_timeout_seconds
    if name is CalendarProviderName.GOOGLE:
        return GoogleCalendarClient(
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
            redirect_uri=config.google.redirect_uri,
            calendar_id=config.google.calendar_id,
            http_client=http_client,
            timeout=timeout,
        )
    if name is CalendarProviderName.OUTLOOK:
        return OutlookCalendarClient(
            client_id=config.outlook.client_id,
            client_secret=config.outlook.client_secret,
            redirect_uri=config.outlook.redirect_uri,
            tenant=config.outlook.tenant,
            http_client=http_client,
            timeout=timeout,
        )
    return CalDAVCalendarClient(http_client, timeout=timeout)
