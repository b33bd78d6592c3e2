"""Shared fixtures for the calendar sync API tests.

Covers:
- A ``CalendarSyncService`` over the in-memory stores, with a fake event
  provider and a real Google OAuth client whose token endpoint is mocked
- An app factory wiring that service into ``create_app`` through
  ``dependency_overrides``
- An ``httpx.AsyncClient`` on ``ASGITransport`` that authenticates as
  ``USER_ID`` by default
"""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
from fastapi import FastAPI

from careiq.api.app import create_app
from careiq.api.deps import CALLER_HEADER, get_sync_service
from careiq.calendar.config import CalendarSyncConfig, GoogleSettings
from careiq.calendar.models import CalendarProviderName
from careiq.calendar.providers.outlook import OutlookCalendarClient
from careiq.calendar.service import CalendarSyncService
from careiq.config import ServiceConfig
from tests.fakes import USER_ID, FakeCalendarProvider, GoogleClientWithFakeEvents

GOOD_CODE = "good-code"


def _token_endpoint(request: httpx.Request) -> httpx.Response:
    form = parse_qs(request.content.decode())
    if form.get("code") != [GOOD_CODE]:
        return httpx.Response(400, json={"error": "invalid_grant"})
    return httpx.Response(
        200,
        json={"access_token": "ya29.first", "refresh_token": "1//first", "expires_in": 3600},
    )


@pytest.fixture
def caldav_provider(fake_clock) -> FakeCalendarProvider:
    return FakeCalendarProvider(provider=CalendarProviderName.APPLE_CALDAV, clock=fake_clock)


@pytest.fixture
def sync_service(harness, caldav_provider) -> CalendarSyncService:
    settings = GoogleSettings(
        client_id="cid.apps.googleusercontent.com",
        client_secret="secret",
        redirect_uri="http://testserver/api/calendar/oauth/google/callback",
    )
    config = CalendarSyncConfig(
        event_retry_attempts=harness.config.event_retry_attempts,
        retry_base_backoff_seconds=harness.config.retry_base_backoff_seconds,
        google=settings,
    )
    oauth_http = httpx.AsyncClient(transport=httpx.MockTransport(_token_endpoint))

    def build(provider: CalendarProviderName):
        if provider == CalendarProviderName.APPLE_CALDAV:
            return caldav_provider
        if provider == CalendarProviderName.OUTLOOK:
            return OutlookCalendarClient(
                client_id=None, client_secret=None, redirect_uri=None, http_client=oauth_http
            )
        return GoogleClientWithFakeEvents(harness.provider, settings, oauth_http)

    async def _sleep(seconds: float) -> None:
        harness.sleeps.append(seconds)

    return CalendarSyncService(
        integrations=harness.integrations,
        events=harness.events,
        sync_logs=harness.sync_logs,
        conflicts=harness.conflicts,
        config=config,
        provider_builder=build,
        clock=harness.clock,
        sleep=_sleep,
    )


def make_app(service: CalendarSyncService, *, dashboard_url: str | None = None) -> FastAPI:
    app = create_app(ServiceConfig(dashboard_url=dashboard_url), sync_service=service)
    app.dependency_overrides[get_sync_service] = lambda: service
    return app


@pytest.fixture
def app(sync_service) -> FastAPI:
    return make_app(sync_service)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers={CALLER_HEADER: USER_ID},
    ) as ac:
        yield ac
