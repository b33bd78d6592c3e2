"""Google Calendar v3 REST client."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from careiq.calendar.config import DEFAULT_GOOGLE_CALENDAR_ID
from careiq.calendar.errors import ProviderRequestError
from careiq.calendar.mapping import parse_optional_rfc3339, rfc3339
from careiq.calendar.models import (
    AccessCredential,
    CalendarProviderName,
    RemoteEvent,
    TimeRange,
)
from careiq.calendar.providers.base import OAuthProviderClient

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)
_GOOGLE_PAGE_SIZE = 250


class GoogleCalendarClient(OAuthProviderClient):
    """Google Calendar provider using OAuth bearer tokens."""

    provider = CalendarProviderName.GOOGLE
    token_url = GOOGLE_OAUTH_TOKEN_URL
    authorize_url = GOOGLE_OAUTH_AUTHORIZE_URL
    scopes = GOOGLE_CALENDAR_SCOPES

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
        calendar_id: str = DEFAULT_GOOGLE_CALENDAR_ID,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            http_client=http_client,
            timeout=timeout,
        )
        self.default_calendar_id = calendar_id

    def _authorization_params(self, state: str) -> dict[str, str]:
        params = super()._authorization_params(state)
        params["access_type"] = "offline"
        # Force a refresh token on every consent.
        params["prompt"] = "consent"
        return params

    def _events_url(self, calendar_id: str | None, remote_id: str | None = None) -> str:
        target = calendar_id or self.default_calendar_id or DEFAULT_GOOGLE_CALENDAR_ID
        encoded_calendar = quote(target, safe="")
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{encoded_calendar}/events"
        if remote_id is not None:
            url = f"{url}/{quote(remote_id, safe='')}"
        return url

    def _to_remote_event(self, item: dict[str, Any]) -> RemoteEvent:
        event_id = item.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise ProviderRequestError(
                str(self.provider), "Google Calendar event payload is missing a non-empty id"
            )
        etag = item.get("etag")
        return RemoteEvent(
            provider=self.provider,
            remote_id=event_id.strip(),
            payload=item,
            etag=etag if isinstance(etag, str) else None,
            updated_at=parse_optional_rfc3339(item.get("updated")),
        )

    def _json_object(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                str(self.provider), "Google Calendar API returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                str(self.provider), "Google Calendar API returned an unexpected JSON payload shape"
            )
        return payload

    async def list_events(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        time_range: TimeRange,
        max_results: int = 500,
    ) -> list[RemoteEvent]:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "timeMin": rfc3339(time_range.start),
            "timeMax": rfc3339(time_range.end),
        }
        events: list[RemoteEvent] = []
        page_token: str | None = None
        while len(events) < max_results:
            page_params = dict(params)
            page_params["maxResults"] = min(_GOOGLE_PAGE_SIZE, max_results - len(events))
            if page_token is not None:
                page_params["pageToken"] = page_token

            response = await self._send(
                "GET",
                self._events_url(calendar_id),
                headers=self._bearer_headers(credential),
                params=page_params,
            )
            payload = self._json_object(response)
            items = payload.get("items")
            if not isinstance(items, list):
                raise ProviderRequestError(
                    str(self.provider), "Google Calendar list response missing items array"
                )
            for item in items:
                if not isinstance(item, dict) or item.get("status") == "cancelled":
                    continue
                events.append(self._to_remote_event(item))

            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token

        logger.debug("Google list_events returned %d event(s)", len(events))
        return events[:max_results]

    async def create_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        event: RemoteEvent,
    ) -> RemoteEvent:
        response = await self._send(
            "POST",
            self._events_url(calendar_id),
            headers=self._bearer_headers(credential),
            json=event.payload,
        )
        return self._to_remote_event(self._json_object(response))

    async def update_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        remote_id: str,
        event: RemoteEvent,
    ) -> RemoteEvent:
        response = await self._send(
            "PUT",
            self._events_url(calendar_id, remote_id),
            headers=self._bearer_headers(credential),
            json=event.payload,
        )
        return self._to_remote_event(self._json_object(response))

    async def delete_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        remote_id: str,
    ) -> None:
        await self._send(
            "DELETE",
            self._events_url(calendar_id, remote_id),
            headers=self._bearer_headers(credential),
            params={"sendUpdates": "none"},
        )
