"""Microsoft Graph (Outlook) calendar client."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from careiq.calendar.errors import ProviderRequestError
from careiq.calendar.mapping import parse_optional_rfc3339
from careiq.calendar.models import (
    AccessCredential,
    CalendarProviderName,
    RemoteEvent,
    TimeRange,
    ensure_utc,
)
from careiq.calendar.providers.base import OAuthProviderClient

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_AUTHORITY = "https://login.microsoftonline.com"
OUTLOOK_CALENDAR_SCOPES = ("Calendars.ReadWrite", "User.Read", "offline_access")
_GRAPH_PAGE_SIZE = 100
_PREFER_HEADER = 'outlook.timezone="UTC", outlook.body-content-type="text"'


def _graph_query_datetime(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


class OutlookCalendarClient(OAuthProviderClient):
    """Outlook calendar provider over Microsoft Graph."""

    provider = CalendarProviderName.OUTLOOK
    scopes = OUTLOOK_CALENDAR_SCOPES

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
        tenant: str = "common",
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
        self.tenant = tenant
        self.authorize_url = f"{MICROSOFT_AUTHORITY}/{tenant}/oauth2/v2.0/authorize"
        self.token_url = f"{MICROSOFT_AUTHORITY}/{tenant}/oauth2/v2.0/token"

    def _authorization_params(self, state: str) -> dict[str, str]:
        params = super()._authorization_params(state)
        params["response_mode"] = "query"
        return params

    def _token_request_extra(self) -> dict[str, str]:
        return {"scope": " ".join(self.scopes)}

    def _bearer_headers(self, credential: AccessCredential) -> dict[str, str]:
        headers = super()._bearer_headers(credential)
        headers["Prefer"] = _PREFER_HEADER
        return headers

    def _collection_url(self, calendar_id: str | None) -> str:
        if calendar_id:
            return f"{GRAPH_API_BASE_URL}/me/calendars/{quote(calendar_id, safe='')}"
        return f"{GRAPH_API_BASE_URL}/me"

    def _event_url(self, remote_id: str) -> str:
        return f"{GRAPH_API_BASE_URL}/me/events/{quote(remote_id, safe='')}"

    def _to_remote_event(self, item: dict[str, Any]) -> RemoteEvent:
        event_id = item.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise ProviderRequestError(
                str(self.provider), "Outlook event payload is missing a non-empty id"
            )
        etag = item.get("@odata.etag")
        return RemoteEvent(
            provider=self.provider,
            remote_id=event_id.strip(),
            payload=item,
            etag=etag if isinstance(etag, str) else None,
            updated_at=parse_optional_rfc3339(item.get("lastModifiedDateTime")),
        )

    def _json_object(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                str(self.provider), "Microsoft Graph returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                str(self.provider), "Microsoft Graph returned an unexpected JSON payload shape"
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

        url: str | None = f"{self._collection_url(calendar_id)}/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": _graph_query_datetime(time_range.start),
            "endDateTime": _graph_query_datetime(time_range.end),
            "$orderby": "start/dateTime",
            "$top": min(_GRAPH_PAGE_SIZE, max_results),
        }
        events: list[RemoteEvent] = []
        while url is not None and len(events) < max_results:
            response = await self._send(
                "GET",
                url,
                headers=self._bearer_headers(credential),
                params=params,
            )
            payload = self._json_object(response)
            items = payload.get("value")
            if not isinstance(items, list):
                raise ProviderRequestError(
                    str(self.provider), "Microsoft Graph list response missing value array"
                )
            for item in items:
                if not isinstance(item, dict) or item.get("isCancelled") is True:
                    continue
                events.append(self._to_remote_event(item))

            next_link = payload.get("@odata.nextLink")
            # nextLink already carries the query string.
            url = next_link if isinstance(next_link, str) and next_link else None
            params = None

        logger.debug("Outlook list_events returned %d event(s)", len(events))
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
            f"{self._collection_url(calendar_id)}/events",
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
        body = {key: value for key, value in event.payload.items() if key != "transactionId"}
        response = await self._send(
            "PATCH",
            self._event_url(remote_id),
            headers=self._bearer_headers(credential),
            json=body,
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
            self._event_url(remote_id),
            headers=self._bearer_headers(credential),
        )
