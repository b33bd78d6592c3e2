"""CalDAV client (Apple iCloud and other RFC 4791 servers).

Authenticates with HTTP basic auth (account username plus an app-specific
password).  Event resources are addressed by their absolute href, which is
what the rest of the system stores as the remote identifier.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from urllib.parse import quote, urljoin

import httpx
import icalendar

from careiq.calendar.errors import ProviderRequestError, TokenRefreshError
from careiq.calendar.models import (
    AccessCredential,
    CalendarProviderName,
    RemoteEvent,
    TimeRange,
    ensure_utc,
)
from careiq.calendar.providers.base import CalendarProviderClient, raise_for_provider_status

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
_NS = {"d": DAV_NS, "c": CALDAV_NS}
_ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"
_XML_CONTENT_TYPE = "application/xml; charset=utf-8"

_PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:resourcetype/>
    <d:displayname/>
  </d:prop>
</d:propfind>
"""

_CALENDAR_QUERY_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>
"""


def _caldav_timestamp(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y%m%dT%H%M%SZ")


def _last_modified(ics: str) -> datetime | None:
    try:
        calendar = icalendar.Calendar.from_ical(ics)
    except ValueError:
        return None
    for vevent in calendar.walk("VEVENT"):
        if vevent.get("last-modified") is not None:
            value = vevent.decoded("last-modified")
            if isinstance(value, datetime):
                return ensure_utc(value)
    return None


def _ok_propstat(response: ET.Element) -> ET.Element | None:
    for propstat in response.findall("d:propstat", _NS):
        status = propstat.findtext("d:status", default="", namespaces=_NS)
        if " 200 " in f"{status} ":
            return propstat.find("d:prop", _NS)
    return None


class CalDAVCalendarClient(CalendarProviderClient):
    """CalDAV provider speaking PUT/DELETE/REPORT/PROPFIND over httpx."""

    provider = CalendarProviderName.APPLE_CALDAV

    def _auth(self, credential: AccessCredential) -> httpx.BasicAuth:
        if not credential.username:
            raise ProviderRequestError(str(self.provider), "CalDAV credential has no username")
        return httpx.BasicAuth(credential.username, credential.token)

    def _calendar_url(self, calendar_id: str | None) -> str:
        if not calendar_id:
            raise ProviderRequestError(str(self.provider), "CalDAV calendar URL is required")
        return calendar_id if calendar_id.endswith("/") else f"{calendar_id}/"

    def _object_url(self, calendar_id: str | None, uid: str) -> str:
        return urljoin(self._calendar_url(calendar_id), f"{quote(uid, safe='@')}.ics")

    def _ics_body(self, event: RemoteEvent) -> bytes:
        ics = event.payload.get("ics")
        if not isinstance(ics, str) or not ics.strip():
            raise ProviderRequestError(str(self.provider), "CalDAV event has no iCalendar body")
        return ics.encode("utf-8")

    async def verify(self, credential: AccessCredential, *, calendar_id: str | None) -> None:
        """Confirm the calendar collection exists and accepts *credential*."""
        await self._send(
            "PROPFIND",
            self._calendar_url(calendar_id),
            headers={"Depth": "0", "Content-Type": _XML_CONTENT_TYPE},
            content=_PROPFIND_BODY.encode("utf-8"),
            auth=self._auth(credential),
        )

    async def list_events(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        time_range: TimeRange,
        max_results: int = 500,
    ) -> list[RemoteEvent]:
        calendar_url = self._calendar_url(calendar_id)
        body = _CALENDAR_QUERY_TEMPLATE.format(
            start=_caldav_timestamp(time_range.start),
            end=_caldav_timestamp(time_range.end),
        )
        response = await self._send(
            "REPORT",
            calendar_url,
            headers={"Depth": "1", "Content-Type": _XML_CONTENT_TYPE},
            content=body.encode("utf-8"),
            auth=self._auth(credential),
        )
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as exc:
            raise ProviderRequestError(
                str(self.provider), f"CalDAV REPORT returned malformed XML: {exc}"
            ) from exc

        events: list[RemoteEvent] = []
        for item in root.findall("d:response", _NS):
            href = item.findtext("d:href", default="", namespaces=_NS).strip()
            prop = _ok_propstat(item)
            if not href or prop is None:
                continue
            calendar_data = prop.findtext("c:calendar-data", default="", namespaces=_NS)
            if not calendar_data.strip():
                continue
            etag = prop.findtext("d:getetag", default=None, namespaces=_NS)
            events.append(
                RemoteEvent(
                    provider=self.provider,
                    remote_id=urljoin(calendar_url, href),
                    payload={"ics": calendar_data},
                    etag=etag.strip() if etag else None,
                    updated_at=_last_modified(calendar_data),
                )
            )
            if len(events) >= max_results:
                break

        logger.debug("CalDAV list_events returned %d event(s)", len(events))
        return events

    async def create_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        event: RemoteEvent,
    ) -> RemoteEvent:
        uid = event.payload.get("uid")
        if not isinstance(uid, str) or not uid:
            raise ProviderRequestError(str(self.provider), "CalDAV event has no UID")
        url = self._object_url(calendar_id, uid)
        response = await self._request(
            "PUT",
            url,
            headers={"Content-Type": _ICS_CONTENT_TYPE, "If-None-Match": "*"},
            content=self._ics_body(event),
            auth=self._auth(credential),
        )

        if response.status_code == 412:
            # The UID is deterministic, so an existing object is our own earlier create.
            logger.info("CalDAV object already exists, adopting it: %s", url)
            return await self.update_event(
                credential, calendar_id=calendar_id, remote_id=url, event=event
            )
        raise_for_provider_status(str(self.provider), response)
        return event.model_copy(
            update={"remote_id": url, "etag": response.headers.get("ETag")}
        )

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
            remote_id,
            headers={"Content-Type": _ICS_CONTENT_TYPE},
            content=self._ics_body(event),
            auth=self._auth(credential),
        )
        return event.model_copy(
            update={"remote_id": remote_id, "etag": response.headers.get("ETag")}
        )

    async def delete_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        remote_id: str,
    ) -> None:
        await self._send("DELETE", remote_id, auth=self._auth(credential))

    async def refresh_access_token(self, refresh_token: str) -> AccessCredential:
        raise TokenRefreshError("CalDAV app passwords cannot be refreshed; reconnect instead")
