"""Pure translation between internal events and provider wire shapes.

One ``EventMapper`` per provider.  Mappers never perform I/O and never read
the clock: the same input always yields the same output, which is what lets
the orchestrator and the tests treat them as plain functions.

Round-trip guarantee: for the fields in ``MAPPED_FIELDS``,
``to_internal(to_remote(event))`` reproduces ``event``.  Everything else a
provider returns is kept under ``provider_metadata`` without a round-trip
promise.

All-day events are stored internally as UTC midnights with an exclusive end
(an event on 1 March runs from 1 March 00:00 to 2 March 00:00).
"""

from __future__ import annotations

import abc
import re
import uuid
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import icalendar

from careiq.calendar.errors import MappingError
from careiq.calendar.models import (
    Availability,
    CalendarEvent,
    CalendarProviderName,
    EventSyncStatus,
    RemoteEvent,
    ensure_utc,
)

MAPPED_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "location",
    "start_at",
    "end_at",
    "all_day",
    "category",
    "show_as",
)

DEFAULT_CATEGORY = "custom"
CAREIQ_CATEGORY_TAG = "CareIQ"
CAREIQ_EVENT_ID_KEY = "careiq_event_id"
CAREIQ_CATEGORY_KEY = "careiq_category"
CALDAV_PRODID = "-//CareIQ//CalDAV Client//EN"
CALDAV_UID_TEMPLATE = "careiq-{event_id}@careiq.com"
_CALDAV_UID_PATTERN = re.compile(r"^careiq-([0-9a-fA-F-]{36})@careiq\.com$")
_GRAPH_FRACTION = re.compile(r"\.(\d{6})\d+")
_HTML_TAG = re.compile(r"<[^>]+>")


def mapped_fields(event: CalendarEvent) -> dict[str, Any]:
    """Project *event* onto the fields every mapper round-trips."""
    return {name: getattr(event, name) for name in MAPPED_FIELDS}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def rfc3339(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _GRAPH_FRACTION.sub(r".\1", normalized)
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise MappingError(f"Invalid date-time value: {value}") from exc
    return ensure_utc(parsed)


def parse_optional_rfc3339(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_rfc3339(value)
    except MappingError:
        return None


def _utc_midnight(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=UTC)


def _all_day_end_date(event: CalendarEvent) -> date:
    start_date = event.start_at.date()
    end_date = event.end_at.date()
    if end_date <= start_date:
        return start_date + timedelta(days=1)
    return end_date


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_careiq_id(value: Any) -> uuid.UUID | None:
    if not isinstance(value, str):
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def _category_from_tags(tags: list[str]) -> str:
    for tag in tags:
        if tag and tag != CAREIQ_CATEGORY_TAG:
            return tag
    return DEFAULT_CATEGORY


def _require_remote_id(remote: RemoteEvent) -> str:
    if not remote.remote_id:
        raise MappingError(f"{remote.provider} event has no remote identifier")
    return remote.remote_id


class EventMapper(abc.ABC):
    """Bidirectional, side-effect free translation for one provider."""

    provider: CalendarProviderName

    @abc.abstractmethod
    def to_remote(self, event: CalendarEvent) -> RemoteEvent:
        """Render *event* as the provider's wire payload."""
        ...

    @abc.abstractmethod
    def to_internal(
        self,
        remote: RemoteEvent,
        owner_id: str,
        calendar_type_id: str | None = None,
    ) -> CalendarEvent:
        """Build an internal event owned by *owner_id* from *remote*."""
        ...

    def sync_metadata(self, sent: RemoteEvent, stored: RemoteEvent) -> dict[str, Any]:
        """Provider bookkeeping to keep after *sent* was stored remotely as *stored*."""
        return {"etag": stored.etag} if stored.etag else {}

    def _internal_event(
        self,
        remote: RemoteEvent,
        *,
        owner_id: str,
        calendar_type_id: str | None,
        fields: dict[str, Any],
        metadata: dict[str, Any],
        event_id: uuid.UUID | None = None,
    ) -> CalendarEvent:
        remote_id = _require_remote_id(remote)
        try:
            return CalendarEvent(
                id=event_id,
                user_id=owner_id,
                calendar_type_id=calendar_type_id,
                external_ids={self.provider: remote_id},
                sync_status=EventSyncStatus.SYNCED,
                provider_metadata={str(self.provider): metadata},
                **fields,
            )
        except ValueError as exc:
            raise MappingError(f"{self.provider} event {remote_id} is invalid: {exc}") from exc


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------


def _google_boundary(event: CalendarEvent, value: datetime, *, is_end: bool) -> dict[str, str]:
    if event.all_day:
        boundary_date = _all_day_end_date(event) if is_end else value.date()
        return {"date": boundary_date.isoformat()}
    return {"dateTime": rfc3339(value), "timeZone": "UTC"}


def _parse_google_boundary(payload: Any, *, label: str) -> tuple[datetime, bool]:
    if not isinstance(payload, dict):
        raise MappingError(f"Google event is missing its {label} boundary")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_rfc3339(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return _utc_midnight(date.fromisoformat(date_value.strip())), True
        except ValueError as exc:
            raise MappingError(f"Google event has an invalid {label} date: {date_value}") from exc

    raise MappingError(f"Google event {label} has neither dateTime nor date")


class GoogleEventMapper(EventMapper):
    provider = CalendarProviderName.GOOGLE

    def to_remote(self, event: CalendarEvent) -> RemoteEvent:
        private: dict[str, str] = {CAREIQ_CATEGORY_KEY: event.category}
        if event.id is not None:
            private[CAREIQ_EVENT_ID_KEY] = str(event.id)

        body: dict[str, Any] = {
            "summary": event.title,
            "start": _google_boundary(event, event.start_at, is_end=False),
            "end": _google_boundary(event, event.end_at, is_end=True),
            "transparency": "transparent" if event.show_as == Availability.FREE else "opaque",
            "extendedProperties": {"private": private},
        }
        if event.description is not None:
            body["description"] = event.description
        if event.location is not None:
            body["location"] = event.location

        return RemoteEvent(
            provider=self.provider,
            remote_id=event.external_id(self.provider),
            payload=body,
        )

    def to_internal(
        self,
        remote: RemoteEvent,
        owner_id: str,
        calendar_type_id: str | None = None,
    ) -> CalendarEvent:
        payload = remote.payload
        start_at, start_all_day = _parse_google_boundary(payload.get("start"), label="start")
        end_at, _ = _parse_google_boundary(payload.get("end"), label="end")

        extended = payload.get("extendedProperties")
        private = extended.get("private") if isinstance(extended, dict) else None
        if not isinstance(private, dict):
            private = {}

        metadata = {
            key: payload[key]
            for key in ("etag", "htmlLink", "iCalUID", "status", "colorId", "updated")
            if key in payload
        }
        return self._internal_event(
            remote,
            owner_id=owner_id,
            calendar_type_id=calendar_type_id,
            event_id=_parse_careiq_id(private.get(CAREIQ_EVENT_ID_KEY)),
            fields={
                "title": _optional_text(payload.get("summary")) or "Untitled Event",
                "description": _optional_text(payload.get("description")),
                "location": _optional_text(payload.get("location")),
                "start_at": start_at,
                "end_at": end_at,
                "all_day": start_all_day,
                "category": _optional_text(private.get(CAREIQ_CATEGORY_KEY)) or DEFAULT_CATEGORY,
                "show_as": (
                    Availability.FREE
                    if payload.get("transparency") == "transparent"
                    else Availability.BUSY
                ),
            },
            metadata=metadata,
        )


# ---------------------------------------------------------------------------
# Outlook (Microsoft Graph)
# ---------------------------------------------------------------------------


def _graph_datetime(value: datetime) -> dict[str, str]:
    return {
        "dateTime": ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.0000000"),
        "timeZone": "UTC",
    }


def _parse_graph_boundary(payload: Any, *, label: str) -> datetime:
    if not isinstance(payload, dict):
        raise MappingError(f"Outlook event is missing its {label} boundary")
    raw = payload.get("dateTime")
    if not isinstance(raw, str) or not raw.strip():
        raise MappingError(f"Outlook event {label} has no dateTime")

    normalized = _GRAPH_FRACTION.sub(r".\1", raw.strip())
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise MappingError(f"Outlook event has an invalid {label} dateTime: {raw}") from exc

    if parsed.tzinfo is None:
        zone_name = payload.get("timeZone")
        zone = _coerce_zoneinfo(zone_name) if isinstance(zone_name, str) and zone_name else UTC
        parsed = parsed.replace(tzinfo=zone)
    return ensure_utc(parsed)


def _graph_body_text(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    content = payload.get("content")
    if not isinstance(content, str):
        return None
    if str(payload.get("contentType", "")).lower() == "html":
        content = _HTML_TAG.sub("", content)
    return _optional_text(content)


class OutlookEventMapper(EventMapper):
    provider = CalendarProviderName.OUTLOOK

    def to_remote(self, event: CalendarEvent) -> RemoteEvent:
        if event.all_day:
            start = _utc_midnight(event.start_at.date())
            end = _utc_midnight(_all_day_end_date(event))
        else:
            start, end = event.start_at, event.end_at

        body: dict[str, Any] = {
            "subject": event.title,
            "body": {"contentType": "text", "content": event.description or ""},
            "start": _graph_datetime(start),
            "end": _graph_datetime(end),
            "isAllDay": event.all_day,
            "showAs": event.show_as.value,
            "categories": [CAREIQ_CATEGORY_TAG, event.category],
        }
        if event.location is not None:
            body["location"] = {"displayName": event.location}
        if event.id is not None and event.external_id(self.provider) is None:
            # Graph de-duplicates creates that repeat a transactionId.
            body["transactionId"] = str(event.id)

        return RemoteEvent(
            provider=self.provider,
            remote_id=event.external_id(self.provider),
            payload=body,
        )

    def to_internal(
        self,
        remote: RemoteEvent,
        owner_id: str,
        calendar_type_id: str | None = None,
    ) -> CalendarEvent:
        payload = remote.payload
        location = payload.get("location")
        categories = payload.get("categories")
        tags = [str(tag) for tag in categories] if isinstance(categories, list) else []
        metadata = {
            key: payload[key]
            for key in ("@odata.etag", "webLink", "iCalUId", "importance", "lastModifiedDateTime")
            if key in payload
        }
        return self._internal_event(
            remote,
            owner_id=owner_id,
            calendar_type_id=calendar_type_id,
            event_id=_parse_careiq_id(payload.get("transactionId")),
            fields={
                "title": _optional_text(payload.get("subject")) or "Untitled Event",
                "description": _graph_body_text(payload.get("body")),
                "location": (
                    _optional_text(location.get("displayName"))
                    if isinstance(location, dict)
                    else None
                ),
                "start_at": _parse_graph_boundary(payload.get("start"), label="start"),
                "end_at": _parse_graph_boundary(payload.get("end"), label="end"),
                "all_day": bool(payload.get("isAllDay", False)),
                "category": _category_from_tags(tags),
                "show_as": (
                    Availability.FREE if payload.get("showAs") == "free" else Availability.BUSY
                ),
            },
            metadata=metadata,
        )


# ---------------------------------------------------------------------------
# CalDAV (iCalendar)
# ---------------------------------------------------------------------------


def caldav_uid(event: CalendarEvent) -> str:
    """Return the VEVENT UID for *event*, reusing the remote one when known."""
    metadata = event.provider_metadata.get(str(CalendarProviderName.APPLE_CALDAV))
    if isinstance(metadata, dict) and isinstance(metadata.get("uid"), str):
        return metadata["uid"]
    if event.id is None:
        raise MappingError("Event must be stored before it can be rendered for CalDAV")
    return CALDAV_UID_TEMPLATE.format(event_id=event.id)


def _ical_boundary(value: date | datetime) -> tuple[datetime, bool]:
    if isinstance(value, datetime):
        return ensure_utc(value), False
    return _utc_midnight(value), True


def _ical_categories(component: icalendar.Event) -> list[str]:
    raw = component.get("categories")
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    names: list[str] = []
    for item in items:
        cats = getattr(item, "cats", None)
        if cats is None:
            names.extend(str(item).split(","))
        else:
            names.extend(str(cat) for cat in cats)
    return [name.strip() for name in names if name.strip()]


class CalDAVEventMapper(EventMapper):
    provider = CalendarProviderName.APPLE_CALDAV

    def sync_metadata(self, sent: RemoteEvent, stored: RemoteEvent) -> dict[str, Any]:
        metadata = super().sync_metadata(sent, stored)
        uid = sent.payload.get("uid")
        if isinstance(uid, str) and uid:
            metadata["uid"] = uid
        return metadata

    def to_remote(self, event: CalendarEvent) -> RemoteEvent:
        uid = caldav_uid(event)
        calendar = icalendar.Calendar()
        calendar.add("prodid", CALDAV_PRODID)
        calendar.add("version", "2.0")

        vevent = icalendar.Event()
        vevent.add("uid", uid)
        vevent.add("dtstamp", event.updated_at or event.start_at)
        vevent.add("summary", event.title)
        if event.all_day:
            vevent.add("dtstart", event.start_at.date())
            vevent.add("dtend", _all_day_end_date(event))
        else:
            vevent.add("dtstart", event.start_at)
            vevent.add("dtend", event.end_at)
        if event.description is not None:
            vevent.add("description", event.description)
        if event.location is not None:
            vevent.add("location", event.location)
        vevent.add("transp", "TRANSPARENT" if event.show_as == Availability.FREE else "OPAQUE")
        vevent.add("categories", [CAREIQ_CATEGORY_TAG, event.category])
        calendar.add_component(vevent)

        return RemoteEvent(
            provider=self.provider,
            remote_id=event.external_id(self.provider),
            payload={"uid": uid, "ics": calendar.to_ical().decode("utf-8")},
        )

    def to_internal(
        self,
        remote: RemoteEvent,
        owner_id: str,
        calendar_type_id: str | None = None,
    ) -> CalendarEvent:
        raw_ics = remote.payload.get("ics")
        if not isinstance(raw_ics, str) or not raw_ics.strip():
            raise MappingError("CalDAV object has no calendar data")
        try:
            calendar = icalendar.Calendar.from_ical(raw_ics)
        except ValueError as exc:
            raise MappingError(f"CalDAV object is not valid iCalendar: {exc}") from exc

        vevent = next(iter(calendar.walk("VEVENT")), None)
        if vevent is None:
            raise MappingError("CalDAV object contains no VEVENT")
        if vevent.get("dtstart") is None:
            raise MappingError("CalDAV VEVENT has no DTSTART")

        start_at, all_day = _ical_boundary(vevent.decoded("dtstart"))
        if vevent.get("dtend") is not None:
            end_at, _ = _ical_boundary(vevent.decoded("dtend"))
        elif vevent.get("duration") is not None:
            end_at = start_at + vevent.decoded("duration")
        else:
            end_at = start_at + timedelta(days=1) if all_day else start_at

        uid = str(vevent.get("uid", "")).strip()
        uid_match = _CALDAV_UID_PATTERN.match(uid)
        metadata: dict[str, Any] = {"uid": uid} if uid else {}
        if remote.etag:
            metadata["etag"] = remote.etag

        return self._internal_event(
            remote,
            owner_id=owner_id,
            calendar_type_id=calendar_type_id,
            event_id=_parse_careiq_id(uid_match.group(1)) if uid_match else None,
            fields={
                "title": _optional_text(str(vevent.get("summary", ""))) or "Untitled Event",
                "description": _optional_text(
                    str(vevent["description"]) if "description" in vevent else None
                ),
                "location": _optional_text(
                    str(vevent["location"]) if "location" in vevent else None
                ),
                "start_at": start_at,
                "end_at": end_at,
                "all_day": all_day,
                "category": _category_from_tags(_ical_categories(vevent)),
                "show_as": (
                    Availability.FREE
                    if str(vevent.get("transp", "")).upper() == "TRANSPARENT"
                    else Availability.BUSY
                ),
            },
            metadata=metadata,
        )


_MAPPERS: dict[CalendarProviderName, EventMapper] = {
    CalendarProviderName.GOOGLE: GoogleEventMapper(),
    CalendarProviderName.OUTLOOK: OutlookEventMapper(),
    CalendarProviderName.APPLE_CALDAV: CalDAVEventMapper(),
}


def get_mapper(provider: CalendarProviderName | str) -> EventMapper:
    """Return the mapper registered for *provider*."""
    try:
        return _MAPPERS[CalendarProviderName(provider)]
    except (KeyError, ValueError) as exc:
        raise MappingError(f"No event mapper for provider: {provider}") from exc
