"""Tests for careiq.calendar.mapping.

Mappers are pure, so these tests only check translation rules: the fields
each provider carries, all-day handling, the CareIQ markers used to relink
events, and rejection of payloads that cannot become an internal event.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from careiq.calendar.errors import MappingError
from careiq.calendar.mapping import (
    CALDAV_UID_TEMPLATE,
    CalDAVEventMapper,
    GoogleEventMapper,
    OutlookEventMapper,
    caldav_uid,
    get_mapper,
    mapped_fields,
    parse_rfc3339,
    rfc3339,
)
from careiq.calendar.models import (
    Availability,
    CalendarEvent,
    CalendarProviderName,
    EventSyncStatus,
    RemoteEvent,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 12, 9, 30, tzinfo=UTC)


def _event(**overrides) -> CalendarEvent:
    values = {
        "id": uuid.UUID("6f1c2d3e-4a5b-4c6d-8e7f-9a0b1c2d3e4f"),
        "user_id": "user-1",
        "title": "Physio",
        "description": "Bring the exercise sheet",
        "location": "Clinic 3",
        "start_at": START,
        "end_at": START + timedelta(hours=1),
        "category": "therapy",
    }
    values.update(overrides)
    return CalendarEvent(**values)


def _roundtrip(mapper, event: CalendarEvent, remote_id: str = "remote-1") -> CalendarEvent:
    remote = mapper.to_remote(event)
    stored = remote.model_copy(update={"remote_id": remote_id})
    return mapper.to_internal(stored, event.user_id)


class TestHelpers:
    def test_rfc3339_uses_z_suffix(self):
        assert rfc3339(START) == "2026-03-12T09:30:00Z"

    def test_parse_rfc3339_normalizes_offsets(self):
        assert parse_rfc3339("2026-03-12T11:30:00+02:00") == START

    def test_parse_rfc3339_rejects_garbage(self):
        with pytest.raises(MappingError):
            parse_rfc3339("next tuesday")

    def test_get_mapper_rejects_unknown_provider(self):
        with pytest.raises(MappingError):
            get_mapper("yahoo")

    def test_blank_title_becomes_untitled(self):
        assert _event(title="   ").title == "Untitled Event"

    def test_end_before_start_is_invalid(self):
        with pytest.raises(ValueError):
            _event(end_at=START - timedelta(minutes=1))


@pytest.mark.parametrize(
    "mapper",
    [GoogleEventMapper(), OutlookEventMapper(), CalDAVEventMapper()],
    ids=["google", "outlook", "caldav"],
)
class TestRoundTrip:
    def test_timed_event_fields_survive(self, mapper):
        event = _event()

        assert mapped_fields(_roundtrip(mapper, event)) == mapped_fields(event)

    def test_all_day_free_event_fields_survive(self, mapper):
        day = datetime(2026, 3, 1, tzinfo=UTC)
        event = _event(
            start_at=day,
            end_at=day + timedelta(days=1),
            all_day=True,
            show_as=Availability.FREE,
            description=None,
            location=None,
        )

        assert mapped_fields(_roundtrip(mapper, event)) == mapped_fields(event)

    def test_pulled_event_is_linked_and_synced(self, mapper):
        internal = _roundtrip(mapper, _event(), remote_id="remote-77")

        assert internal.external_id(mapper.provider) == "remote-77"
        assert internal.sync_status == EventSyncStatus.SYNCED
        assert str(mapper.provider) in internal.provider_metadata

    def test_marker_recovers_the_internal_id(self, mapper):
        event = _event()

        assert _roundtrip(mapper, event).id == event.id


class TestGoogle:
    def test_payload_shape(self):
        remote = GoogleEventMapper().to_remote(_event())

        assert remote.payload["summary"] == "Physio"
        assert remote.payload["start"] == {"dateTime": "2026-03-12T09:30:00Z", "timeZone": "UTC"}
        assert remote.payload["transparency"] == "opaque"
        assert remote.remote_id is None

    def test_all_day_uses_dates_with_exclusive_end(self):
        day = datetime(2026, 3, 1, tzinfo=UTC)
        remote = GoogleEventMapper().to_remote(
            _event(start_at=day, end_at=day, all_day=True)
        )

        assert remote.payload["start"] == {"date": "2026-03-01"}
        assert remote.payload["end"] == {"date": "2026-03-02"}

    def test_linked_event_carries_its_remote_id(self):
        event = _event(external_ids={CalendarProviderName.GOOGLE: "abc123"})

        assert GoogleEventMapper().to_remote(event).remote_id == "abc123"

    def test_foreign_event_gets_defaults(self):
        remote = RemoteEvent(
            provider=CalendarProviderName.GOOGLE,
            remote_id="g-1",
            payload={
                "start": {"dateTime": "2026-03-12T09:30:00Z"},
                "end": {"dateTime": "2026-03-12T10:30:00Z"},
                "htmlLink": "https://calendar.google.com/event?eid=g-1",
            },
        )

        internal = GoogleEventMapper().to_internal(remote, "user-1")

        assert internal.id is None
        assert internal.title == "Untitled Event"
        assert internal.category == "custom"
        assert internal.provider_metadata["google"]["htmlLink"].endswith("g-1")

    def test_missing_boundary_is_rejected(self):
        remote = RemoteEvent(
            provider=CalendarProviderName.GOOGLE,
            remote_id="g-1",
            payload={"summary": "x", "start": {"dateTime": "2026-03-12T09:30:00Z"}},
        )

        with pytest.raises(MappingError, match="end"):
            GoogleEventMapper().to_internal(remote, "user-1")


class TestOutlook:
    def test_payload_shape(self):
        remote = OutlookEventMapper().to_remote(_event())

        assert remote.payload["subject"] == "Physio"
        assert remote.payload["start"] == {
            "dateTime": "2026-03-12T09:30:00.0000000",
            "timeZone": "UTC",
        }
        assert remote.payload["categories"] == ["CareIQ", "therapy"]
        assert remote.payload["transactionId"] == str(_event().id)

    def test_linked_event_has_no_transaction_id(self):
        event = _event(external_ids={CalendarProviderName.OUTLOOK: "AAMk"})

        assert "transactionId" not in OutlookEventMapper().to_remote(event).payload

    def test_local_time_zone_is_converted_to_utc(self):
        remote = RemoteEvent(
            provider=CalendarProviderName.OUTLOOK,
            remote_id="AAMk",
            payload={
                "subject": "Dentist",
                "start": {"dateTime": "2026-07-01T10:00:00.0000000", "timeZone": "Europe/London"},
                "end": {"dateTime": "2026-07-01T11:00:00.0000000", "timeZone": "Europe/London"},
                "body": {"contentType": "html", "content": "<p>Checkup</p>"},
            },
        )

        internal = OutlookEventMapper().to_internal(remote, "user-1")

        assert internal.start_at == datetime(2026, 7, 1, 9, 0, tzinfo=UTC)
        assert internal.description == "Checkup"


class TestCalDAV:
    def test_uid_is_deterministic(self):
        event = _event()

        assert caldav_uid(event) == CALDAV_UID_TEMPLATE.format(event_id=event.id)
        assert CalDAVEventMapper().to_remote(event).payload["uid"] == caldav_uid(event)

    def test_known_remote_uid_is_reused(self):
        event = _event(provider_metadata={"apple_caldav": {"uid": "apple-generated-1"}})

        assert caldav_uid(event) == "apple-generated-1"

    def test_unsaved_event_cannot_be_rendered(self):
        with pytest.raises(MappingError):
            caldav_uid(_event(id=None))

    def test_sync_metadata_keeps_uid_and_etag(self):
        mapper = CalDAVEventMapper()
        sent = mapper.to_remote(_event())
        stored = sent.model_copy(update={"remote_id": "https://dav/x.ics", "etag": '"e1"'})

        assert mapper.sync_metadata(sent, stored) == {"etag": '"e1"', "uid": sent.payload["uid"]}

    def test_duration_without_dtend(self):
        ics = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//x//EN\r\n"
            "BEGIN:VEVENT\r\nUID:u1\r\nDTSTAMP:20260301T080000Z\r\n"
            "DTSTART:20260312T093000Z\r\nDURATION:PT45M\r\nSUMMARY:Walk\r\n"
            "END:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        remote = RemoteEvent(
            provider=CalendarProviderName.APPLE_CALDAV,
            remote_id="https://dav/u1.ics",
            payload={"ics": ics},
        )

        internal = CalDAVEventMapper().to_internal(remote, "user-1")

        assert internal.end_at == START + timedelta(minutes=45)
        assert internal.id is None

    def test_object_without_vevent_is_rejected(self):
        remote = RemoteEvent(
            provider=CalendarProviderName.APPLE_CALDAV,
            remote_id="https://dav/x.ics",
            payload={"ics": "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nEND:VCALENDAR\r\n"},
        )

        with pytest.raises(MappingError, match="VEVENT"):
            CalDAVEventMapper().to_internal(remote, "user-1")
