"""Tests for careiq.calendar.orchestrator.SyncOrchestrator.

Covers:
- Push creates stamp external ids; a rerun never creates the same event twice
- Pull upserts by external id and skips echoes of events pushed in the same run
- Marked remote copies relink unlinked events instead of duplicating them
- Conflict policy: remote newer wins (counted and recorded), local newer is
  pushed back; events whose last push failed are treated the same way
- Token handling: valid token untouched, expired token refreshed once,
  expired token without refresh credential fails with zero provider calls
- Retry/backoff for throttling and transient failures; unauthorized is fatal
- Mutual exclusion, inactive/missing integrations, timeouts
- Finalization: exactly one log row closed per run, integration status updated
- Explicit event deletion across providers
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from careiq.calendar.config import CalendarSyncConfig
from careiq.calendar.errors import (
    EventNotFound,
    IntegrationInactive,
    IntegrationNotFound,
    NotFoundError,
    ProviderRequestError,
    RateLimitedError,
    SyncAlreadyInProgress,
    TransientNetworkError,
    UnauthorizedError,
)
from careiq.calendar.models import (
    CalendarEvent,
    CalendarProviderName,
    ConflictResolution,
    EventSyncStatus,
    IntegrationSyncStatus,
    RunType,
    SyncDirection,
    SyncLogStatus,
)
from careiq.calendar.orchestrator import shift_months
from tests.fakes import USER_ID, google_payload

pytestmark = pytest.mark.unit

GOOGLE = CalendarProviderName.GOOGLE


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestPushCreates:
    async def test_pending_events_are_created_and_stamped(self, harness):
        integration = harness.add_integration()
        first = harness.add_event("Physio")
        second = harness.add_event("GP visit", start_at=harness.clock() + timedelta(days=2))

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.success is True
        assert result.processed == 2
        assert result.created == 2
        assert result.failed == 0
        assert len(harness.provider.calls_for("create")) == 2
        for event in (first, second):
            stored = harness.events.rows[event.id]
            assert stored.sync_status == EventSyncStatus.SYNCED
            assert stored.external_id(GOOGLE) in harness.provider.remote
            assert stored.last_synced_at == harness.clock()

    async def test_second_run_creates_nothing(self, harness):
        integration = harness.add_integration()
        harness.add_event("Physio")
        orchestrator = harness.orchestrator()

        await orchestrator.run(integration.id, SyncDirection.PUSH)
        second = await orchestrator.run(integration.id, SyncDirection.PUSH)

        assert second.success is True
        assert second.created == 0
        assert second.processed == 0
        assert len(harness.provider.calls_for("create")) == 1
        assert len(harness.provider.remote) == 1

    async def test_rerun_after_fatal_failure_only_creates_the_remainder(self, harness):
        integration = harness.add_integration()
        first = harness.add_event("Physio")
        second = harness.add_event("GP visit", start_at=harness.clock() + timedelta(days=2))
        harness.provider.fail_titles["GP visit"] = UnauthorizedError(
            "google", "Invalid Credentials", status_code=401
        )

        failed = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)
        assert failed.success is False
        assert harness.events.rows[first.id].external_id(GOOGLE) is not None
        assert harness.events.rows[second.id].external_id(GOOGLE) is None

        harness.provider.fail_titles.clear()
        retried = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert retried.success is True
        assert retried.created == 1
        assert len(harness.provider.remote) == 2
        created_titles = sorted(r.payload["summary"] for r in harness.provider.remote.values())
        assert created_titles == ["GP visit", "Physio"]

    async def test_payload_carries_the_event_marker(self, harness):
        integration = harness.add_integration()
        event = harness.add_event("Physio", category="therapy")

        await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        (remote,) = harness.provider.remote.values()
        private = remote.payload["extendedProperties"]["private"]
        assert private["careiq_event_id"] == str(event.id)
        assert private["careiq_category"] == "therapy"

    async def test_target_calendar_overrides_integration_calendar(self, harness):
        integration = harness.add_integration(calendar_id="primary")
        harness.add_event("Physio")

        await harness.orchestrator().run(
            integration.id, SyncDirection.PUSH, target_calendar_id="family@group.calendar"
        )

        (call,) = harness.provider.calls_for("create")
        assert call.calendar_id == "family@group.calendar"

    async def test_errored_events_are_skipped_unless_configured(self, harness):
        integration = harness.add_integration()
        event = harness.add_event("Physio", sync_status=EventSyncStatus.ERROR, sync_error="boom")

        skipped = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)
        assert skipped.processed == 0

        retrying = harness.orchestrator(
            config=CalendarSyncConfig(retry_errored_events=True, event_retry_attempts=0)
        )
        result = await retrying.run(integration.id, SyncDirection.PUSH)

        assert result.created == 1
        stored = harness.events.rows[event.id]
        assert stored.sync_status == EventSyncStatus.SYNCED
        assert stored.sync_error is None


class TestPushUpdates:
    async def test_linked_pending_event_is_updated_remotely(self, harness):
        integration = harness.add_integration()
        remote_id = harness.provider.add_remote(
            google_payload("Physio", harness.clock(), harness.clock() + timedelta(hours=1))
        )
        event = harness.add_event("Physio (moved)", external_ids={GOOGLE: remote_id})

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.updated == 1
        assert result.created == 0
        (call,) = harness.provider.calls_for("update")
        assert call.remote_id == remote_id
        assert harness.provider.remote[remote_id].payload["summary"] == "Physio (moved)"
        assert harness.events.rows[event.id].sync_status == EventSyncStatus.SYNCED

    async def test_per_event_failure_is_recorded_and_run_continues(self, harness):
        integration = harness.add_integration()
        bad = harness.add_event("Broken")
        good = harness.add_event("Physio", start_at=harness.clock() + timedelta(days=2))
        harness.provider.fail_titles["Broken"] = ProviderRequestError(
            "google", "Invalid start time", status_code=400
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.success is True
        assert result.processed == 2
        assert result.created == 1
        assert result.failed == 1
        assert len(result.errors) == 1
        assert str(bad.id) in result.errors[0]
        assert harness.events.rows[bad.id].sync_status == EventSyncStatus.ERROR
        assert "Invalid start time" in harness.events.rows[bad.id].sync_error
        assert harness.events.rows[good.id].sync_status == EventSyncStatus.SYNCED

    async def test_failure_in_the_middle_of_a_batch_does_not_stop_it(self, harness):
        integration = harness.add_integration()
        first = harness.add_event("Physio", start_at=harness.clock() + timedelta(days=1))
        middle = harness.add_event("GP visit", start_at=harness.clock() + timedelta(days=2))
        last = harness.add_event("Blood test", start_at=harness.clock() + timedelta(days=3))
        harness.provider.fail_titles["GP visit"] = ProviderRequestError(
            "google", "Invalid attendee", status_code=400
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.success is True
        assert result.processed == 3
        assert result.created == 2
        assert result.failed == 1
        assert len(result.errors) == 1
        assert str(middle.id) in result.errors[0]
        assert len(harness.provider.calls_for("create")) == 3
        assert harness.events.rows[middle.id].sync_status == EventSyncStatus.ERROR
        for event in (first, last):
            stored = harness.events.rows[event.id]
            assert stored.sync_status == EventSyncStatus.SYNCED
            assert stored.external_id(GOOGLE) in harness.provider.remote

    async def test_update_that_exhausted_retries_is_retried_next_run(self, harness):
        integration = harness.add_integration()
        remote_id = harness.provider.add_remote(
            google_payload("Physio", harness.clock(), harness.clock() + timedelta(hours=1))
        )
        event = harness.add_event("Physio (moved)", external_ids={GOOGLE: remote_id})
        harness.provider.fail_next["update"] = [
            TransientNetworkError("google", "backend error", status_code=503) for _ in range(3)
        ]

        failed = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)
        assert failed.failed == 1
        assert harness.events.rows[event.id].sync_status == EventSyncStatus.ERROR

        retried = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert retried.success is True
        assert retried.updated == 1
        assert harness.provider.remote[remote_id].payload["summary"] == "Physio (moved)"
        stored = harness.events.rows[event.id]
        assert stored.sync_status == EventSyncStatus.SYNCED
        assert stored.sync_error is None

    async def test_event_without_an_id_fails_instead_of_pushing(self, harness, monkeypatch):
        integration = harness.add_integration()
        start = harness.clock() + timedelta(days=1)
        unsaved = CalendarEvent(
            user_id=USER_ID, title="Draft", start_at=start, end_at=start + timedelta(hours=1)
        )

        async def pending(user_id, provider, *, include_errored=False):
            return [unsaved]

        monkeypatch.setattr(harness.events, "list_pending_push", pending)

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.failed == result.processed == 1
        assert "unsaved" in result.errors[0]
        assert harness.provider.calls_for("create") == []

    async def test_all_events_failing_marks_the_run_failed(self, harness):
        integration = harness.add_integration()
        harness.add_event("Broken")
        harness.provider.fail_titles["Broken"] = ProviderRequestError(
            "google", "Invalid start time", status_code=400
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.success is False
        assert result.failed == result.processed == 1
        assert "Invalid start time" in result.error
        assert harness.sync_logs.logs[0].status == SyncLogStatus.ERROR
        stored = harness.integrations.rows[integration.id]
        assert stored.last_sync_status == IntegrationSyncStatus.ERROR


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


class TestPull:
    async def test_remote_events_are_created_locally(self, harness):
        integration = harness.add_integration()
        start = datetime(2026, 3, 12, 9, 0, tzinfo=UTC)
        remote_id = harness.provider.add_remote(
            google_payload("Dentist", start, start + timedelta(minutes=30), description="Checkup")
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.success is True
        assert result.created == 1
        local = await harness.events.get_by_external_id(USER_ID, GOOGLE, remote_id)
        assert local is not None
        assert local.title == "Dentist"
        assert local.description == "Checkup"
        assert local.start_at == start
        assert local.sync_status == EventSyncStatus.SYNCED
        assert harness.provider.calls_for("create") == []

    async def test_repeated_pull_updates_instead_of_duplicating(self, harness):
        integration = harness.add_integration()
        start = datetime(2026, 3, 12, 9, 0, tzinfo=UTC)
        harness.provider.add_remote(google_payload("Dentist", start, start + timedelta(hours=1)))
        orchestrator = harness.orchestrator()

        await orchestrator.run(integration.id, SyncDirection.PULL)
        second = await orchestrator.run(integration.id, SyncDirection.PULL)

        assert second.created == 0
        assert second.updated == 1
        assert len(harness.events.rows) == 1

    async def test_marker_relinks_event_whose_link_was_lost(self, harness):
        integration = harness.add_integration()
        event = harness.add_event("Physio", sync_status=EventSyncStatus.SYNCED)
        remote_id = harness.provider.add_remote(
            google_payload("Physio", event.start_at, event.end_at, event_id=event.id)
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.updated == 1
        assert result.created == 0
        assert len(harness.events.rows) == 1
        assert harness.events.rows[event.id].external_id(GOOGLE) == remote_id

    async def test_bidirectional_run_skips_echo_of_pushed_event(self, harness):
        integration = harness.add_integration()
        harness.add_event("Physio")

        result = await harness.orchestrator().run(integration.id, SyncDirection.BIDIRECTIONAL)

        assert result.processed == 1
        assert result.created == 1
        assert result.updated == 0
        assert len(harness.events.rows) == 1
        assert len(harness.provider.calls_for("list")) == 1

    async def test_unlinked_event_with_a_marked_remote_copy_is_not_created_again(self, harness):
        integration = harness.add_integration()
        event = harness.add_event("Physio")
        remote_id = harness.provider.add_remote(
            google_payload("Physio", event.start_at, event.end_at, event_id=event.id)
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.BIDIRECTIONAL)

        assert result.success is True
        assert result.processed == 1
        assert result.created == 0
        assert result.updated == 1
        assert harness.provider.calls_for("create") == []
        assert list(harness.provider.remote) == [remote_id]
        assert list(harness.events.rows) == [event.id]
        stored = harness.events.rows[event.id]
        assert stored.external_id(GOOGLE) == remote_id
        assert stored.sync_status == EventSyncStatus.SYNCED

    async def test_stray_copy_of_a_linked_event_is_skipped(self, harness):
        integration = harness.add_integration()
        event = harness.add_event(
            "Physio", sync_status=EventSyncStatus.SYNCED, external_ids={GOOGLE: "remote-2"}
        )
        stray_id = harness.provider.add_remote(
            google_payload("Physio", event.start_at, event.end_at, event_id=event.id)
        )
        linked_id = harness.provider.add_remote(
            google_payload("Physio", event.start_at, event.end_at, event_id=event.id)
        )
        assert (stray_id, linked_id) == ("remote-1", "remote-2")

        result = await harness.orchestrator().run(integration.id, SyncDirection.BIDIRECTIONAL)

        assert result.success is True
        assert result.processed == 2
        assert result.created == 0
        assert result.updated == 1
        assert result.failed == 0
        assert list(harness.events.rows) == [event.id]
        assert harness.events.rows[event.id].external_id(GOOGLE) == linked_id

    async def test_bidirectional_mixed_batch_counts(self, harness):
        integration = harness.add_integration()
        start = harness.clock() + timedelta(days=1)
        synced = harness.add_event(
            "Dentist",
            start_at=start,
            sync_status=EventSyncStatus.SYNCED,
            external_ids={GOOGLE: "remote-1"},
            last_synced_at=harness.clock() - timedelta(hours=1),
        )
        harness.provider.add_remote(
            google_payload("Dentist (moved)", start, start + timedelta(hours=1)),
            updated_at=harness.clock() - timedelta(minutes=5),
        )
        unmatched_id = harness.provider.add_remote(
            google_payload("Pharmacy pickup", start, start + timedelta(minutes=15))
        )
        for offset, title in enumerate(("Physio", "GP visit", "Blood test"), start=2):
            harness.add_event(title, start_at=harness.clock() + timedelta(days=offset))

        result = await harness.orchestrator().run(integration.id, SyncDirection.BIDIRECTIONAL)

        assert result.success is True
        assert result.created == 4
        assert result.updated == 1
        assert result.processed == 5
        assert result.failed == 0
        assert result.conflicts == 0
        assert len(harness.provider.calls_for("create")) == 3
        assert len(harness.provider.calls_for("list")) == 1
        assert len(harness.provider.remote) == 5
        assert len(harness.events.rows) == 5
        assert harness.events.rows[synced.id].title == "Dentist (moved)"
        pulled = await harness.events.get_by_external_id(USER_ID, GOOGLE, unmatched_id)
        assert pulled is not None
        assert pulled.title == "Pharmacy pickup"

    async def test_pulled_events_take_the_run_calendar_type(self, harness):
        integration = harness.add_integration()
        start = datetime(2026, 3, 12, 9, 0, tzinfo=UTC)
        new_id = harness.provider.add_remote(
            google_payload("Dentist", start, start + timedelta(hours=1))
        )
        typed_id = harness.provider.add_remote(
            google_payload("Physio", start, start + timedelta(hours=1))
        )
        typed = harness.add_event(
            "Physio",
            start_at=start,
            sync_status=EventSyncStatus.SYNCED,
            calendar_type_id="therapy",
            external_ids={GOOGLE: typed_id},
        )

        await harness.orchestrator().run(
            integration.id, SyncDirection.PULL, calendar_type_id="appointments"
        )
        pulled = await harness.events.get_by_external_id(USER_ID, GOOGLE, new_id)
        assert pulled.calendar_type_id == "appointments"
        assert harness.events.rows[typed.id].calendar_type_id == "appointments"

        await harness.orchestrator().run(integration.id, SyncDirection.PULL)
        assert harness.events.rows[typed.id].calendar_type_id == "appointments"

    async def test_unmappable_remote_event_counts_as_failure(self, harness):
        integration = harness.add_integration()
        start = datetime(2026, 3, 12, 9, 0, tzinfo=UTC)
        harness.provider.add_remote({"summary": "No times"})
        harness.provider.add_remote(google_payload("Dentist", start, start + timedelta(hours=1)))

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.success is True
        assert result.processed == 2
        assert result.created == 1
        assert result.failed == 1
        assert result.errors[0].startswith("remote remote-1")

    async def test_pull_uses_configured_window_and_limit(self, harness, monkeypatch):
        integration = harness.add_integration()
        seen = {}
        original = harness.provider.list_events

        async def capture(credential, *, calendar_id, time_range, max_results=500):
            seen["range"] = time_range
            seen["max_results"] = max_results
            return await original(
                credential, calendar_id=calendar_id, time_range=time_range, max_results=max_results
            )

        monkeypatch.setattr(harness.provider, "list_events", capture)
        config = CalendarSyncConfig(pull_months_back=2, pull_months_ahead=3, pull_max_results=50)

        await harness.orchestrator(config=config).run(integration.id, SyncDirection.PULL)

        assert seen["range"].start == datetime(2026, 1, 10, 12, 0, tzinfo=UTC)
        assert seen["range"].end == datetime(2026, 6, 10, 12, 0, tzinfo=UTC)
        assert seen["max_results"] == 50


class TestConflicts:
    async def test_remote_change_after_last_sync_wins(self, harness):
        integration = harness.add_integration()
        start = harness.clock() + timedelta(days=1)
        remote_id = harness.provider.add_remote(
            google_payload("Remote edit", start, start + timedelta(hours=1)),
            updated_at=harness.clock() - timedelta(minutes=10),
        )
        event = harness.add_event(
            "Local edit",
            start_at=start,
            external_ids={GOOGLE: remote_id},
            last_synced_at=harness.clock() - timedelta(hours=1),
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.conflicts == 1
        assert result.updated == 1
        stored = harness.events.rows[event.id]
        assert stored.title == "Remote edit"
        assert stored.sync_status == EventSyncStatus.SYNCED
        assert harness.provider.calls_for("update") == []
        (conflict,) = harness.conflicts.rows
        assert conflict.event_id == event.id
        assert conflict.integration_id == integration.id
        assert conflict.external_id == remote_id
        assert conflict.local_data["title"] == "Local edit"
        assert conflict.external_data["summary"] == "Remote edit"
        assert conflict.resolution_status == ConflictResolution.RESOLVED_EXTERNAL
        assert conflict.resolved_at == harness.clock()

    async def test_local_change_newer_than_remote_is_pushed(self, harness):
        integration = harness.add_integration()
        start = harness.clock() + timedelta(days=1)
        remote_id = harness.provider.add_remote(
            google_payload("Remote copy", start, start + timedelta(hours=1)),
            updated_at=harness.clock() - timedelta(hours=2),
        )
        event = harness.add_event(
            "Local edit",
            start_at=start,
            external_ids={GOOGLE: remote_id},
            last_synced_at=harness.clock() - timedelta(hours=1),
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.conflicts == 0
        assert result.updated == 1
        assert harness.events.rows[event.id].title == "Local edit"
        assert harness.provider.remote[remote_id].payload["summary"] == "Local edit"
        assert harness.conflicts.rows == []

    async def test_errored_event_loses_to_newer_remote_copy(self, harness):
        integration = harness.add_integration()
        start = harness.clock() + timedelta(days=1)
        remote_id = harness.provider.add_remote(
            google_payload("Remote edit", start, start + timedelta(hours=1)),
            updated_at=harness.clock() - timedelta(minutes=10),
        )
        event = harness.add_event(
            "Local edit",
            start_at=start,
            external_ids={GOOGLE: remote_id},
            sync_status=EventSyncStatus.ERROR,
            sync_error="backend error",
            last_synced_at=harness.clock() - timedelta(hours=1),
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.BIDIRECTIONAL)

        assert result.conflicts == 1
        assert result.updated == 1
        assert harness.provider.calls_for("update") == []
        stored = harness.events.rows[event.id]
        assert stored.title == "Remote edit"
        assert stored.sync_status == EventSyncStatus.SYNCED
        (conflict,) = harness.conflicts.rows
        assert conflict.local_data["title"] == "Local edit"
        assert conflict.local_data["sync_status"] == "error"

    async def test_errored_event_newer_than_remote_is_pushed_on_pull(self, harness):
        integration = harness.add_integration()
        start = harness.clock() + timedelta(days=1)
        remote_id = harness.provider.add_remote(
            google_payload("Remote copy", start, start + timedelta(hours=1)),
            updated_at=harness.clock() - timedelta(hours=2),
        )
        event = harness.add_event(
            "Local edit",
            start_at=start,
            external_ids={GOOGLE: remote_id},
            sync_status=EventSyncStatus.ERROR,
            last_synced_at=harness.clock() - timedelta(hours=1),
        )

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.conflicts == 0
        assert result.updated == 1
        assert harness.provider.remote[remote_id].payload["summary"] == "Local edit"
        assert harness.events.rows[event.id].sync_status == EventSyncStatus.SYNCED


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TestTokenHandling:
    async def test_valid_token_is_used_without_refresh(self, harness):
        integration = harness.add_integration(access_token="still-good")
        harness.add_event("Physio")

        await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert harness.provider.calls_for("refresh") == []
        assert harness.provider.calls_for("create")[0].token == "still-good"

    async def test_expired_token_is_refreshed_once_and_persisted(self, harness):
        integration = harness.add_integration(
            token_expires_at=harness.clock() - timedelta(minutes=1)
        )
        harness.add_event("Physio")
        harness.add_event("GP visit", start_at=harness.clock() + timedelta(days=2))

        result = await harness.orchestrator().run(integration.id, SyncDirection.BIDIRECTIONAL)

        assert result.success is True
        assert len(harness.provider.calls_for("refresh")) == 1
        tokens = {call.token for call in harness.provider.calls if call.operation != "refresh"}
        assert tokens == {"refreshed-token"}
        stored = harness.integrations.rows[integration.id]
        assert stored.access_token == "refreshed-token"
        assert stored.refresh_token == "refresh-token"
        assert stored.token_expires_at == harness.clock() + timedelta(hours=1)

    async def test_expired_without_refresh_token_makes_no_provider_calls(self, harness):
        integration = harness.add_integration(
            refresh_token=None,
            token_expires_at=harness.clock() - timedelta(minutes=5),
        )
        event = harness.add_event("Physio")

        result = await harness.orchestrator().run(integration.id, SyncDirection.BIDIRECTIONAL)

        assert result.success is False
        assert "reconnect" in result.error
        assert harness.provider.calls == []
        assert harness.provider.shutdowns == 1
        (log,) = harness.sync_logs.logs
        assert log.status == SyncLogStatus.ERROR
        assert log.completed_at is not None
        stored = harness.integrations.rows[integration.id]
        assert stored.last_sync_status == IntegrationSyncStatus.ERROR
        assert "reconnect" in stored.error_message
        assert harness.events.rows[event.id].sync_status == EventSyncStatus.PENDING

    async def test_refresh_throttling_is_retried(self, harness):
        integration = harness.add_integration(
            token_expires_at=harness.clock() - timedelta(minutes=1)
        )
        harness.provider.fail_next["refresh"] = [RateLimitedError("google", "slow down")]

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.success is True
        assert len(harness.provider.calls_for("refresh")) == 2
        assert harness.sleeps == [0.5]


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    async def test_transient_and_throttled_calls_back_off(self, harness):
        integration = harness.add_integration()
        harness.add_event("Physio")
        harness.provider.fail_next["create"] = [
            TransientNetworkError("google", "backend error", status_code=503),
            RateLimitedError("google", "slow down", retry_after=7),
        ]

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.success is True
        assert result.created == 1
        assert harness.sleeps == [0.5, 7]
        assert len(harness.provider.calls_for("create")) == 3
        assert len(harness.provider.remote) == 1

    async def test_exhausted_retries_fail_the_event(self, harness):
        integration = harness.add_integration()
        event = harness.add_event("Physio")
        harness.provider.fail_next["create"] = [
            TransientNetworkError("google", "backend error", status_code=503) for _ in range(3)
        ]

        result = await harness.orchestrator().run(integration.id, SyncDirection.PUSH)

        assert result.success is False
        assert result.failed == 1
        assert harness.sleeps == [0.5, 1.0]
        assert harness.events.rows[event.id].sync_status == EventSyncStatus.ERROR
        assert harness.events.rows[event.id].external_id(GOOGLE) is None

    async def test_unauthorized_ends_the_run_without_retry(self, harness):
        integration = harness.add_integration()
        harness.provider.fail_next["list"] = [
            UnauthorizedError("google", "Invalid Credentials", status_code=401)
        ]

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.success is False
        assert "401" in result.error
        assert harness.sleeps == []
        assert len(harness.provider.calls_for("list")) == 1


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


class TestRunLifecycle:
    async def test_missing_integration_raises(self, harness):
        with pytest.raises(IntegrationNotFound):
            await harness.orchestrator().run(uuid.uuid4())
        assert harness.sync_logs.logs == []

    async def test_soft_deleted_integration_is_not_found(self, harness):
        integration = harness.add_integration(deleted_at=harness.clock())

        with pytest.raises(IntegrationNotFound):
            await harness.orchestrator().run(integration.id)

    async def test_inactive_integration_raises(self, harness):
        integration = harness.add_integration(is_active=False)

        with pytest.raises(IntegrationInactive):
            await harness.orchestrator().run(integration.id)
        assert harness.sync_logs.logs == []
        assert harness.provider.calls == []

    async def test_run_in_progress_is_rejected(self, harness):
        integration = harness.add_integration()
        await harness.sync_logs.start(integration.id, RunType.SCHEDULED, SyncDirection.PULL)

        with pytest.raises(SyncAlreadyInProgress):
            await harness.orchestrator().run(integration.id)

        assert len(harness.sync_logs.logs) == 1
        assert harness.provider.calls == []

    async def test_concurrent_runs_only_one_proceeds(self, harness, monkeypatch):
        integration = harness.add_integration()
        orchestrator = harness.orchestrator()

        async def slow_list(credential, *, calendar_id, time_range, max_results=500):
            await asyncio.sleep(0.01)
            return []

        monkeypatch.setattr(harness.provider, "list_events", slow_list)

        outcomes = await asyncio.gather(
            orchestrator.run(integration.id, SyncDirection.PULL),
            orchestrator.run(integration.id, SyncDirection.PULL),
            return_exceptions=True,
        )

        rejected = [o for o in outcomes if isinstance(o, SyncAlreadyInProgress)]
        finished = [o for o in outcomes if not isinstance(o, BaseException)]
        assert len(rejected) == 1
        assert len(finished) == 1
        assert len(harness.sync_logs.logs) == 1

    async def test_log_is_closed_exactly_once_with_counts(self, harness, monkeypatch):
        integration = harness.add_integration()
        harness.add_event("Physio")
        finished = []
        original_finish = harness.sync_logs.finish

        async def counting_finish(log_id, result):
            finished.append(log_id)
            await original_finish(log_id, result)

        monkeypatch.setattr(harness.sync_logs, "finish", counting_finish)

        result = await harness.orchestrator().run(
            integration.id, SyncDirection.PUSH, run_type=RunType.SCHEDULED
        )

        assert finished == [result.sync_log_id]
        (log,) = harness.sync_logs.logs
        assert log.status == SyncLogStatus.SUCCESS
        assert log.run_type == RunType.SCHEDULED
        assert log.direction == SyncDirection.PUSH
        assert log.events_processed == 1
        assert log.events_created == 1
        assert log.completed_at is not None
        stored = harness.integrations.rows[integration.id]
        assert stored.last_sync_status == IntegrationSyncStatus.SUCCESS
        assert stored.last_sync_at == harness.clock()
        assert stored.error_message is None

    async def test_unexpected_error_is_reported_and_finalized(self, harness):
        integration = harness.add_integration()
        harness.provider.fail_next["list"] = [RuntimeError("kaboom")]

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.success is False
        assert result.error == "Unexpected error: kaboom"
        assert harness.sync_logs.logs[0].status == SyncLogStatus.ERROR
        assert harness.provider.shutdowns == 1

    async def test_timeout_fails_the_run(self, harness, monkeypatch):
        integration = harness.add_integration()

        async def slow_list(credential, *, calendar_id, time_range, max_results=500):
            await asyncio.sleep(5)
            return []

        monkeypatch.setattr(harness.provider, "list_events", slow_list)
        config = CalendarSyncConfig(sync_timeout_seconds=0.05)

        result = await harness.orchestrator(config=config).run(
            integration.id, SyncDirection.PULL
        )

        assert result.success is False
        assert result.error == "Sync timed out after 0.05s"
        assert harness.sync_logs.logs[0].status == SyncLogStatus.ERROR
        assert harness.provider.shutdowns == 1

    async def test_finalize_datastore_failure_is_reported(self, harness, monkeypatch):
        integration = harness.add_integration()

        async def broken_update(integration_id, **fields):
            raise OSError("connection reset")

        monkeypatch.setattr(harness.integrations, "update", broken_update)

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert result.success is False
        assert result.error == "Datastore error: connection reset"

    async def test_error_messages_are_redacted(self, harness):
        integration = harness.add_integration()
        harness.provider.fail_next["list"] = [
            RuntimeError("upstream said access_token=ya29.secret-value")
        ]

        result = await harness.orchestrator().run(integration.id, SyncDirection.PULL)

        assert "ya29.secret-value" not in result.error
        assert "[REDACTED]" in result.error

    async def test_status_reports_recent_runs(self, harness):
        integration = harness.add_integration()
        orchestrator = harness.orchestrator()
        await orchestrator.run(integration.id, SyncDirection.PULL)
        harness.clock.advance(minutes=5)
        await orchestrator.run(integration.id, SyncDirection.PUSH)

        report = await orchestrator.status(integration.id)

        assert report.last_sync_status == IntegrationSyncStatus.SUCCESS
        assert [run.direction for run in report.recent_runs] == [
            SyncDirection.PUSH,
            SyncDirection.PULL,
        ]


# ---------------------------------------------------------------------------
# Explicit deletion
# ---------------------------------------------------------------------------


class TestDeleteEvent:
    async def test_remote_copy_is_deleted_before_local_row(self, harness):
        harness.add_integration()
        start = harness.clock() + timedelta(days=1)
        remote_id = harness.provider.add_remote(
            google_payload("Physio", start, start + timedelta(hours=1))
        )
        event = harness.add_event("Physio", external_ids={GOOGLE: remote_id})

        removed = await harness.orchestrator().delete_event(USER_ID, event.id)

        assert removed == [GOOGLE]
        assert remote_id not in harness.provider.remote
        assert event.id not in harness.events.rows

    async def test_remote_already_gone_still_deletes_locally(self, harness):
        harness.add_integration()
        event = harness.add_event("Physio", external_ids={GOOGLE: "remote-gone"})
        harness.provider.fail_next["delete"] = [
            NotFoundError("google", "Not Found", status_code=404)
        ]

        removed = await harness.orchestrator().delete_event(USER_ID, event.id)

        assert removed == [GOOGLE]
        assert event.id not in harness.events.rows

    async def test_provider_without_integration_is_skipped(self, harness):
        event = harness.add_event(
            "Physio", external_ids={CalendarProviderName.OUTLOOK: "AAMkAGI2"}
        )

        removed = await harness.orchestrator().delete_event(USER_ID, event.id)

        assert removed == []
        assert harness.provider.calls == []
        assert event.id not in harness.events.rows

    async def test_provider_failure_keeps_the_local_row(self, harness):
        harness.add_integration()
        event = harness.add_event("Physio", external_ids={GOOGLE: "remote-9"})
        harness.provider.fail_next["delete"] = [
            ProviderRequestError("google", "Bad Request", status_code=400)
        ]

        with pytest.raises(ProviderRequestError):
            await harness.orchestrator().delete_event(USER_ID, event.id)

        assert event.id in harness.events.rows

    async def test_other_users_event_is_not_found(self, harness):
        event = harness.add_event("Physio", user_id="someone-else")

        with pytest.raises(EventNotFound):
            await harness.orchestrator().delete_event(USER_ID, event.id)

        assert event.id in harness.events.rows


class TestShiftMonths:
    def test_clamps_to_end_of_shorter_month(self):
        assert shift_months(datetime(2026, 3, 31, tzinfo=UTC), -1) == datetime(
            2026, 2, 28, tzinfo=UTC
        )

    def test_crosses_year_boundaries(self):
        assert shift_months(datetime(2026, 11, 15, tzinfo=UTC), 3) == datetime(
            2027, 2, 15, tzinfo=UTC
        )
        assert shift_months(datetime(2026, 1, 15, tzinfo=UTC), -2) == datetime(
            2025, 11, 15, tzinfo=UTC
        )
