"""Shared fixtures for the careiq test suite.

The fakes themselves live in ``tests/fakes.py`` so test modules can import
them directly (``from tests.fakes import FakeCalendarProvider``).
"""

from __future__ import annotations

import pytest

from careiq.calendar.config import CalendarSyncConfig
from tests.fakes import (
    FakeCalendarProvider,
    FakeClock,
    InMemoryConflictStore,
    InMemoryEventStore,
    InMemoryIntegrationStore,
    InMemorySyncLogRecorder,
    SyncHarness,
)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def calendar_config() -> CalendarSyncConfig:
    return CalendarSyncConfig(event_retry_attempts=2, retry_base_backoff_seconds=0.5)


@pytest.fixture
def harness(fake_clock: FakeClock, calendar_config: CalendarSyncConfig) -> SyncHarness:
    integrations = InMemoryIntegrationStore(fake_clock)
    sync_logs = InMemorySyncLogRecorder(fake_clock)
    sync_logs.integrations = integrations
    return SyncHarness(
        clock=fake_clock,
        integrations=integrations,
        events=InMemoryEventStore(),
        sync_logs=sync_logs,
        provider=FakeCalendarProvider(clock=fake_clock),
        config=calendar_config,
        sleeps=[],
        conflicts=InMemoryConflictStore(fake_clock),
    )
