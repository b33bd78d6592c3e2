"""External calendar synchronization (Google, Outlook, CalDAV)."""

from careiq.calendar.config import CalendarSyncConfig
from careiq.calendar.models import (
    CalendarEvent,
    CalendarIntegration,
    CalendarProviderName,
    RunType,
    SyncDirection,
    SyncRunResult,
)
from careiq.calendar.orchestrator import SyncOrchestrator
from careiq.calendar.service import CalendarSyncService

__all__ = [
    "CalendarEvent",
    "CalendarIntegration",
    "CalendarProviderName",
    "CalendarSyncConfig",
    "CalendarSyncService",
    "RunType",
    "SyncDirection",
    "SyncOrchestrator",
    "SyncRunResult",
]
