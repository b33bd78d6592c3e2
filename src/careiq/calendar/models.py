"""Domain models for external calendar synchronization.

Integrations, internal events, remote (wire) events and sync-run records are
pydantic models so they validate on the way in from the datastore and the
API, and serialize the same way on the way out.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CalendarProviderName(StrEnum):
    """Provider discriminator stored on integrations and used to pick a client."""

    GOOGLE = "google"
    OUTLOOK = "outlook"
    APPLE_CALDAV = "apple_caldav"


class SyncDirection(StrEnum):
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)


class RunType(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class SyncLogStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


class EventSyncStatus(StrEnum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class IntegrationSyncStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class Availability(StrEnum):
    """Free/busy marker carried to every provider."""

    BUSY = "busy"
    FREE = "free"


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AccessCredential(BaseModel):
    """The bearer (or basic-auth) material used for one sync run.

    Fetched once at run start, refreshed at most once, and then passed
    explicitly to every provider call in that run.
    """

    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False)
    expires_at: datetime | None = None
    refresh_token: str | None = Field(default=None, repr=False)
    username: str | None = None

    def is_expired(self, now: datetime, *, skew: timedelta = timedelta(0)) -> bool:
        """True when the credential must be refreshed before use.

        A credential without an expiry (CalDAV app passwords) never expires.
        """
        if self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) <= now + skew


class CalendarIntegration(BaseModel):
    """A stored authorization linking one user to one calendar provider."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    user_id: str
    provider: CalendarProviderName
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    token_expires_at: datetime | None = None
    calendar_id: str | None = None
    server_url: str | None = None
    account_username: str | None = None
    is_active: bool = True
    sync_enabled: bool = True
    last_sync_at: datetime | None = None
    last_sync_status: IntegrationSyncStatus = IntegrationSyncStatus.PENDING
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def credential(self) -> AccessCredential:
        """Build the run credential from the stored token columns."""
        return AccessCredential(
            token=self.access_token or "",
            expires_at=self.token_expires_at,
            refresh_token=self.refresh_token or None,
            username=self.account_username,
        )


class CalendarEvent(BaseModel):
    """A schedulable item owned by the application.

    ``external_ids`` maps a provider to the identifier that provider assigned
    when the event was first created remotely. Once present it is the join
    key for every later push (as an update) and pull (as a match).
    """

    model_config = ConfigDict(extra="ignore")

    id: UUID | None = None
    user_id: str
    calendar_type_id: str | None = None
    title: str
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    category: str = "custom"
    show_as: Availability = Availability.BUSY
    external_ids: dict[CalendarProviderName, str] = Field(default_factory=dict)
    sync_status: EventSyncStatus = EventSyncStatus.PENDING
    sync_error: str | None = None
    last_synced_at: datetime | None = None
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        return normalized or "Untitled Event"

    @model_validator(mode="after")
    def _validate_range(self) -> CalendarEvent:
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self

    def external_id(self, provider: CalendarProviderName) -> str | None:
        return self.external_ids.get(provider)


class RemoteEvent(BaseModel):
    """A provider's wire representation of one event.

    ``payload`` is the provider-native body (JSON object for REST providers,
    rendered iCalendar text for CalDAV). ``remote_id`` is ``None`` until the
    provider has assigned one.
    """

    provider: CalendarProviderName
    remote_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    etag: str | None = None
    updated_at: datetime | None = None


class TimeRange(BaseModel):
    """Half-open ``[start, end)`` window used for pulls."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _validate_order(self) -> TimeRange:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class SyncLog(BaseModel):
    """Durable record of one sync run."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    integration_id: UUID
    run_type: RunType
    direction: SyncDirection
    status: SyncLogStatus = SyncLogStatus.IN_PROGRESS
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_failed: int = 0
    conflicts_detected: int = 0
    execution_time_ms: int | None = None
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class SyncRunResult(BaseModel):
    """Outcome of one orchestrator run, returned to the caller."""

    integration_id: UUID
    sync_log_id: UUID | None = None
    provider: CalendarProviderName
    direction: SyncDirection
    run_type: RunType = RunType.MANUAL
    success: bool = False
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    conflicts: int = 0
    duration_ms: int = 0
    error: str | None = None
    errors: list[str] = Field(default_factory=list)


class SyncStatusReport(BaseModel):
    integration_id: UUID
    provider: CalendarProviderName
    is_active: bool
    sync_enabled: bool
    last_sync_at: datetime | None = None
    last_sync_status: IntegrationSyncStatus
    error_message: str | None = None
    recent_runs: list[SyncLog] = Field(default_factory=list)


class ConflictType(StrEnum):
    TIME_OVERLAP = "time_overlap"
    DATA_MISMATCH = "data_mismatch"
    EXTERNAL_CHANGE = "external_change"
    PERMISSION_ERROR = "permission_error"


class ConflictResolution(StrEnum):
    PENDING = "pending"
    RESOLVED_LOCAL = "resolved_local"
    RESOLVED_EXTERNAL = "resolved_external"
    RESOLVED_MANUAL = "resolved_manual"
    IGNORED = "ignored"


class SyncConflict(BaseModel):
    """A local edit that lost to a newer remote copy during a pull.

    ``local_data`` is the internal event as it stood before the overwrite and
    ``external_data`` the remote payload that replaced it, so a discarded
    edit can still be recovered by hand.
    """

    model_config = ConfigDict(extra="ignore")

    id: UUID
    user_id: str
    event_id: UUID
    integration_id: UUID | None = None
    provider: CalendarProviderName
    external_id: str | None = None
    conflict_type: ConflictType = ConflictType.EXTERNAL_CHANGE
    local_data: dict[str, Any] = Field(default_factory=dict)
    external_data: dict[str, Any] = Field(default_factory=dict)
    resolution_status: ConflictResolution = ConflictResolution.RESOLVED_EXTERNAL
    resolved_at: datetime | None = None
    created_at: datetime
