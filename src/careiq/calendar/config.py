"""Validated settings for the calendar sync subsystem (``[calendar]`` in careiq.toml)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

DEFAULT_GOOGLE_CALENDAR_ID = "primary"
DEFAULT_CALDAV_SERVER_URL = "https://caldav.icloud.com"


class _OAuthAppSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    client_secret: str | None = Field(default=None, repr=False)
    redirect_uri: str | None = None

    @field_validator("client_id", "client_secret", "redirect_uri")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


class GoogleSettings(_OAuthAppSettings):
    """OAuth app registration and defaults for Google Calendar."""

    calendar_id: str = DEFAULT_GOOGLE_CALENDAR_ID


class OutlookSettings(_OAuthAppSettings):
    """OAuth app registration for Microsoft Graph."""

    tenant: str = "common"

    @field_validator("tenant")
    @classmethod
    def _normalize_tenant(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("tenant must be a non-empty string")
        return normalized


class CalDAVSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_server_url: str = DEFAULT_CALDAV_SERVER_URL


class SchedulerSettings(BaseModel):
    """Scheduled-sync loop settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    interval_minutes: int = Field(default=15, ge=1)
    tick_interval_seconds: int = Field(default=60, ge=1)
    max_concurrent_runs: int = Field(default=4, ge=1)


class CalendarSyncConfig(BaseModel):
    """Configuration for sync runs, retries, scheduling and providers."""

    model_config = ConfigDict(extra="forbid")

    sync_timeout_seconds: float = Field(default=60.0, gt=0)
    pull_months_back: int = Field(default=1, ge=0)
    pull_months_ahead: int = Field(default=6, ge=1)
    pull_max_results: int = Field(default=500, ge=1)
    event_retry_attempts: int = Field(default=3, ge=0)
    retry_base_backoff_seconds: float = Field(default=1.0, ge=0)
    token_refresh_skew_seconds: int = Field(default=0, ge=0)
    retry_errored_events: bool = False
    stale_run_minutes: int = Field(default=15, ge=1)
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    google: GoogleSettings = Field(default_factory=GoogleSettings)
    outlook: OutlookSettings = Field(default_factory=OutlookSettings)
    caldav: CalDAVSettings = Field(default_factory=CalDAVSettings)

    @field_validator("sync_timeout_seconds", "http_timeout_seconds")
    @classmethod
    def _reasonable_timeout(cls, value: float, info: ValidationInfo) -> float:
        if value > 3600:
            raise ValueError(f"{info.field_name} must be at most 3600 seconds")
        return value
