"""Calendar sync API models.

Integration views never carry credentials; they are built from
``CalendarIntegration`` through ``IntegrationView.from_integration``.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from careiq.calendar.models import (
    CalendarIntegration,
    CalendarProviderName,
    IntegrationSyncStatus,
    SyncDirection,
)


class IntegrationView(BaseModel):
    """Public shape of a calendar integration."""

    id: UUID
    provider: CalendarProviderName
    calendar_id: str | None = None
    server_url: str | None = None
    account_username: str | None = None
    is_active: bool
    sync_enabled: bool
    last_sync_at: datetime | None = None
    last_sync_status: IntegrationSyncStatus
    error_message: str | None = None
    token_expires_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_integration(cls, integration: CalendarIntegration) -> IntegrationView:
        return cls(
            id=integration.id,
            provider=integration.provider,
            calendar_id=integration.calendar_id,
            server_url=integration.server_url,
            account_username=integration.account_username,
            is_active=integration.is_active,
            sync_enabled=integration.sync_enabled,
            last_sync_at=integration.last_sync_at,
            last_sync_status=integration.last_sync_status,
            error_message=integration.error_message,
            token_expires_at=integration.token_expires_at,
            created_at=integration.created_at,
        )


class SyncRequest(BaseModel):
    """Body of ``POST /integrations/{id}/sync``."""

    model_config = ConfigDict(extra="forbid")

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    target_calendar_id: str | None = None
    calendar_type_id: str | None = None

    @field_validator("target_calendar_id", "calendar_type_id")
    @classmethod
    def _normalize_calendar_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class IntegrationUpdateRequest(BaseModel):
    """Body of ``PATCH /integrations/{id}``; at least one field is required."""

    model_config = ConfigDict(extra="forbid")

    is_active: bool | None = None
    sync_enabled: bool | None = None
    calendar_id: str | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _require_a_change(self) -> IntegrationUpdateRequest:
        if self.is_active is None and self.sync_enabled is None and self.calendar_id is None:
            raise ValueError("at least one of is_active, sync_enabled, calendar_id is required")
        return self


class CalDAVConnectRequest(BaseModel):
    """Credentials for connecting an Apple iCloud (or other CalDAV) calendar."""

    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=1)
    app_password: str = Field(min_length=1, repr=False)
    calendar_url: str = Field(min_length=1)
    server_url: str | None = None

    @field_validator("calendar_url", "server_url")
    @classmethod
    def _require_http_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized.startswith(("https://", "http://")):
            raise ValueError("must be an http(s) URL")
        return normalized


class EventDeleteResponse(BaseModel):
    event_id: UUID
    removed_from: list[CalendarProviderName] = Field(default_factory=list)


class OAuthStartResponse(BaseModel):
    """Returned by the authorize endpoint when ``redirect=false``."""

    authorization_url: str
    provider: CalendarProviderName


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    message: str = "Calendar connected."
    provider: CalendarProviderName
    integration: IntegrationView


class OAuthCallbackError(BaseModel):
    """Error payload returned when the OAuth callback fails.

    Messages are actionable but never echo client secrets or raw provider
    error details.
    """

    success: bool = False
    error_code: str
    message: str
    provider: str | None = None
