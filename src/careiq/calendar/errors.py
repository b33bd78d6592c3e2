"""Error taxonomy for calendar synchronization.

Provider clients translate HTTP outcomes into the ``ProviderError`` family;
the orchestrator decides which of them end a run and which are recorded
against a single event.
"""

from __future__ import annotations

import re
from uuid import UUID

_MAX_ERROR_LENGTH = 200


class CalendarSyncError(RuntimeError):
    """Base error for the calendar sync subsystem."""


class AuthExpiredNoRefresh(CalendarSyncError):
    """Raised when the access credential expired and no refresh credential exists."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Access token expired and no refresh token available. "
            "Please reconnect the calendar integration."
        )


class TokenRefreshError(CalendarSyncError):
    """Raised when exchanging a refresh credential fails."""


class MappingError(CalendarSyncError):
    """Raised when an event cannot be translated to or from a provider shape."""


class ProviderNotConfigured(CalendarSyncError):
    """Raised when a provider's OAuth app credentials are missing from configuration."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"{provider} OAuth is not configured")


class InvalidOAuthState(CalendarSyncError):
    """Raised when an OAuth callback carries an unknown, expired or reused state."""


class ProviderError(CalendarSyncError):
    """A provider call failed.

    ``status_code`` is ``None`` for transport-level failures.
    """

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = message
        status = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"{provider} request failed{status}: {message}")


class UnauthorizedError(ProviderError):
    """The provider rejected the credential (401/403)."""


class NotFoundError(ProviderError):
    """The remote calendar or event does not exist (404/410)."""


class RateLimitedError(ProviderError):
    """The provider throttled the request (429)."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(provider, message, status_code=status_code)
        self.retry_after = retry_after


class TransientNetworkError(ProviderError):
    """Transport failure or provider-side 5xx; safe to retry."""


class ProviderRequestError(ProviderError):
    """Any other rejected request or malformed provider response."""


class SyncAlreadyInProgress(CalendarSyncError):
    """Raised when a run is requested while another is in progress."""

    def __init__(self, integration_id: UUID) -> None:
        self.integration_id = integration_id
        super().__init__(f"A sync is already running for integration {integration_id}")


class IntegrationNotFound(CalendarSyncError):
    def __init__(self, integration_id: UUID | str) -> None:
        self.integration_id = integration_id
        super().__init__(f"Calendar integration not found: {integration_id}")


class IntegrationInactive(CalendarSyncError):
    def __init__(self, integration_id: UUID, provider: str) -> None:
        self.integration_id = integration_id
        super().__init__(f"{provider} integration is not active")


class EventNotFound(CalendarSyncError):
    def __init__(self, event_id: UUID) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event not found: {event_id}")


_SECRET_PAIR = re.compile(
    r"(?i)\b(client_secret|refresh_token|access_token|password|token)\s*([=:])\s*([^\s,;&]+)"
)
_SECRET_KEYS = r"(?:client_secret|refresh_token|access_token|password|token)"
_SECRET_QUOTED = re.compile(
    r"""(?i)(['"]?""" + _SECRET_KEYS + r"""['"]?\s*:\s*)(['"]).*?\2"""
)
_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")


def sanitize_error_message(message: str) -> str:
    """Redact credential values and clamp *message* for storage and logs."""
    redacted = _SECRET_QUOTED.sub(r'\1"[REDACTED]"', message)
    redacted = _SECRET_PAIR.sub(r"\1\2[REDACTED]", redacted)
    redacted = _BEARER.sub("Bearer [REDACTED]", redacted)
    return " ".join(redacted.split())[:_MAX_ERROR_LENGTH]
