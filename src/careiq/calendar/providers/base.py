"""Provider client facade shared by every calendar provider.

Each concrete client speaks one provider's REST or CalDAV dialect and
exposes the same five operations.  Clients never retry and never hold a
credential: the orchestrator passes the run's ``AccessCredential`` into
every call and owns the retry policy.
"""

from __future__ import annotations

import abc
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from careiq.calendar.errors import (
    NotFoundError,
    ProviderRequestError,
    RateLimitedError,
    TokenRefreshError,
    TransientNetworkError,
    UnauthorizedError,
    sanitize_error_message,
)
from careiq.calendar.models import (
    AccessCredential,
    CalendarProviderName,
    RemoteEvent,
    TimeRange,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free error description from *response*."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return sanitize_error_message(description)
        if isinstance(error_payload, str) and error_payload.strip():
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    """Translate a non-2xx *response* into the provider error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return

    message = safe_error_message(response)
    if status in (401, 403):
        raise UnauthorizedError(provider, message, status_code=status)
    if status in (404, 410):
        raise NotFoundError(provider, message, status_code=status)
    if status == 429:
        raise RateLimitedError(
            provider,
            message,
            status_code=status,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        raise TransientNetworkError(provider, message, status_code=status)
    raise ProviderRequestError(provider, message, status_code=status)


def coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


class CalendarProviderClient(abc.ABC):
    """Uniform capability interface over one external calendar provider."""

    provider: CalendarProviderName
    # Calendar used when neither the run nor the integration names one.
    default_calendar_id: str | None = None

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @abc.abstractmethod
    async def list_events(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        time_range: TimeRange,
        max_results: int = 500,
    ) -> list[RemoteEvent]:
        """Return the remote events inside *time_range*."""
        ...

    @abc.abstractmethod
    async def create_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        event: RemoteEvent,
    ) -> RemoteEvent:
        """Create *event* remotely and return it with its assigned remote id."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        remote_id: str,
        event: RemoteEvent,
    ) -> RemoteEvent:
        """Overwrite the remote event *remote_id* with *event*."""
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        credential: AccessCredential,
        *,
        calendar_id: str | None,
        remote_id: str,
    ) -> None:
        """Delete the remote event; raises ``NotFoundError`` when already gone."""
        ...

    @abc.abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> AccessCredential:
        """Exchange *refresh_token* for a fresh access credential."""
        ...

    async def verify(self, credential: AccessCredential, *, calendar_id: str | None) -> None:
        """Confirm *credential* can read *calendar_id*; raises a ``ProviderError`` if not."""
        now = datetime.now(UTC)
        await self.list_events(
            credential,
            calendar_id=calendar_id,
            time_range=TimeRange(start=now, end=now + timedelta(days=1)),
            max_results=1,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue one request; transport failures become ``TransientNetworkError``."""
        try:
            return await self._http_client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(
                str(self.provider), sanitize_error_message(f"{type(exc).__name__}: {exc}")
            ) from exc

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue one request and raise for any non-2xx status."""
        response = await self._request(method, url, headers=headers, **kwargs)
        raise_for_provider_status(str(self.provider), response)
        return response

    async def shutdown(self) -> None:
        """Release the HTTP client when this provider created it."""
        if self._owns_http_client:
            await self._http_client.aclose()


class OAuthProviderClient(CalendarProviderClient):
    """Provider authenticated with OAuth 2.0 bearer tokens."""

    token_url: str
    authorize_url: str
    scopes: tuple[str, ...]

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client, timeout=timeout)
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._redirect_uri)

    def _bearer_headers(self, credential: AccessCredential) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential.token}", "Accept": "application/json"}

    def _authorization_params(self, state: str) -> dict[str, str]:
        return {
            "client_id": self._client_id or "",
            "redirect_uri": self._redirect_uri or "",
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }

    def authorization_url(self, state: str) -> str:
        """Build the consent URL a user is redirected to."""
        return str(httpx.URL(self.authorize_url, params=self._authorization_params(state)))

    async def exchange_code(self, code: str) -> AccessCredential:
        """Exchange an authorization code for tokens."""
        return await self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._redirect_uri or "",
            },
            operation="authorization code exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> AccessCredential:
        credential = await self._request_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            operation="token refresh",
        )
        if credential.refresh_token is None:
            # Providers only return a refresh token when they rotate it.
            credential = credential.model_copy(update={"refresh_token": refresh_token})
        return credential

    def _token_request_extra(self) -> dict[str, str]:
        return {}

    async def _request_token(self, data: dict[str, str], *, operation: str) -> AccessCredential:
        if not self.configured:
            raise TokenRefreshError(f"{self.provider} OAuth app credentials are not configured")

        form = {
            **data,
            "client_id": self._client_id or "",
            "client_secret": self._client_secret or "",
            **self._token_request_extra(),
        }
        try:
            response = await self._http_client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientNetworkError(
                str(self.provider),
                sanitize_error_message(f"{operation} request failed: {exc}"),
            ) from exc

        if response.status_code >= 500:
            raise TransientNetworkError(
                str(self.provider),
                f"{operation} failed: {safe_error_message(response)}",
                status_code=response.status_code,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                f"{self.provider} {operation} failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                f"{self.provider} token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                f"{self.provider} token response is missing a non-empty access_token"
            )

        expires_in = coerce_expires_in_seconds(payload.get("expires_in"))
        refresh_token = payload.get("refresh_token")
        return AccessCredential(
            token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            refresh_token=(
                refresh_token.strip()
                if isinstance(refresh_token, str) and refresh_token.strip()
                else None
            ),
        )

