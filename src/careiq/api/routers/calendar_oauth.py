"""OAuth connect endpoints for Google Calendar and Microsoft Outlook.

The flow:
  1. GET /api/calendar/oauth/{provider}/authorize
     - Issues a one-time CSRF state bound to the caller and provider.
     - Redirects to the provider consent screen, or returns the URL as JSON
       when ``?redirect=false``.

  2. GET /api/calendar/oauth/{provider}/callback
     - Validates and consumes the state.
     - Exchanges the authorization code and stores the credentials on the
       caller's integration for that provider.
     - Redirects to the dashboard when one is configured, or returns a JSON
       payload.

Security notes:
  - State tokens are one-time-use and expire after 10 minutes.
  - Tokens and client secrets are never echoed back or logged.
  - Provider error codes are mapped to fixed messages.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from careiq.api.deps import Caller, get_caller, get_sync_service
from careiq.api.models import ApiResponse
from careiq.api.models.calendar import (
    IntegrationView,
    OAuthCallbackError,
    OAuthCallbackSuccess,
    OAuthStartResponse,
)
from careiq.calendar.errors import InvalidOAuthState, ProviderError, TokenRefreshError
from careiq.calendar.models import CalendarProviderName
from careiq.calendar.service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar/oauth", tags=["calendar-oauth"])


def _parse_provider(provider: str) -> CalendarProviderName:
    try:
        return CalendarProviderName(provider)
    except ValueError:
        raise ValueError(f"Unknown calendar provider: {provider!r}") from None


def _callback_error(
    error_code: str, message: str, provider: str, dashboard_url: str | None
) -> Response:
    if dashboard_url:
        return RedirectResponse(
            url=f"{dashboard_url}?oauth_error={error_code}&provider={provider}",
            status_code=302,
        )
    payload = OAuthCallbackError(error_code=error_code, message=message, provider=provider)
    return JSONResponse(status_code=400, content=payload.model_dump())


# ---------------------------------------------------------------------------
# Authorize endpoint
# ---------------------------------------------------------------------------


@router.get(
    "/{provider}/authorize",
    responses={
        200: {"model": ApiResponse[OAuthStartResponse], "description": "redirect=false"},
        302: {"description": "Redirect to the provider consent screen"},
    },
)
async def oauth_authorize(
    provider: str,
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the provider. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> Response:
    """Begin the OAuth flow for *provider* on behalf of the caller."""
    name = _parse_provider(provider)
    authorization_url = service.authorization_url(caller.user_id, name)
    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    body = ApiResponse[OAuthStartResponse](
        data=OAuthStartResponse(authorization_url=authorization_url, provider=name)
    )
    return JSONResponse(content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Callback endpoint
# ---------------------------------------------------------------------------


@router.get("/{provider}/callback")
async def oauth_callback(
    request: Request,
    provider: str,
    code: str | None = Query(default=None, description="Authorization code."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from the provider."),
    error_description: str | None = Query(default=None),
    service: CalendarSyncService = Depends(get_sync_service),
) -> Response:
    """Finish the OAuth flow and store the credentials on the integration.

    The caller is identified by the state issued at authorize time, not by
    the request, since the browser arrives here straight from the provider.
    """
    dashboard_url = getattr(request.app.state, "dashboard_url", None)

    # --- Provider-side errors (e.g. the user denied consent) ---
    if error:
        logger.warning("%s OAuth provider error: %s", provider, error)
        if error_description:
            logger.debug("%s OAuth provider error_description: %s", provider, error_description)
        # Burn the state so it cannot be replayed after a cancelled flow.
        if state:
            service.oauth_states.consume(state)
        return _callback_error(
            "provider_error", _sanitize_provider_error(error), provider, dashboard_url
        )

    if not code:
        return _callback_error(
            "missing_code",
            "Authorization code is missing from the callback.",
            provider,
            dashboard_url,
        )
    if not state:
        return _callback_error(
            "missing_state",
            "State parameter is missing from the callback. Possible CSRF attempt.",
            provider,
            dashboard_url,
        )

    try:
        integration = await service.complete_oauth(state, code, provider=_parse_provider(provider))
    except InvalidOAuthState:
        logger.warning("OAuth callback received invalid or expired state token")
        return _callback_error(
            "invalid_state",
            "State parameter is invalid or expired. Please restart the OAuth flow.",
            provider,
            dashboard_url,
        )
    except (TokenRefreshError, ProviderError) as exc:
        logger.warning("%s OAuth code exchange failed: %s", provider, exc)
        return _callback_error(
            "token_exchange_failed",
            "Failed to exchange the authorization code. "
            "The code may have expired or already been used. Please restart the OAuth flow.",
            provider,
            dashboard_url,
        )

    logger.info(
        "Calendar OAuth connect complete: provider=%s user=%s integration=%s",
        integration.provider,
        integration.user_id,
        integration.id,
    )
    if dashboard_url:
        return RedirectResponse(
            url=f"{dashboard_url}?oauth_success=true&provider={integration.provider}",
            status_code=302,
        )
    payload = OAuthCallbackSuccess(
        provider=integration.provider,
        integration=IntegrationView.from_integration(integration),
    )
    return JSONResponse(content=payload.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Error sanitization
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "unauthorized_client": "This application is not authorized for calendar access. "
    "Check the OAuth app configuration.",
    "unsupported_response_type": "Unsupported response type. Please restart the flow.",
    "invalid_scope": "One or more requested OAuth scopes are invalid or not permitted.",
    "consent_required": "Calendar access requires consent. Please restart the flow.",
    "server_error": "The provider encountered an internal error. Please try again.",
    "temporarily_unavailable": "The provider is temporarily unavailable. Please try again later.",
}


def _sanitize_provider_error(error: str) -> str:
    """Convert a provider error code into a safe, actionable user message.

    Unknown error codes are replaced with a generic message to avoid
    leaking internal provider state.
    """
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "The OAuth authorization failed. Please restart the flow.",
    )
