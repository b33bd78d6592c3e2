"""Calendar integration and sync endpoints.

Every route is scoped to the authenticated caller: integrations and events
owned by another user answer 404, exactly as if they did not exist.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse

from careiq.api.deps import Caller, get_caller, get_sync_service
from careiq.api.middleware import error_response
from careiq.api.models import ApiResponse
from careiq.api.models.calendar import (
    CalDAVConnectRequest,
    EventDeleteResponse,
    IntegrationUpdateRequest,
    IntegrationView,
    SyncRequest,
)
from careiq.calendar.errors import (
    NotFoundError,
    ProviderRequestError,
    UnauthorizedError,
    sanitize_error_message,
)
from careiq.calendar.models import (
    CalendarProviderName,
    ConflictResolution,
    SyncConflict,
    SyncRunResult,
    SyncStatusReport,
)
from careiq.calendar.service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


@router.get("/integrations", response_model=ApiResponse[list[IntegrationView]])
async def list_integrations(
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ApiResponse[list[IntegrationView]]:
    integrations = await service.list_integrations(caller.user_id)
    return ApiResponse[list[IntegrationView]](
        data=[IntegrationView.from_integration(item) for item in integrations]
    )


@router.post(
    "/integrations/caldav",
    status_code=201,
    response_model=ApiResponse[IntegrationView],
)
async def connect_caldav(
    body: CalDAVConnectRequest,
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ApiResponse[IntegrationView] | JSONResponse:
    """Connect a CalDAV calendar after checking the credentials against it."""
    try:
        integration = await service.connect_caldav(
            caller.user_id,
            username=body.username,
            app_password=body.app_password,
            calendar_url=body.calendar_url,
            server_url=body.server_url,
        )
    except (UnauthorizedError, NotFoundError, ProviderRequestError) as exc:
        logger.info("CalDAV connect rejected for user=%s: %s", caller.user_id, exc)
        return error_response(
            400,
            "caldav_rejected",
            "The CalDAV server rejected the credentials or calendar URL: "
            + sanitize_error_message(exc.message),
        )
    return ApiResponse[IntegrationView](data=IntegrationView.from_integration(integration))


@router.patch("/integrations/{integration_id}", response_model=ApiResponse[IntegrationView])
async def update_integration(
    integration_id: UUID,
    body: IntegrationUpdateRequest,
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ApiResponse[IntegrationView]:
    integration = await service.update_integration(
        integration_id,
        user_id=caller.user_id,
        is_active=body.is_active,
        sync_enabled=body.sync_enabled,
        calendar_id=body.calendar_id,
    )
    return ApiResponse[IntegrationView](data=IntegrationView.from_integration(integration))


@router.delete("/integrations/{integration_id}", status_code=204)
async def disconnect_integration(
    integration_id: UUID,
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> Response:
    await service.disconnect(integration_id, user_id=caller.user_id)
    logger.info("Calendar integration disconnected: id=%s user=%s", integration_id, caller.user_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post(
    "/integrations/{integration_id}/sync",
    response_model=ApiResponse[SyncRunResult],
)
async def sync_integration(
    integration_id: UUID,
    body: SyncRequest | None = None,
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ApiResponse[SyncRunResult]:
    """Run a manual sync and return once it has finished.

    A run that fails after it started still answers 200; the outcome is in
    ``data.success`` and ``data.error``.
    """
    request = body or SyncRequest()
    result = await service.sync(
        integration_id,
        request.direction,
        user_id=caller.user_id,
        target_calendar_id=request.target_calendar_id,
        calendar_type_id=request.calendar_type_id,
    )
    return ApiResponse[SyncRunResult](data=result)


@router.get(
    "/integrations/{integration_id}/status",
    response_model=ApiResponse[SyncStatusReport],
)
async def integration_status(
    integration_id: UUID,
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ApiResponse[SyncStatusReport]:
    report = await service.status(integration_id, user_id=caller.user_id)
    return ApiResponse[SyncStatusReport](data=report)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.delete("/events/{event_id}", response_model=ApiResponse[EventDeleteResponse])
async def delete_event(
    event_id: UUID,
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ApiResponse[EventDeleteResponse]:
    """Delete an event everywhere: remote copies first, then the local row."""
    removed = await service.delete_event(caller.user_id, event_id)
    return ApiResponse[EventDeleteResponse](
        data=EventDeleteResponse(event_id=event_id, removed_from=removed)
    )


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


@router.get("/conflicts", response_model=ApiResponse[list[SyncConflict]])
async def list_conflicts(
    status: ConflictResolution | None = None,
    provider: CalendarProviderName | None = None,
    limit: int = Query(50, ge=1, le=200, description="Maximum conflicts returned"),
    caller: Caller = Depends(get_caller),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ApiResponse[list[SyncConflict]]:
    """Local edits that a pull overwrote, with both versions, newest first."""
    conflicts = await service.list_conflicts(
        caller.user_id, resolution=status, provider=provider, limit=limit
    )
    return ApiResponse[list[SyncConflict]](data=conflicts)
