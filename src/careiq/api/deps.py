"""FastAPI dependencies for the calendar sync API.

Provides:
- ``get_sync_service``: stub replaced at startup by ``wire_dependencies()``
  with the process-wide ``CalendarSyncService``.
- ``get_caller``: caller identity established by the upstream auth layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import FastAPI, Header, HTTPException

from careiq.calendar.service import CalendarSyncService

logger = logging.getLogger(__name__)

CALLER_HEADER = "X-CareIQ-User"

_sync_service: CalendarSyncService | None = None


@dataclass(frozen=True)
class Caller:
    """Authenticated user on whose behalf a request runs."""

    user_id: str


def get_caller(x_careiq_user: str | None = Header(default=None)) -> Caller:
    """Resolve the caller from the header injected by the auth gateway.

    Deployments with a different auth layer override this dependency.
    """
    user_id = (x_careiq_user or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Caller(user_id=user_id)


def get_sync_service() -> CalendarSyncService:
    """Stub replaced at startup by ``wire_dependencies()``."""
    raise HTTPException(status_code=503, detail="Calendar sync service is not available")


def init_sync_service(service: CalendarSyncService) -> None:
    global _sync_service
    _sync_service = service


def current_sync_service() -> CalendarSyncService | None:
    return _sync_service


async def shutdown_sync_service() -> None:
    """Close the shared service (and its HTTP client) if one was initialized."""
    global _sync_service
    if _sync_service is not None:
        await _sync_service.close()
        _sync_service = None


def wire_dependencies(app: FastAPI) -> None:
    """Override the ``get_sync_service`` stub with the initialized singleton."""
    service = _sync_service
    if service is None:
        logger.warning("wire_dependencies called before init_sync_service; skipping")
        return
    app.dependency_overrides[get_sync_service] = lambda: service
