"""One-time CSRF state tokens for the OAuth connect flow.

Each state is bound to the user and provider that started the flow and
expires after ten minutes.  The store is process-local: running several
API worker processes requires sticky routing for the callback.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from careiq.calendar.models import CalendarProviderName

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class PendingAuthorization:
    user_id: str
    provider: CalendarProviderName
    expires_at: float


class OAuthStateStore:
    """Issues and consumes OAuth ``state`` values."""

    def __init__(
        self,
        *,
        ttl_seconds: float = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}

    def issue(self, user_id: str, provider: CalendarProviderName) -> str:
        """Generate a state token for *user_id* connecting *provider*."""
        self._evict_expired()
        state = secrets.token_urlsafe(32)
        self._pending[state] = PendingAuthorization(
            user_id=user_id,
            provider=provider,
            expires_at=self._clock() + self._ttl,
        )
        return state

    def consume(self, state: str) -> PendingAuthorization | None:
        """Validate and remove *state*; returns ``None`` if unknown or expired."""
        self._evict_expired()
        pending = self._pending.pop(state, None)
        if pending is None or self._clock() >= pending.expires_at:
            return None
        return pending

    def clear(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, item in self._pending.items() if now >= item.expires_at]
        for key in expired:
            del self._pending[key]
