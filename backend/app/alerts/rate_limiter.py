"""
rate_limiter.py — Rate limiter & supersession guard.

One active alert per owner, and no double-fire inside the cool-down
window (30 s by default).

═══════════════════════════════════════════════════════════════════════════
TWO-PHASE GATE
═══════════════════════════════════════════════════════════════════════════

    1. has_recent_active   active alert triggered inside the window?
                           → RateLimited, nothing touched (true double-fire)
    2. supersede_active    cancel every remaining active alert of the owner
                           (resolved_at = now); failures logged, never fatal
    3. has_recent_active   re-checked after supersession; only trips when
                           step 2 failed to cancel a recent alert

Because step 2 runs before the final check, an alert the user forgot to
resolve (older than the window) never blocks a new emergency.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from backend.app.alerts.models import Alert, AlertStatus, utcnow
from backend.app.core.config import settings
from backend.app.core.errors import RateLimitedError
from backend.app.store.alert_store import AlertStore
from backend.app.store.base import StoreError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SupersessionGuard:
    """Pure predicates + the supersession write, over the alert store."""

    def __init__(
        self,
        store: AlertStore,
        *,
        window_seconds: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.window_seconds = (
            window_seconds if window_seconds is not None
            else settings.RATE_LIMIT_WINDOW_SECONDS
        )
        self.clock = clock

    async def has_recent_active(self, owner_id: str, window_seconds: Optional[float] = None) -> bool:
        window = self.window_seconds if window_seconds is None else window_seconds
        since = self.clock() - timedelta(seconds=window)
        recent = await self.store.active_alerts_since(owner_id, since)
        return bool(recent)

    async def ensure_allowed(self, owner_id: str) -> None:
        """Raise RateLimitedError if the owner double-fired inside the window."""
        if await self.has_recent_active(owner_id):
            logger.warning(
                "Alert rate-limited for %s (window %.0fs)", owner_id, self.window_seconds,
                extra={"user_id": owner_id},
            )
            raise RateLimitedError(
                f"Rate limit exceeded. Please wait {self.window_seconds:.0f} seconds.",
                retry_after=int(self.window_seconds),
            )

    async def supersede_active(self, owner_id: str) -> List[Alert]:
        """Cancel every active alert of ``owner_id``; never raises."""
        try:
            cancelled = await self.store.transition_active(
                AlertStatus.CANCELLED, self.clock(), owner_id=owner_id,
            )
        except StoreError as exc:
            logger.warning(
                "Auto-cancel of active alerts failed for %s (non-critical): %s",
                owner_id, exc, extra={"user_id": owner_id},
            )
            return []
        if cancelled:
            logger.info(
                "Auto-cancelled %d old active alert(s) for %s",
                len(cancelled), owner_id, extra={"user_id": owner_id},
            )
        return cancelled
