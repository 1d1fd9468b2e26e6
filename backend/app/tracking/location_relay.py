"""
location_relay.py — Periodic position sampling for one tracked party.

Each tracked party (the sender once the alert is active, each responder
once accepted) runs its own relay:

    t = 0         immediate sample, so the first map render has data
    every 20 s    obtain position → append LocationSample

The append goes through the alert lifecycle (access check, 5 s spacing)
and the store publishes it as an INSERT on location_samples filtered by
alert id, the same event channel acceptance uses.

A position fetch that fails, is denied, or has no fix yet is "no sample
this tick"; the loop carries on. Rejected appends (throttled, not yet
accepted) are skipped the same way.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Collection, Dict, Mapping, Optional, TypeVar

from backend.app.alerts.models import LocationSample, utcnow
from backend.app.core.config import settings
from backend.app.core.errors import PanicAlertError, RateLimitedError
from backend.app.core.tasks import TaskScope
from backend.app.store.base import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PositionUnavailableError(Exception):
    """No position could be obtained (denied, timed out, no fix)."""


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    observed_at: Optional[datetime] = None


class PositionProvider(abc.ABC):
    @abc.abstractmethod
    async def get_position(self) -> Optional[Position]:
        """Current position, None or PositionUnavailableError when unknown."""


class LatestFixProvider(PositionProvider):
    """Holds the most recent fix pushed by the device (e.g. over a WebSocket)."""

    def __init__(self, max_age_seconds: Optional[float] = None):
        self.max_age_seconds = max_age_seconds
        self._latest: Optional[Position] = None

    @property
    def has_fix(self) -> bool:
        return self._latest is not None

    def push(self, latitude: float, longitude: float, accuracy: Optional[float] = None) -> None:
        if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
            raise ValueError(f"Coordinates out of range: ({latitude}, {longitude})")
        self._latest = Position(latitude, longitude, accuracy, utcnow())

    async def get_position(self) -> Optional[Position]:
        fix = self._latest
        if fix is None:
            return None
        if self.max_age_seconds is not None and fix.observed_at is not None:
            if (utcnow() - fix.observed_at).total_seconds() > self.max_age_seconds:
                raise PositionUnavailableError("last fix is stale")
        return fix


LocationSink = Callable[..., Awaitable[LocationSample]]


class LocationRelay:
    def __init__(
        self,
        alert_id: str,
        user_id: str,
        provider: PositionProvider,
        sink: LocationSink,
        *,
        interval: Optional[float] = None,
        scope: Optional[TaskScope] = None,
    ):
        self.alert_id = alert_id
        self.user_id = user_id
        self.provider = provider
        self.sink = sink
        self.interval = interval if interval is not None else settings.LOCATION_SAMPLE_INTERVAL_SECONDS
        self.scope = scope or TaskScope(f"relay:{user_id}")
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

        self.samples_sent = 0
        self.ticks_skipped = 0
        self.last_sample: Optional[LocationSample] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._stopped or self.scope.token.cancelled

    def start(self) -> None:
        if self.running or self.cancelled:
            return
        self._task = self.scope.spawn(self._loop(), name=f"relay:{self.user_id}")

    async def stop(self) -> None:
        self._stopped = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._task = None

    async def sample_once(self) -> Optional[LocationSample]:
        """One tick. Never raises for position or append failures."""
        try:
            position = await self.provider.get_position()
        except PositionUnavailableError as exc:
            logger.debug("No position for %s this tick: %s", self.user_id, exc)
            position = None
        except Exception as exc:
            logger.warning("Position provider failed for %s: %s", self.user_id, exc)
            position = None

        if position is None or self.cancelled:
            self.ticks_skipped += 1
            return None

        try:
            sample = await self.sink(
                self.alert_id,
                self.user_id,
                position.latitude,
                position.longitude,
                position.accuracy,
            )
        except RateLimitedError:
            self.ticks_skipped += 1
            return None
        except (PanicAlertError, StoreError) as exc:
            logger.warning(
                "Location append rejected for %s: %s", self.user_id, exc,
                extra={"alert_id": self.alert_id, "user_id": self.user_id},
            )
            self.ticks_skipped += 1
            return None

        self.samples_sent += 1
        self.last_sample = sample
        return sample

    async def _loop(self) -> None:
        while not self.cancelled:
            await self.sample_once()
            await asyncio.sleep(self.interval)


def visible_positions(
    positions: Mapping[str, T],
    accepted_ids: Collection[str],
    owner_id: Optional[str] = None,
) -> Dict[str, T]:
    """Drop positions of anyone not (yet) accepted; the owner is always visible."""
    allowed = set(accepted_ids)
    if owner_id is not None:
        allowed.add(owner_id)
    return {uid: pos for uid, pos in positions.items() if uid in allowed}
