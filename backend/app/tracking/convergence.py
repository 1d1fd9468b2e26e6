"""
convergence.py — Acceptance convergence engine.

Keeps one device's view of an active alert (who accepted, where everyone
is) converged with the store, over an event channel that is allowed to drop
events, error out, or never confirm the subscription.

═══════════════════════════════════════════════════════════════════════════
DUAL-CHANNEL PROTOCOL
═══════════════════════════════════════════════════════════════════════════

    event channel   responses UPDATE/INSERT filtered by alert_id
    polling loop    accepted set every 3 s (1 s while enhanced)

    IDLE ──start──▶ SUBSCRIBED ──event──▶ EVENT_RECEIVED ──┐
                        ▲    └──poll diff──▶ POLL_DETECTED ─┤
                        │                                   ▼
                        └──────────────────────── RELOADING_LOCATIONS

    channel error / closed / timed out → one immediate location reload,
    state POLLING; polling remains the backstop and, while the channel is
    down, every poll tick also refreshes positions.

For each newly accepted contact id (set difference against the last
snapshot):
    (a) optimistic overlay: counted immediately, discarded as soon as a
        snapshot fetched after the observation arrives
    (b) location reloads at 0 s, 1 s, 2 s and 5 s (the responder's first
        sample may not be persisted yet)
    (c) enhanced polling (1 s) for 10 s, then back to 3 s

The same id seen twice inside 15 s (event + poll) schedules (b) once.
Ids outside the alert's contacts_notified are ignored.

Accepted set and positions are only ever replaced by a freshly fetched
snapshot; fetch failures keep the last-known-good snapshot. Snapshots are
sequence-numbered so an older fetch finishing late never overwrites a
newer one.

Every callback checks the session CancelToken before touching state; stop()
flips it synchronously before awaiting any teardown.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from backend.app.alerts.models import LOCATION_SAMPLES, RESPONSES, Alert, LocationSample
from backend.app.core.config import settings
from backend.app.core.tasks import TaskScope
from backend.app.realtime.channel import ChannelManager, Subscription
from backend.app.realtime.events import ChannelStatus, EventKind, RowChange
from backend.app.store.alert_store import AlertStore
from backend.app.store.base import StoreError, eq
from backend.app.tracking.location_relay import visible_positions

logger = logging.getLogger(__name__)


class ConvergenceState(str, Enum):
    IDLE                = "IDLE"
    SUBSCRIBED          = "SUBSCRIBED"
    EVENT_RECEIVED      = "EVENT_RECEIVED"
    POLL_DETECTED       = "POLL_DETECTED"
    RELOADING_LOCATIONS = "RELOADING_LOCATIONS"
    POLLING             = "POLLING"   # event channel down, polling only
    STOPPED             = "STOPPED"


@dataclass(frozen=True)
class ConvergenceConfig:
    poll_interval: float = 3.0
    enhanced_poll_interval: float = 1.0
    enhanced_duration: float = 10.0
    dedup_window: float = 15.0
    reload_offsets: Tuple[float, ...] = (0.0, 1.0, 2.0, 5.0)
    location_limit: int = 100

    @classmethod
    def from_settings(cls) -> "ConvergenceConfig":
        return cls(
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            enhanced_poll_interval=settings.ENHANCED_POLL_INTERVAL_SECONDS,
            enhanced_duration=settings.ENHANCED_POLL_DURATION_SECONDS,
            dedup_window=settings.ACCEPT_DEDUP_WINDOW_SECONDS,
            reload_offsets=tuple(settings.LOCATION_RELOAD_OFFSETS_SECONDS),
            location_limit=settings.RESPONDER_LOCATION_LIMIT,
        )


@dataclass(frozen=True)
class AcceptanceSnapshot:
    """What a live view renders. Immutable; a new one per change."""
    alert_id: str
    state: ConvergenceState
    accepted_ids: Tuple[str, ...]
    optimistic_ids: Tuple[str, ...]
    positions: Dict[str, LocationSample] = field(default_factory=dict)
    owner_position: Optional[LocationSample] = None
    channel_status: Optional[ChannelStatus] = None

    @property
    def accepted_count(self) -> int:
        return len(set(self.accepted_ids) | set(self.optimistic_ids))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "state": self.state.value,
            "accepted_ids": list(self.accepted_ids),
            "optimistic_ids": list(self.optimistic_ids),
            "accepted_count": self.accepted_count,
            "positions": {uid: s.to_dict() for uid, s in self.positions.items()},
            "owner_position": self.owner_position.to_dict() if self.owner_position else None,
            "channel_status": self.channel_status.value if self.channel_status else None,
        }


UpdateCallback = Callable[[AcceptanceSnapshot], Union[None, Awaitable[None]]]


class AcceptanceConvergenceEngine:
    """One engine per (device session, alert)."""

    def __init__(
        self,
        alert: Alert,
        store: AlertStore,
        channels: ChannelManager,
        *,
        config: Optional[ConvergenceConfig] = None,
        scope: Optional[TaskScope] = None,
        clock: Callable[[], float] = time.monotonic,
        on_update: Optional[UpdateCallback] = None,
        session_id: str = "",
    ):
        self.alert_id = alert.id
        self.owner_id = alert.owner_id
        self.notified: FrozenSet[str] = frozenset(alert.contacts_notified)
        self.store = store
        self.channels = channels
        self.config = config or ConvergenceConfig.from_settings()
        self.scope = scope or TaskScope(f"convergence:{alert.id[:8]}")
        self.clock = clock
        self.on_update = on_update
        self._key = f"responses:{alert.id}:{session_id or id(self)}"
        self._loc_key = f"locations:{alert.id}:{session_id or id(self)}"

        self.state = ConvergenceState.IDLE
        self.channel_status: Optional[ChannelStatus] = None
        self._accepted: Tuple[str, ...] = ()
        self._optimistic: Dict[str, float] = {}
        self._positions: Dict[str, LocationSample] = {}
        self._owner_position: Optional[LocationSample] = None
        self._last_seen: Dict[str, float] = {}
        self._enhanced_until = 0.0
        self._poll_wake = asyncio.Event()
        self._reload_seq = 0
        self._applied_seq = 0
        self._subscriptions: List[Subscription] = []

        # Counters for diagnostics / tests
        self.schedules_triggered = 0
        self.reloads_completed = 0
        self.fallback_reloads = 0
        self.polls = 0
        self.ignored_ids = 0

    # ═══════════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════════

    @property
    def token(self):
        return self.scope.token

    @property
    def cancelled(self) -> bool:
        return self.scope.token.cancelled

    async def start(self) -> AcceptanceSnapshot:
        """Load the baseline snapshot, subscribe, and start polling."""
        await self.reload_locations()
        if self.cancelled:
            return self.snapshot()

        self._subscriptions.append(
            await self.channels.subscribe(
                RESPONSES,
                [eq("alert_id", self.alert_id)],
                EventKind.ANY,
                self._on_response_change,
                on_status=self._on_channel_status,
                channel=self._key,
            )
        )
        self._subscriptions.append(
            await self.channels.subscribe(
                LOCATION_SAMPLES,
                [eq("alert_id", self.alert_id)],
                EventKind.INSERT,
                self._on_location_insert,
                channel=self._loc_key,
            )
        )
        self.scope.spawn(self._poll_loop(), name="poll")
        logger.info(
            "Convergence engine started for alert %s (%d notified)",
            self.alert_id, len(self.notified), extra={"alert_id": self.alert_id},
        )
        return self.snapshot()

    async def stop(self) -> None:
        """Unmount: flip the token first, then tear down subscriptions and tasks."""
        self.scope.token.cancel("stopped")
        self.state = ConvergenceState.STOPPED
        for sub in self._subscriptions:
            await self.channels.unsubscribe(sub.key)
        self._subscriptions.clear()
        await self.scope.close("stopped")
        logger.info("Convergence engine stopped for alert %s", self.alert_id, extra={"alert_id": self.alert_id})

    # ═══════════════════════════════════════════════════════════════════
    # Snapshot
    # ═══════════════════════════════════════════════════════════════════

    @property
    def accepted_ids(self) -> Tuple[str, ...]:
        return self._accepted

    @property
    def accepted_count(self) -> int:
        return len(set(self._accepted) | set(self._optimistic))

    @property
    def positions(self) -> Dict[str, LocationSample]:
        return dict(self._positions)

    @property
    def enhanced(self) -> bool:
        return self.clock() < self._enhanced_until

    def current_poll_interval(self) -> float:
        return self.config.enhanced_poll_interval if self.enhanced else self.config.poll_interval

    def snapshot(self) -> AcceptanceSnapshot:
        return AcceptanceSnapshot(
            alert_id=self.alert_id,
            state=self.state,
            accepted_ids=self._accepted,
            optimistic_ids=tuple(uid for uid in self._optimistic if uid not in self._accepted),
            positions=dict(self._positions),
            owner_position=self._owner_position,
            channel_status=self.channel_status,
        )

    async def _emit(self) -> None:
        if self.on_update is None or self.cancelled:
            return
        try:
            result = self.on_update(self.snapshot())
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("Snapshot listener failed for alert %s: %s", self.alert_id, exc)

    def _settle_state(self) -> None:
        if self.cancelled:
            return
        if self.channel_status == ChannelStatus.SUBSCRIBED:
            self.state = ConvergenceState.SUBSCRIBED
        elif self.channel_status in (None, ChannelStatus.CONNECTING):
            self.state = ConvergenceState.IDLE
        else:
            self.state = ConvergenceState.POLLING

    # ═══════════════════════════════════════════════════════════════════
    # Fetching
    # ═══════════════════════════════════════════════════════════════════

    async def _fetch_accepted_ids(self) -> List[str]:
        responses = await self.store.accepted_responses(self.alert_id)
        return [r.contact_user_id for r in responses if r.contact_user_id in self.notified]

    def _apply_accepted(self, ids: Sequence[str], fetch_started: float) -> None:
        """Replace the accepted set; drop overlay entries the fetch already covers."""
        self._accepted = tuple(ids)
        self._optimistic = {
            uid: seen for uid, seen in self._optimistic.items()
            if seen > fetch_started and uid not in self._accepted
        }

    async def _latest_per_responder(self, ids: Sequence[str]) -> Dict[str, LocationSample]:
        """Newest sample per accepted responder; the owner is fetched separately."""
        latest: Dict[str, LocationSample] = {}
        if not ids:
            return latest
        samples = await self.store.locations_for(
            self.alert_id, list(ids), limit=self.config.location_limit,
        )
        for sample in samples:  # newest first
            latest.setdefault(sample.user_id, sample)
        # a chatty responder can push a quieter one out of the limited page
        for uid in ids:
            if uid not in latest:
                sample = await self.store.latest_location(self.alert_id, uid)
                if sample is not None:
                    latest[uid] = sample
        return latest

    async def reload_locations(self) -> bool:
        """Accepted ids → their samples → replace the positions map. False on failure."""
        if self.cancelled:
            return False
        self._reload_seq += 1
        seq = self._reload_seq
        started = self.clock()
        previous = self.state
        self.state = ConvergenceState.RELOADING_LOCATIONS
        try:
            ids = await self._fetch_accepted_ids()
            latest = await self._latest_per_responder(ids)
            owner_position = await self.store.latest_location(self.alert_id, self.owner_id)
        except StoreError as exc:
            logger.warning(
                "Location reload failed for alert %s, keeping last snapshot: %s",
                self.alert_id, exc, extra={"alert_id": self.alert_id},
            )
            if not self.cancelled:
                self.state = previous
            return False

        if self.cancelled:
            return False
        if seq < self._applied_seq:
            # A newer reload already landed
            self._settle_state()
            return True
        self._applied_seq = seq

        self._owner_position = owner_position
        self._positions = visible_positions(latest, ids)
        self._apply_accepted(ids, started)
        self.reloads_completed += 1
        self._settle_state()
        await self._emit()
        return True

    # ═══════════════════════════════════════════════════════════════════
    # Acceptance handling
    # ═══════════════════════════════════════════════════════════════════

    def _enter_enhanced(self) -> None:
        was_enhanced = self.enhanced
        self._enhanced_until = self.clock() + self.config.enhanced_duration
        if not was_enhanced:
            logger.debug("Enhanced polling on for alert %s", self.alert_id)
        self._poll_wake.set()

    def _observe(self, ids: Sequence[str], source: str) -> List[str]:
        """Dedup + filter; schedules reloads and enhanced polling for fresh ids."""
        now = self.clock()
        fresh: List[str] = []
        for uid in ids:
            if uid not in self.notified:
                self.ignored_ids += 1
                logger.warning(
                    "Ignoring acceptance from %s: not notified for alert %s",
                    uid, self.alert_id, extra={"alert_id": self.alert_id, "contact_id": uid},
                )
                continue
            last = self._last_seen.get(uid)
            self._last_seen[uid] = now if last is None or now - last >= self.config.dedup_window else last
            if last is not None and now - last < self.config.dedup_window:
                continue
            fresh.append(uid)

        for uid in fresh:
            self.schedules_triggered += 1
            logger.info(
                "Responder %s accepted alert %s (via %s)", uid, self.alert_id, source,
                extra={"alert_id": self.alert_id, "contact_id": uid},
            )
            for offset in self.config.reload_offsets:
                self.scope.call_later(offset, self.reload_locations, name=f"reload:{uid[:8]}@{offset:g}s")
        if fresh:
            self._enter_enhanced()
        return fresh

    async def _on_response_change(self, change: RowChange) -> None:
        if self.cancelled:
            return
        row = change.after or {}
        uid = row.get("contact_user_id")
        if not uid or row.get("acknowledged_at") is None or row.get("declined_at") is not None:
            return
        if uid in self._accepted or uid in self._optimistic:
            return
        self.state = ConvergenceState.EVENT_RECEIVED
        fresh = self._observe([uid], "event")
        for accepted in fresh:
            self._optimistic[accepted] = self.clock()
        if fresh:
            await self._emit()
        self._settle_state()

    async def _on_location_insert(self, change: RowChange) -> None:
        if self.cancelled:
            return
        row = change.after or {}
        uid = row.get("user_id")
        # Positions from ids outside the visible set are never shown
        if uid != self.owner_id and uid not in self._accepted and uid not in self._optimistic:
            return
        self.scope.spawn(self.reload_locations(), name="reload:location-insert")

    async def _on_channel_status(self, status: ChannelStatus, error: Optional[BaseException]) -> None:
        if self.cancelled:
            return
        self.channel_status = status
        if status == ChannelStatus.SUBSCRIBED:
            self._settle_state()
        elif status.is_failure:
            self.fallback_reloads += 1
            self.state = ConvergenceState.POLLING
            self.scope.spawn(self.reload_locations(), name="reload:fallback")
        elif status == ChannelStatus.GAVE_UP:
            self.state = ConvergenceState.POLLING
            logger.warning(
                "Event channel gave up for alert %s, polling only", self.alert_id,
                extra={"alert_id": self.alert_id},
            )
        await self._emit()

    # ═══════════════════════════════════════════════════════════════════
    # Polling
    # ═══════════════════════════════════════════════════════════════════

    async def poll_once(self) -> List[str]:
        """One poll tick; returns the newly detected ids."""
        started = self.clock()
        try:
            ids = await self._fetch_accepted_ids()
        except StoreError as exc:
            logger.debug("Poll failed for alert %s: %s", self.alert_id, exc)
            return []
        if self.cancelled:
            return []
        self.polls += 1

        known = set(self._accepted)
        new_ids = [uid for uid in ids if uid not in known]
        fresh: List[str] = []
        if new_ids or set(ids) != known:
            self.state = ConvergenceState.POLL_DETECTED
            fresh = self._observe(new_ids, "poll")
            self._apply_accepted(ids, started)
            await self._emit()
            self._settle_state()
        else:
            self._apply_accepted(ids, started)

        if self.channel_status != ChannelStatus.SUBSCRIBED:
            await self.reload_locations()
        return fresh

    async def _poll_loop(self) -> None:
        while not self.cancelled:
            self._poll_wake.clear()
            try:
                await asyncio.wait_for(self._poll_wake.wait(), timeout=self.current_poll_interval())
            except asyncio.TimeoutError:
                pass
            if self.cancelled:
                return
            await self.poll_once()
