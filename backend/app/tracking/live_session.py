"""
live_session.py — One viewer's live session on one alert.

Composes, under a single TaskScope:
    • an AcceptanceConvergenceEngine (accepted set + positions)
    • a LocationRelay for the viewer, when the viewer is a tracked party:
      the owner always, a responder once their acceptance is visible

The relay starts on the first position fix pushed by the device, so its
t = 0 sample carries real data. ``close()`` is the unmount: the scope's
token flips first, then the relay, polling loop and subscriptions stop.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from backend.app.alerts.lifecycle import AlertLifecycleManager
from backend.app.alerts.models import Alert
from backend.app.core.tasks import TaskScope
from backend.app.realtime.channel import ChannelManager
from backend.app.tracking.convergence import (
    AcceptanceConvergenceEngine,
    AcceptanceSnapshot,
    ConvergenceConfig,
)
from backend.app.tracking.location_relay import LatestFixProvider, LocationRelay

logger = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any]], Awaitable[None]]


class LiveSession:
    def __init__(
        self,
        alert: Alert,
        user_id: str,
        *,
        lifecycle: AlertLifecycleManager,
        channels: ChannelManager,
        send: Sender,
        config: Optional[ConvergenceConfig] = None,
        sample_interval: Optional[float] = None,
    ):
        self.alert = alert
        self.user_id = user_id
        self.lifecycle = lifecycle
        self.send = send
        self.scope = TaskScope(f"live:{alert.id[:8]}:{user_id}")
        self.engine = AcceptanceConvergenceEngine(
            alert,
            lifecycle.store,
            channels,
            config=config,
            scope=self.scope,
            on_update=self._on_snapshot,
            session_id=f"{user_id}:{id(self)}",
        )
        self.provider = LatestFixProvider()
        self.relay = LocationRelay(
            alert.id,
            user_id,
            self.provider,
            lifecycle.save_location,
            interval=sample_interval,
            scope=self.scope,
        )
        self._tracked = user_id == alert.owner_id

    @property
    def tracked(self) -> bool:
        return self._tracked

    async def start(self) -> AcceptanceSnapshot:
        snapshot = await self.engine.start()
        self._update_tracking(snapshot)
        await self._send_snapshot(snapshot)
        logger.info(
            "Live session opened by %s on alert %s", self.user_id, self.alert.id,
            extra={"alert_id": self.alert.id, "user_id": self.user_id},
        )
        return snapshot

    def _update_tracking(self, snapshot: AcceptanceSnapshot) -> None:
        if not self._tracked and self.user_id in snapshot.accepted_ids:
            self._tracked = True
            logger.info(
                "Responder %s accepted, location sharing enabled", self.user_id,
                extra={"alert_id": self.alert.id, "user_id": self.user_id},
            )
            if self.provider.has_fix:
                self.relay.start()

    async def _send_snapshot(self, snapshot: AcceptanceSnapshot) -> None:
        await self.send({"type": "snapshot", "tracked": self._tracked, **snapshot.to_dict()})

    async def _on_snapshot(self, snapshot: AcceptanceSnapshot) -> None:
        if self.scope.closed:
            return
        self._update_tracking(snapshot)
        await self._send_snapshot(snapshot)

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply one client message; returns an optional direct reply."""
        kind = message.get("type")
        if kind == "position":
            try:
                self.provider.push(
                    float(message["latitude"]),
                    float(message["longitude"]),
                    float(message["accuracy"]) if message.get("accuracy") is not None else None,
                )
            except (KeyError, TypeError, ValueError) as exc:
                return {"type": "error", "message": f"Invalid position: {exc}"}
            if self._tracked and not self.relay.running:
                self.relay.start()
            return None
        if kind == "refresh":
            await self.engine.reload_locations()
            return None
        if kind == "ping":
            return {"type": "pong"}
        return {"type": "error", "message": f"Unknown message type: {kind!r}"}

    async def close(self) -> None:
        self.scope.token.cancel("session closed")
        await self.relay.stop()
        await self.engine.stop()
        logger.info(
            "Live session closed by %s on alert %s", self.user_id, self.alert.id,
            extra={"alert_id": self.alert.id, "user_id": self.user_id},
        )
