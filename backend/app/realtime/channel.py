"""
ChannelManager — filtered row-change subscriptions with self-healing
reconnection.

One manager is created per process (app lifespan) or per session and
passed to whoever needs it; it owns the registry of live subscriptions,
keyed by channel name, and tears them all down on ``close()``.

═══════════════════════════════════════════════════════════════════════════
SUBSCRIPTION STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    CONNECTING ──open ok──▶ SUBSCRIBED ──stream error──▶ CHANNEL_ERROR ─┐
        │                       │                                       │
        │ open timeout          └──stream ended──▶ CLOSED ──────────────┤
        ▼                                                               │
    TIMED_OUT ───────────────────────────────────────────────────────────┤
                                                                        │
        ┌──────────── backoff: base × 2^(n-1), capped ◀─────────────────┘
        ▼
    CONNECTING  ...  after max_attempts consecutive failures ──▶ GAVE_UP

Defaults: 1 s base, doubling to a 30 s ceiling, 5 attempts. A successful
SUBSCRIBED resets the attempt counter. Every transition is reported to the
subscriber's ``on_status`` callback so it can fall back to polling.

Delivery is at-most-once: a failed publish is logged and dropped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from backend.app.core.config import settings
from backend.app.core.tasks import TaskScope
from backend.app.realtime.events import ChannelStatus, EventKind, RowChange
from backend.app.realtime.transport import ChannelError, Transport, TransportStream
from backend.app.store.base import Filter, contains, matches_all

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[RowChange], Union[None, Awaitable[None]]]
StatusCallback = Callable[[ChannelStatus, Optional[BaseException]], Union[None, Awaitable[None]]]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


# ═══════════════════════════════════════════════════════════════════════════
# Reconnect Policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    @classmethod
    def from_settings(cls) -> "ReconnectPolicy":
        return cls(
            base_delay=settings.RECONNECT_BASE_DELAY_SECONDS,
            max_delay=settings.RECONNECT_MAX_DELAY_SECONDS,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Subscription
# ═══════════════════════════════════════════════════════════════════════════

class Subscription:
    """One filtered feed on one relation; created via ChannelManager.subscribe."""

    def __init__(
        self,
        manager: "ChannelManager",
        key: str,
        table: str,
        filters: Sequence[Filter],
        event_kind: EventKind,
        on_change: ChangeCallback,
        on_status: Optional[StatusCallback],
    ):
        self.manager = manager
        self.key = key
        self.table = table
        self.filters = tuple(filters)
        self.event_kind = event_kind
        self.on_change = on_change
        self.on_status = on_status
        self.status = ChannelStatus.CONNECTING
        self.failures = 0
        self.delivered = 0
        self.closed = False
        self.task: Optional[asyncio.Task] = None
        self.stream: Optional[TransportStream] = None
        self.history: List[ChannelStatus] = []

    def wants(self, change: RowChange) -> bool:
        return (
            change.table == self.table
            and self.event_kind.accepts(change.kind)
            and matches_all(change.row, self.filters)
        )

    async def _set_status(self, status: ChannelStatus, error: Optional[BaseException] = None) -> None:
        self.status = status
        self.history.append(status)
        level = logging.WARNING if status.is_failure or status == ChannelStatus.GAVE_UP else logging.DEBUG
        logger.log(
            level, "Channel %s → %s%s", self.key, status.value,
            f" ({error})" if error else "",
            extra={"channel": self.key, "channel_state": status.value},
        )
        if self.on_status is not None and not self.closed:
            try:
                await _maybe_await(self.on_status(status, error))
            except Exception as exc:
                logger.error("Status callback for %s failed: %s", self.key, exc)

    async def _dispatch(self, change: RowChange) -> None:
        if self.closed or not self.wants(change):
            return
        self.delivered += 1
        try:
            await _maybe_await(self.on_change(change))
        except Exception as exc:
            logger.error(
                "Change callback for %s failed: %s", self.key, exc,
                extra={"channel": self.key},
            )

    async def run(self) -> None:
        policy = self.manager.policy
        transport = self.manager.transport
        while not self.closed:
            await self._set_status(ChannelStatus.CONNECTING)
            try:
                stream = await asyncio.wait_for(
                    transport.open(self.table), timeout=self.manager.subscribe_timeout,
                )
            except asyncio.TimeoutError:
                await self._set_status(ChannelStatus.TIMED_OUT)
            except ChannelError as exc:
                await self._set_status(ChannelStatus.CHANNEL_ERROR, exc)
            else:
                # wait_for can hand back a finished open() even though the
                # task was cancelled, so closed has to be checked here
                if self.closed:
                    await stream.close()
                    return
                self.stream = stream
                self.failures = 0
                await self._set_status(ChannelStatus.SUBSCRIBED)
                try:
                    async for change in stream:
                        await self._dispatch(change)
                    if not self.closed:
                        await self._set_status(ChannelStatus.CLOSED)
                except ChannelError as exc:
                    await self._set_status(ChannelStatus.CHANNEL_ERROR, exc)
                finally:
                    self.stream = None
                    await stream.close()

            if self.closed:
                return
            self.failures += 1
            if self.failures > policy.max_attempts:
                await self._set_status(ChannelStatus.GAVE_UP)
                return
            delay = policy.delay_for(self.failures)
            logger.info(
                "Reconnecting %s in %.2fs (attempt %d/%d)",
                self.key, delay, self.failures, policy.max_attempts,
                extra={"channel": self.key, "attempt": self.failures},
            )
            await asyncio.sleep(delay)

    async def unsubscribe(self) -> None:
        await self.manager.unsubscribe(self.key)


# ═══════════════════════════════════════════════════════════════════════════
# Manager
# ═══════════════════════════════════════════════════════════════════════════

class ChannelManager:
    """Registry of live subscriptions over one transport."""

    def __init__(
        self,
        transport: Transport,
        *,
        policy: Optional[ReconnectPolicy] = None,
        subscribe_timeout: Optional[float] = None,
        name: str = "channels",
    ):
        self.transport = transport
        self.policy = policy or ReconnectPolicy.from_settings()
        self.subscribe_timeout = (
            subscribe_timeout if subscribe_timeout is not None
            else settings.SUBSCRIBE_TIMEOUT_SECONDS
        )
        self._scope = TaskScope(name)
        self._subscriptions: Dict[str, Subscription] = {}

    # ── Publishing ──

    async def publish(self, change: RowChange) -> bool:
        """Best-effort publish; returns False when the transport dropped it."""
        try:
            await self.transport.publish(change)
            return True
        except ChannelError as exc:
            logger.warning(
                "Publish of %s on %s dropped: %s", change.kind.value, change.table, exc,
            )
            return False

    # ── Subscribing ──

    async def subscribe(
        self,
        table: str,
        filters: Sequence[Filter],
        event_kind: EventKind,
        on_change: ChangeCallback,
        *,
        on_status: Optional[StatusCallback] = None,
        channel: Optional[str] = None,
    ) -> Subscription:
        """
        Start a filtered feed. A live subscription under the same channel
        name is torn down and replaced.
        """
        if self._scope.closed:
            raise ChannelError("channel manager is closed")
        key = channel or self._default_key(table, filters, event_kind)
        if key in self._subscriptions:
            await self.unsubscribe(key)

        sub = Subscription(self, key, table, filters, event_kind, on_change, on_status)
        self._subscriptions[key] = sub
        sub.task = self._scope.spawn(sub.run(), name=key)
        return sub

    async def subscribe_contact_alerts(
        self,
        user_id: str,
        on_alert: Callable[[Dict[str, Any]], Union[None, Awaitable[None]]],
        *,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        """Feed of active alerts whose contacts_notified includes ``user_id``."""

        async def _on_change(change: RowChange) -> None:
            row = change.after or {}
            if row.get("status") != "active":
                return
            if user_id not in (row.get("contacts_notified") or []):
                return
            await _maybe_await(on_alert(row))

        return await self.subscribe(
            "alerts",
            [contains("contacts_notified", user_id)],
            EventKind.ANY,
            _on_change,
            on_status=on_status,
            channel=f"contact-alerts:{user_id}",
        )

    async def unsubscribe(self, key: str) -> None:
        sub = self._subscriptions.pop(key, None)
        if sub is None:
            return
        sub.closed = True
        if sub.stream is not None:
            # ends the stream even if the cancel below is swallowed
            await sub.stream.close()
        task = sub.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.debug("Unsubscribed %s", key, extra={"channel": key})

    async def unsubscribe_all(self) -> None:
        for key in list(self._subscriptions):
            await self.unsubscribe(key)

    async def close(self) -> None:
        await self.unsubscribe_all()
        await self._scope.close("channel manager closed")

    # ── Introspection ──

    def get(self, key: str) -> Optional[Subscription]:
        return self._subscriptions.get(key)

    @property
    def keys(self) -> List[str]:
        return list(self._subscriptions)

    @staticmethod
    def _default_key(table: str, filters: Sequence[Filter], event_kind: EventKind) -> str:
        preds = ",".join(f"{f.column}.{f.op.value}.{f.value}" for f in filters)
        return f"{table}:{preds or '*'}:{event_kind.value}"
