"""
Event transports — the publish/subscribe primitive under the ChannelManager.

    Transport.publish(change)   fire-and-forget, at-most-once
    Transport.open(table)       → TransportStream (async iterator of RowChange)

Implementations:
    LocalTransport  in-process asyncio queues; single-worker deployments
                    and tests. Delivery can be switched off to emulate a
                    silently dropping channel, opens can be made to fail
                    or hang, and live streams can be force-closed.
    RedisTransport  redis.asyncio pub/sub, one channel per relation
                    ("<prefix>:<table>"); multi-worker deployments.

Any connectivity failure surfaces as ChannelError; the ChannelManager owns
reconnection.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from typing import Dict, Optional, Set

from redis.exceptions import RedisError

from backend.app.realtime.events import RowChange

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """The event channel failed or closed unexpectedly."""


class TransportStream(abc.ABC):
    """An open subscription to one relation's change feed."""

    def __aiter__(self) -> "TransportStream":
        return self

    @abc.abstractmethod
    async def __anext__(self) -> RowChange:
        """Next change; StopAsyncIteration when closed cleanly."""

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class Transport(abc.ABC):
    name: str = "transport"

    @abc.abstractmethod
    async def publish(self, change: RowChange) -> None:
        ...

    @abc.abstractmethod
    async def open(self, table: str) -> TransportStream:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Local (in-process) transport
# ═══════════════════════════════════════════════════════════════════════════

_CLOSED = object()


class _LocalStream(TransportStream):
    def __init__(self, transport: "LocalTransport", table: str, maxsize: int):
        self._transport = transport
        self.table = table
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def __anext__(self) -> RowChange:
        if self.closed:
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self.closed = True
            raise item
        return item

    def offer(self, item) -> None:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Local stream for %s full, dropping event", self.table)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._transport._detach(self)
            # wake a reader parked in __anext__
            while self.queue.full():
                self.queue.get_nowait()
            self.queue.put_nowait(_CLOSED)


class LocalTransport(Transport):
    """asyncio fan-out to every open stream of a relation."""

    name = "local"

    def __init__(self, *, delivery_enabled: bool = True, queue_size: int = 1000):
        self.delivery_enabled = delivery_enabled
        self.queue_size = queue_size
        self.fail_opens = 0       # next N opens raise ChannelError
        self.hang_opens = False   # opens never complete
        self.open_count = 0
        self._streams: Dict[str, Set[_LocalStream]] = {}

    async def publish(self, change: RowChange) -> None:
        if not self.delivery_enabled:
            logger.debug("Delivery disabled, dropping %s on %s", change.kind.value, change.table)
            return
        for stream in list(self._streams.get(change.table, ())):
            stream.offer(change)

    async def open(self, table: str) -> TransportStream:
        self.open_count += 1
        if self.hang_opens:
            await asyncio.Event().wait()
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise ChannelError(f"local transport refused subscription to {table}")
        stream = _LocalStream(self, table, self.queue_size)
        self._streams.setdefault(table, set()).add(stream)
        return stream

    def _detach(self, stream: _LocalStream) -> None:
        self._streams.get(stream.table, set()).discard(stream)

    def stream_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._streams.get(table, ()))
        return sum(len(s) for s in self._streams.values())

    def disconnect_all(self, error: Optional[Exception] = None) -> None:
        """Terminate every open stream, with ``error`` or a clean close."""
        for streams in self._streams.values():
            for stream in list(streams):
                stream.offer(error if error is not None else _CLOSED)
        self._streams.clear()

    async def close(self) -> None:
        self.disconnect_all()


# ═══════════════════════════════════════════════════════════════════════════
# Redis pub/sub transport
# ═══════════════════════════════════════════════════════════════════════════

class _RedisStream(TransportStream):
    def __init__(self, pubsub, channel: str, poll_timeout: float):
        self._pubsub = pubsub
        self._channel = channel
        self._poll_timeout = poll_timeout
        self._closed = False

    async def __anext__(self) -> RowChange:
        while not self._closed:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout,
                )
            except (RedisError, OSError) as exc:
                raise ChannelError(f"redis stream {self._channel} failed: {exc}") from exc
            if message is None or message.get("type") != "message":
                continue
            try:
                return RowChange.from_dict(json.loads(message["data"]))
            except (ValueError, KeyError) as exc:
                logger.warning("Dropping malformed event on %s: %s", self._channel, exc)
        raise StopAsyncIteration

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except Exception as exc:
            logger.debug("Redis pubsub close error on %s: %s", self._channel, exc)


class RedisTransport(Transport):
    """Row changes over Redis pub/sub."""

    name = "redis"

    def __init__(self, url: str, prefix: str = "rowchange", *, client=None, poll_timeout: float = 1.0):
        self.url = url
        self.prefix = prefix
        self.poll_timeout = poll_timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis transport connected: %s", self.url.split("@")[-1])
        return self._client

    def channel_name(self, table: str) -> str:
        return f"{self.prefix}:{table}"

    async def publish(self, change: RowChange) -> None:
        try:
            await self._get_client().publish(
                self.channel_name(change.table),
                json.dumps(change.to_dict(), default=str),
            )
        except (RedisError, OSError) as exc:
            raise ChannelError(f"redis publish failed: {exc}") from exc

    async def open(self, table: str) -> TransportStream:
        channel = self.channel_name(table)
        pubsub = self._get_client().pubsub()
        try:
            await pubsub.subscribe(channel)
        except (RedisError, OSError) as exc:
            raise ChannelError(f"redis subscribe to {channel} failed: {exc}") from exc
        return _RedisStream(pubsub, channel, self.poll_timeout)

    async def ping(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except Exception as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis transport closed")
