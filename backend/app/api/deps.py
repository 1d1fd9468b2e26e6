"""
Application context and FastAPI dependencies.

The AppContext is built once in the app lifespan and torn down on
shutdown. It owns the store backend, the event transport, the
ChannelManager and the services wired on top of them; routes reach it
through ``request.app.state.context``.

Caller identity comes from the ``X-User-Id`` header, set by the
authenticating gateway in front of this service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from backend.app.alerts.contacts import ContactService
from backend.app.alerts.fanout import NotificationFanout
from backend.app.alerts.lifecycle import AlertLifecycleManager
from backend.app.core.config import settings
from backend.app.core.errors import AuthenticationRequiredError
from backend.app.realtime.channel import ChannelManager
from backend.app.realtime.transport import LocalTransport, RedisTransport, Transport
from backend.app.store.alert_store import AlertStore
from backend.app.store.base import StoreBackend
from backend.app.store.memory import InMemoryStoreBackend

logger = logging.getLogger(__name__)


def build_store_backend() -> StoreBackend:
    if settings.STORE_BACKEND == "sql":
        from backend.app.core.database import get_session_factory
        from backend.app.store.sql import SqlStoreBackend

        return SqlStoreBackend(get_session_factory())
    return InMemoryStoreBackend()


def build_transport() -> Transport:
    if settings.REALTIME_BACKEND == "redis":
        return RedisTransport(settings.REDIS_URL, settings.REALTIME_CHANNEL_PREFIX)
    return LocalTransport()


@dataclass
class AppContext:
    backend: StoreBackend
    transport: Transport
    channels: ChannelManager
    store: AlertStore
    fanout: NotificationFanout
    lifecycle: AlertLifecycleManager
    contacts: ContactService

    @classmethod
    def create(
        cls,
        *,
        backend: Optional[StoreBackend] = None,
        transport: Optional[Transport] = None,
        channels: Optional[ChannelManager] = None,
        lifecycle_options: Optional[dict] = None,
    ) -> "AppContext":
        backend = backend or build_store_backend()
        transport = transport or build_transport()
        channels = channels or ChannelManager(transport)
        store = AlertStore(backend, channels)
        fanout = NotificationFanout(store)
        lifecycle = AlertLifecycleManager(store, fanout=fanout, **(lifecycle_options or {}))
        contacts = ContactService(store, clock=lifecycle.clock)
        logger.info(
            "App context ready (store=%s, realtime=%s)", backend.name, transport.name,
        )
        return cls(
            backend=backend,
            transport=transport,
            channels=channels,
            store=store,
            fanout=fanout,
            lifecycle=lifecycle,
            contacts=contacts,
        )

    async def close(self) -> None:
        await self.lifecycle.close()
        await self.channels.close()
        await self.transport.close()
        await self.backend.close()
        logger.info("App context closed")


# ── Dependencies ──

def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationRequiredError()
    return x_user_id.strip()
