"""
Shared fixtures: in-memory store, local event transport, fast reconnect
policy, and a controllable wall clock for the lifecycle.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List

import pytest
import pytest_asyncio

from backend.app.alerts.contacts import ContactService
from backend.app.alerts.lifecycle import AlertLifecycleManager
from backend.app.alerts.models import Contact
from backend.app.realtime.channel import ChannelManager, ReconnectPolicy
from backend.app.realtime.transport import LocalTransport
from backend.app.store.alert_store import AlertStore
from backend.app.store.memory import InMemoryStoreBackend

OWNER = "user-a"
BOB = "user-b"
CAROL = "user-c"

# Johannesburg
JHB_LAT = -26.2
JHB_LNG = 28.0

FAST_POLICY = ReconnectPolicy(base_delay=0.01, max_delay=0.05, max_attempts=5)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until ``predicate()`` holds; fail the test after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


async def seed_contacts(store: AlertStore, owner_id: str, contact_ids: List[str], *, verified: bool = True) -> List[Contact]:
    contacts = []
    for priority, uid in enumerate(contact_ids):
        contacts.append(
            await store.insert_contact(
                Contact(
                    owner_id=owner_id,
                    contact_user_id=uid,
                    verified=verified,
                    priority=priority,
                    name=uid,
                )
            )
        )
    return contacts


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> InMemoryStoreBackend:
    return InMemoryStoreBackend()


@pytest.fixture
def transport() -> LocalTransport:
    return LocalTransport()


@pytest_asyncio.fixture
async def channels(transport):
    manager = ChannelManager(transport, policy=FAST_POLICY, subscribe_timeout=0.5)
    yield manager
    await manager.close()


@pytest.fixture
def store(backend, channels) -> AlertStore:
    return AlertStore(backend, channels)


@pytest_asyncio.fixture
async def lifecycle(store, clock):
    manager = AlertLifecycleManager(
        store,
        clock=clock,
        acceptance_retry_delay=0.0,
    )
    yield manager
    await manager.close()


@pytest.fixture
def contact_service(store, clock) -> ContactService:
    return ContactService(store, clock=clock, invite_base_url="https://app.test/invite")
