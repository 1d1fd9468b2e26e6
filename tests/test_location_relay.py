"""
test_location_relay.py — Tests for periodic position sampling.

Covers:
    • LatestFixProvider (range check, no fix, stale fix)
    • sample_once skip rules (no fix, provider failure, throttled, denied)
    • Immediate t = 0 sample and periodic loop
    • stop() halts sampling
    • visible_positions filtering

Run with:
    pytest tests/test_location_relay.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from backend.app.alerts.models import LocationSample
from backend.app.core.errors import AuthorizationDeniedError, RateLimitedError
from backend.app.store.base import StoreUnavailableError
from backend.app.tracking.location_relay import (
    LatestFixProvider,
    LocationRelay,
    Position,
    PositionProvider,
    PositionUnavailableError,
    visible_positions,
)

from tests.conftest import BOB, CAROL, JHB_LAT, JHB_LNG, OWNER, eventually


class StaticProvider(PositionProvider):
    def __init__(self, position=None, error=None):
        self.position = position
        self.error = error
        self.calls = 0

    async def get_position(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.position


class RecordingSink:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def __call__(self, alert_id, user_id, latitude, longitude, accuracy=None):
        self.calls.append((alert_id, user_id, latitude, longitude, accuracy))
        if self.error is not None:
            raise self.error
        return LocationSample(
            user_id=user_id, alert_id=alert_id, latitude=latitude, longitude=longitude, accuracy=accuracy,
        )


def _make_relay(provider=None, sink=None, interval=0.02):
    provider = provider or StaticProvider(Position(JHB_LAT, JHB_LNG, 12.0))
    sink = sink or RecordingSink()
    return LocationRelay("alert-1", OWNER, provider, sink, interval=interval), provider, sink


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Position provider
# ═══════════════════════════════════════════════════════════════════════════

class TestLatestFixProvider:

    @pytest.mark.asyncio
    async def test_no_fix_yet(self):
        provider = LatestFixProvider()
        assert provider.has_fix is False
        assert await provider.get_position() is None

    @pytest.mark.asyncio
    async def test_push_then_read(self):
        provider = LatestFixProvider()
        provider.push(JHB_LAT, JHB_LNG, 8.0)
        position = await provider.get_position()
        assert (position.latitude, position.longitude, position.accuracy) == (JHB_LAT, JHB_LNG, 8.0)

    def test_out_of_range_rejected(self):
        provider = LatestFixProvider()
        with pytest.raises(ValueError):
            provider.push(91.0, 0.0)
        with pytest.raises(ValueError):
            provider.push(0.0, -181.0)
        assert provider.has_fix is False

    @pytest.mark.asyncio
    async def test_stale_fix_unavailable(self):
        provider = LatestFixProvider(max_age_seconds=30)
        provider.push(JHB_LAT, JHB_LNG)
        stale = provider._latest
        provider._latest = Position(
            stale.latitude, stale.longitude, stale.accuracy, stale.observed_at - timedelta(minutes=5),
        )
        with pytest.raises(PositionUnavailableError):
            await provider.get_position()


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Single tick
# ═══════════════════════════════════════════════════════════════════════════

class TestSampleOnce:

    @pytest.mark.asyncio
    async def test_sample_appended(self):
        relay, _, sink = _make_relay()
        sample = await relay.sample_once()
        assert sample is not None
        assert sink.calls == [("alert-1", OWNER, JHB_LAT, JHB_LNG, 12.0)]
        assert relay.samples_sent == 1
        assert relay.last_sample is sample

    @pytest.mark.asyncio
    async def test_no_fix_skips(self):
        relay, _, sink = _make_relay(provider=StaticProvider(None))
        assert await relay.sample_once() is None
        assert sink.calls == []
        assert relay.ticks_skipped == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        PositionUnavailableError("permission denied"),
        RuntimeError("gps driver crashed"),
    ])
    async def test_provider_failure_skips(self, error):
        relay, _, sink = _make_relay(provider=StaticProvider(error=error))
        assert await relay.sample_once() is None
        assert sink.calls == []
        assert relay.ticks_skipped == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        RateLimitedError("too soon", retry_after=5),
        AuthorizationDeniedError("Only accepted responders can share their location"),
        StoreUnavailableError("connection refused"),
    ])
    async def test_rejected_append_skips(self, error):
        relay, _, sink = _make_relay(sink=RecordingSink(error=error))
        assert await relay.sample_once() is None
        assert len(sink.calls) == 1
        assert relay.samples_sent == 0
        assert relay.ticks_skipped == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Loop
# ═══════════════════════════════════════════════════════════════════════════

class TestRelayLoop:

    @pytest.mark.asyncio
    async def test_immediate_first_sample(self):
        relay, _, sink = _make_relay(interval=60)
        relay.start()
        try:
            await eventually(lambda: len(sink.calls) == 1, timeout=0.5)
            assert relay.running
        finally:
            await relay.stop()

    @pytest.mark.asyncio
    async def test_periodic_samples(self):
        relay, _, sink = _make_relay(interval=0.02)
        relay.start()
        try:
            await eventually(lambda: relay.samples_sent >= 3)
        finally:
            await relay.stop()

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self):
        relay, provider, sink = _make_relay(
            provider=StaticProvider(error=RuntimeError("flaky")), interval=0.01,
        )
        relay.start()
        try:
            await eventually(lambda: relay.ticks_skipped >= 2)
            provider.error = None
            provider.position = Position(JHB_LAT, JHB_LNG)
            await eventually(lambda: relay.samples_sent >= 1)
        finally:
            await relay.stop()

    @pytest.mark.asyncio
    async def test_stop_halts_sampling(self):
        relay, _, sink = _make_relay(interval=0.01)
        relay.start()
        await eventually(lambda: relay.samples_sent >= 1)
        await relay.stop()
        count = len(sink.calls)
        await asyncio.sleep(0.05)

        assert not relay.running
        assert len(sink.calls) == count
        relay.start()
        assert not relay.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        relay, _, _ = _make_relay(interval=60)
        relay.start()
        first = relay._task
        relay.start()
        assert relay._task is first
        await relay.stop()


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Visibility
# ═══════════════════════════════════════════════════════════════════════════

class TestVisiblePositions:

    def test_only_accepted_shown(self):
        positions = {OWNER: "o", BOB: "b", CAROL: "c"}
        assert visible_positions(positions, [BOB]) == {BOB: "b"}

    def test_owner_always_visible(self):
        positions = {OWNER: "o", CAROL: "c"}
        assert visible_positions(positions, [], owner_id=OWNER) == {OWNER: "o"}

    def test_empty_accepted_set(self):
        assert visible_positions({BOB: "b"}, []) == {}
