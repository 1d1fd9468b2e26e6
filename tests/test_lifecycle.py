"""
test_lifecycle.py — Tests for the alert lifecycle manager.

Covers:
    • Alert creation (contacts resolution, responses, location sanitizing)
    • Response rows retried with backoff after a store outage
    • Supersession of stale alerts and the 30 s double-fire window
    • Cancel / resolve (owner only, idempotent, access-policy re-check)
    • Acknowledge / decline (monotonic, notified contacts only)
    • Location appends (acceptance gate, 5 s spacing)
    • contacts_notified visible on the very first INSERT event

Run with:
    pytest tests/test_lifecycle.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from backend.app.alerts.lifecycle import (
    AlertLifecycleManager,
    parse_alert_type,
    sanitize_location,
)
from backend.app.alerts.models import (
    ALERTS,
    RESPONSES,
    Alert,
    AlertStatus,
    AlertType,
    GeoPoint,
)
from backend.app.core.errors import (
    AuthorizationDeniedError,
    NotFoundError,
    PanicAlertError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from backend.app.realtime.events import ChannelStatus
from backend.app.store.alert_store import AlertStore
from backend.app.store.base import StoreAuthorizationError, StoreError, StoreUnavailableError
from backend.app.store.memory import InMemoryStoreBackend

from tests.conftest import BOB, CAROL, JHB_LAT, JHB_LNG, OWNER, eventually, seed_contacts


class FlakyResponsesBackend(InMemoryStoreBackend):
    """The first ``failures`` response inserts raise an outage."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.response_inserts = 0

    async def insert(self, relation, rows):
        if relation == RESPONSES:
            self.response_inserts += 1
            if self.response_inserts <= self.failures:
                raise StoreUnavailableError("connection reset")
        return await super().insert(relation, rows)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Input Sanitizing
# ═══════════════════════════════════════════════════════════════════════════

class TestParseAlertType:

    def test_none_defaults_to_other(self):
        assert parse_alert_type(None) == AlertType.OTHER

    def test_case_insensitive(self):
        assert parse_alert_type(" Robbery ") == AlertType.ROBBERY

    def test_enum_passthrough(self):
        assert parse_alert_type(AlertType.CAR_JACKING) == AlertType.CAR_JACKING

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_alert_type("alien_invasion")
        assert exc.value.status_code == 400
        assert exc.value.details["field"] == "alert_type"


class TestSanitizeLocation:

    def test_valid_mapping(self):
        point = sanitize_location({"lat": JHB_LAT, "lng": JHB_LNG, "address": "Main Rd"})
        assert point == GeoPoint(JHB_LAT, JHB_LNG, "Main Rd")

    def test_boundaries_are_valid(self):
        assert sanitize_location({"lat": -90, "lng": 180}) is not None
        assert sanitize_location({"lat": 90, "lng": -180}) is not None

    def test_out_of_range_dropped(self):
        assert sanitize_location({"lat": 91, "lng": 0}) is None
        assert sanitize_location(GeoPoint(0, 181)) is None

    def test_malformed_dropped(self):
        assert sanitize_location({"lat": "north"}) is None
        assert sanitize_location(None) is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Create
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAlert:

    @pytest.mark.asyncio
    async def test_robbery_with_two_contacts(self, lifecycle, store, backend):
        await seed_contacts(store, OWNER, [BOB, CAROL])

        alert = await lifecycle.create_alert(OWNER, "robbery", {"lat": JHB_LAT, "lng": JHB_LNG})

        assert alert.status == AlertStatus.ACTIVE
        assert alert.alert_type == AlertType.ROBBERY
        assert alert.location == GeoPoint(JHB_LAT, JHB_LNG)
        assert alert.contacts_notified == [BOB, CAROL]

        responses = await store.responses(alert.id)
        assert {r.contact_user_id for r in responses} == {BOB, CAROL}
        assert all(r.acknowledged_at is None for r in responses)
        assert backend.count(RESPONSES) == 2

    @pytest.mark.asyncio
    async def test_invalid_location_dropped_not_rejected(self, lifecycle):
        alert = await lifecycle.create_alert(OWNER, "accident", {"lat": 120.0, "lng": 28.0})
        assert alert.location is None
        assert alert.is_active

    @pytest.mark.asyncio
    async def test_invalid_type_rejected_before_any_write(self, lifecycle, backend):
        with pytest.raises(ValidationError):
            await lifecycle.create_alert(OWNER, "tornado")
        assert backend.count(ALERTS) == 0

    @pytest.mark.asyncio
    async def test_unverified_contacts_not_notified(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        await seed_contacts(store, OWNER, [CAROL], verified=False)

        alert = await lifecycle.create_alert(OWNER)
        assert alert.contacts_notified == [BOB]

    @pytest.mark.asyncio
    async def test_self_and_duplicate_contacts_excluded(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB, OWNER])
        await seed_contacts(store, OWNER, [BOB])

        alert = await lifecycle.create_alert(OWNER)
        assert alert.contacts_notified == [BOB]

    @pytest.mark.asyncio
    async def test_no_contacts_still_creates(self, lifecycle):
        alert = await lifecycle.create_alert(OWNER)
        assert alert.contacts_notified == []
        assert alert.is_active

    @pytest.mark.asyncio
    async def test_contacts_notified_on_first_insert_event(self, lifecycle, store, channels):
        await seed_contacts(store, OWNER, [BOB])
        seen = []
        sub = await channels.subscribe_contact_alerts(BOB, seen.append)
        await eventually(lambda: sub.status == ChannelStatus.SUBSCRIBED)

        alert = await lifecycle.create_alert(OWNER, "robbery")

        await eventually(lambda: len(seen) == 1)
        assert seen[0]["id"] == alert.id
        assert seen[0]["contacts_notified"] == [BOB]
        assert seen[0]["status"] == "active"

    @pytest.mark.asyncio
    async def test_insert_failure_is_500(self, clock):
        class BrokenAlerts(InMemoryStoreBackend):
            async def insert(self, relation, rows):
                if relation == ALERTS:
                    raise StoreError("constraint violated")
                return await super().insert(relation, rows)

        manager = AlertLifecycleManager(AlertStore(BrokenAlerts()), clock=clock)
        with pytest.raises(PanicAlertError) as exc:
            await manager.create_alert(OWNER)
        assert exc.value.status_code == 500
        assert exc.value.message == "Failed to create emergency alert"

    @pytest.mark.asyncio
    async def test_unavailable_store_is_transient(self, clock):
        backend = InMemoryStoreBackend()
        backend.available = False
        manager = AlertLifecycleManager(AlertStore(backend), clock=clock)
        with pytest.raises(TransientError) as exc:
            await manager.create_alert(OWNER)
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_create_timeout(self, store, clock):
        class SlowStore(AlertStore):
            async def notifiable_contacts(self, owner_id):
                await asyncio.sleep(1.0)
                return []

        manager = AlertLifecycleManager(SlowStore(store.backend), clock=clock, create_timeout=0.05)
        with pytest.raises(TransientError):
            await manager.create_alert(OWNER)

    @pytest.mark.asyncio
    async def test_response_rows_retried_after_outage(self, clock):
        backend = FlakyResponsesBackend(failures=1)
        store = AlertStore(backend)
        await seed_contacts(store, OWNER, [BOB, CAROL])
        manager = AlertLifecycleManager(store, clock=clock, response_retry_delay=0.0)

        alert = await manager.create_alert(OWNER, "robbery")

        assert backend.response_inserts == 2
        responses = await store.responses(alert.id)
        assert sorted(r.contact_user_id for r in responses) == [BOB, CAROL]

    @pytest.mark.asyncio
    async def test_response_rows_give_up_without_failing_create(self, clock):
        backend = FlakyResponsesBackend(failures=100)
        store = AlertStore(backend)
        await seed_contacts(store, OWNER, [BOB])
        manager = AlertLifecycleManager(
            store, clock=clock, response_retries=2, response_retry_delay=0.0,
        )

        alert = await manager.create_alert(OWNER, "robbery")

        assert alert.status == AlertStatus.ACTIVE
        assert backend.response_inserts == 3
        assert await store.responses(alert.id) == []

    @pytest.mark.asyncio
    async def test_explicit_zero_overrides_settings(self, store, clock):
        manager = AlertLifecycleManager(
            store, clock=clock, response_retries=0, responder_location_limit=0,
            acceptance_retries=0,
        )
        assert manager.response_retries == 0
        assert manager.responder_location_limit == 0
        assert manager.acceptance_retries == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Supersession & Rate Limit
# ═══════════════════════════════════════════════════════════════════════════

class TestSupersessionAndRateLimit:

    @pytest.mark.asyncio
    async def test_second_create_within_window_is_rate_limited(self, lifecycle, clock):
        first = await lifecycle.create_alert(OWNER)
        clock.advance(5)

        with pytest.raises(RateLimitedError) as exc:
            await lifecycle.create_alert(OWNER)
        assert exc.value.status_code == 429
        assert exc.value.message == "Rate limit exceeded. Please wait 30 seconds."

        # First alert untouched
        current = await lifecycle.get_alert(first.id)
        assert current.is_active
        assert current.resolved_at is None

    @pytest.mark.asyncio
    async def test_after_31_seconds_new_alert_supersedes(self, lifecycle, clock):
        first = await lifecycle.create_alert(OWNER)
        clock.advance(31)

        second = await lifecycle.create_alert(OWNER)

        old = await lifecycle.get_alert(first.id)
        assert old.status == AlertStatus.CANCELLED
        assert old.resolved_at == clock.now
        assert second.is_active
        assert (await lifecycle.get_active_alert(OWNER)).id == second.id

    @pytest.mark.asyncio
    async def test_stale_alert_never_blocks(self, lifecycle, store, clock):
        stale = await store.insert_alert(
            Alert(owner_id=OWNER, triggered_at=clock.now - timedelta(hours=6))
        )

        fresh = await lifecycle.create_alert(OWNER, "house_breaking")

        old = await lifecycle.get_alert(stale.id)
        assert old.status == AlertStatus.CANCELLED
        assert old.resolved_at is not None
        assert fresh.is_active

    @pytest.mark.asyncio
    async def test_at_most_one_active_alert(self, lifecycle, store, clock):
        for _ in range(3):
            await lifecycle.create_alert(OWNER)
            clock.advance(45)
        assert len(await store.active_alerts(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_yield_one_alert(self, lifecycle, store):
        results = await asyncio.gather(
            lifecycle.create_alert(OWNER),
            lifecycle.create_alert(OWNER),
            return_exceptions=True,
        )
        created = [r for r in results if isinstance(r, Alert)]
        limited = [r for r in results if isinstance(r, RateLimitedError)]
        assert len(created) == 1
        assert len(limited) == 1
        assert len(await store.active_alerts(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_other_users_not_affected(self, lifecycle):
        await lifecycle.create_alert(OWNER)
        other = await lifecycle.create_alert(BOB)
        assert other.is_active


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Cancel / Resolve
# ═══════════════════════════════════════════════════════════════════════════

class TestCancelResolve:

    @pytest.mark.asyncio
    async def test_cancel_sets_resolved_at(self, lifecycle, clock):
        alert = await lifecycle.create_alert(OWNER)
        clock.advance(12)

        cancelled = await lifecycle.cancel_alert(alert.id, OWNER)
        assert cancelled.status == AlertStatus.CANCELLED
        assert cancelled.resolved_at == clock.now

    @pytest.mark.asyncio
    async def test_resolve(self, lifecycle):
        alert = await lifecycle.create_alert(OWNER)
        resolved = await lifecycle.resolve_alert(alert.id, OWNER)
        assert resolved.status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, lifecycle, clock):
        alert = await lifecycle.create_alert(OWNER)
        first = await lifecycle.cancel_alert(alert.id, OWNER)
        clock.advance(60)
        second = await lifecycle.cancel_alert(alert.id, OWNER)
        assert second.status == AlertStatus.CANCELLED
        assert second.resolved_at == first.resolved_at

    @pytest.mark.asyncio
    async def test_resolve_after_cancel_is_noop(self, lifecycle):
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.cancel_alert(alert.id, OWNER)
        result = await lifecycle.resolve_alert(alert.id, OWNER)
        assert result.status == AlertStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_non_owner_denied(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        with pytest.raises(AuthorizationDeniedError):
            await lifecycle.cancel_alert(alert.id, BOB)
        assert (await lifecycle.get_alert(alert.id)).is_active

    @pytest.mark.asyncio
    async def test_missing_alert(self, lifecycle):
        with pytest.raises(NotFoundError) as exc:
            await lifecycle.cancel_alert("nope", OWNER)
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_policy_denied_write_on_active_alert_is_403(self, clock):
        backend = InMemoryStoreBackend()
        manager = AlertLifecycleManager(AlertStore(backend), clock=clock)
        alert = await manager.create_alert(OWNER)
        backend.policy = lambda op, relation, row: not (op == "update" and relation == ALERTS)

        with pytest.raises(AuthorizationDeniedError):
            await manager.cancel_alert(alert.id, OWNER)

    @pytest.mark.asyncio
    async def test_denied_write_on_superseded_alert_is_success(self, clock):
        class RacingStore(AlertStore):
            """Another writer cancels the row just before our update is refused."""

            async def transition_active(self, status, resolved_at, *, alert_id=None, owner_id=None):
                if alert_id is not None:
                    await super().transition_active(AlertStatus.CANCELLED, resolved_at, owner_id=OWNER)
                    raise StoreAuthorizationError("update denied")
                return await super().transition_active(
                    status, resolved_at, alert_id=alert_id, owner_id=owner_id,
                )

        manager = AlertLifecycleManager(RacingStore(InMemoryStoreBackend()), clock=clock)
        alert = await manager.create_alert(OWNER)

        result = await manager.resolve_alert(alert.id, OWNER)
        assert result.status == AlertStatus.CANCELLED


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Acknowledge / Decline
# ═══════════════════════════════════════════════════════════════════════════

class TestResponses:

    @pytest.mark.asyncio
    async def test_acknowledge_is_monotonic(self, lifecycle, store, clock):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)

        first = await lifecycle.acknowledge(alert.id, BOB)
        clock.advance(20)
        second = await lifecycle.acknowledge(alert.id, BOB)

        assert first.acknowledged_at is not None
        assert second.acknowledged_at == first.acknowledged_at

    @pytest.mark.asyncio
    async def test_accepted_responders(self, lifecycle, store, clock):
        await seed_contacts(store, OWNER, [BOB, CAROL])
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.acknowledge(alert.id, CAROL)
        clock.advance(1)
        await lifecycle.acknowledge(alert.id, BOB)

        accepted = await lifecycle.get_accepted_responders(alert.id, OWNER)
        assert [r.contact_user_id for r in accepted] == [CAROL, BOB]

    @pytest.mark.asyncio
    async def test_decline_then_acknowledge_rejected(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.decline(alert.id, BOB)
        with pytest.raises(ValidationError):
            await lifecycle.acknowledge(alert.id, BOB)
        assert await lifecycle.get_accepted_responders(alert.id) == []

    @pytest.mark.asyncio
    async def test_acceptance_cannot_be_withdrawn(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.acknowledge(alert.id, BOB)
        with pytest.raises(ValidationError):
            await lifecycle.decline(alert.id, BOB)

    @pytest.mark.asyncio
    async def test_non_notified_user_cannot_acknowledge(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        with pytest.raises(AuthorizationDeniedError):
            await lifecycle.acknowledge(alert.id, "mallory")

    @pytest.mark.asyncio
    async def test_acknowledge_inactive_alert_rejected(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.cancel_alert(alert.id, OWNER)
        with pytest.raises(ValidationError):
            await lifecycle.acknowledge(alert.id, BOB)

    @pytest.mark.asyncio
    async def test_missing_response_row_backfilled(self, lifecycle, store, backend):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        backend._tables[RESPONSES].clear()

        response = await lifecycle.acknowledge(alert.id, BOB)
        assert response.is_accepted

    @pytest.mark.asyncio
    async def test_get_alert_participants_only(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        assert (await lifecycle.get_alert(alert.id, BOB)).id == alert.id
        with pytest.raises(AuthorizationDeniedError):
            await lifecycle.get_alert(alert.id, "mallory")


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Location Samples
# ═══════════════════════════════════════════════════════════════════════════

class TestSaveLocation:

    @pytest.mark.asyncio
    async def test_owner_can_always_share(self, lifecycle):
        alert = await lifecycle.create_alert(OWNER)
        sample = await lifecycle.save_location(alert.id, OWNER, JHB_LAT, JHB_LNG, 8.0)
        assert sample.user_id == OWNER
        assert sample.accuracy == 8.0

    @pytest.mark.asyncio
    async def test_responder_must_accept_first(self, lifecycle, store):
        await seed_contacts(store, OWNER, [BOB])
        alert = await lifecycle.create_alert(OWNER)
        with pytest.raises(AuthorizationDeniedError):
            await lifecycle.save_location(alert.id, BOB, JHB_LAT, JHB_LNG)

        await lifecycle.acknowledge(alert.id, BOB)
        sample = await lifecycle.save_location(alert.id, BOB, JHB_LAT, JHB_LNG)
        assert sample.user_id == BOB

    @pytest.mark.asyncio
    async def test_five_second_spacing(self, lifecycle, clock):
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.save_location(alert.id, OWNER, JHB_LAT, JHB_LNG)
        clock.advance(2)
        with pytest.raises(RateLimitedError) as exc:
            await lifecycle.save_location(alert.id, OWNER, JHB_LAT, JHB_LNG)
        assert "5 seconds" in exc.value.message

        clock.advance(5)
        await lifecycle.save_location(alert.id, OWNER, JHB_LAT + 0.001, JHB_LNG)

    @pytest.mark.asyncio
    async def test_out_of_range_rejected(self, lifecycle):
        alert = await lifecycle.create_alert(OWNER)
        with pytest.raises(ValidationError):
            await lifecycle.save_location(alert.id, OWNER, -91.0, JHB_LNG)

    @pytest.mark.asyncio
    async def test_inactive_alert_rejected(self, lifecycle):
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.resolve_alert(alert.id, OWNER)
        with pytest.raises(ValidationError):
            await lifecycle.save_location(alert.id, OWNER, JHB_LAT, JHB_LNG)

    @pytest.mark.asyncio
    async def test_responder_locations_only_accepted(self, lifecycle, store, clock):
        await seed_contacts(store, OWNER, [BOB, CAROL])
        alert = await lifecycle.create_alert(OWNER)
        await lifecycle.acknowledge(alert.id, BOB)
        await lifecycle.save_location(alert.id, BOB, -26.21, 28.01)
        await lifecycle.save_location(alert.id, OWNER, JHB_LAT, JHB_LNG)

        result = await lifecycle.get_responder_locations(alert.id, OWNER)
        assert result.accepted_user_ids == [BOB]
        assert set(result.grouped_by_user) == {BOB}
        assert result.latest_by_user()[BOB].latitude == -26.21
