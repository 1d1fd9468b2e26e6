"""
lifecycle.py — Alert lifecycle manager.

Orchestrates every alert state transition and the per-alert reads the
live views depend on.

═══════════════════════════════════════════════════════════════════════════
CREATE FLOW (serialized per owner)
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │ validate type        │  unknown type → ValidationError (400)
    │ sanitize location    │  out-of-range coordinates dropped silently
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ gate / supersede /   │  SupersessionGuard (see rate_limiter.py)
    │ re-check             │  → RateLimitedError (429)
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ resolve contacts     │  verified + linked, de-duplicated, owner excluded
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ INSERT alert         │  contacts_notified in the same write: a
    │                      │  subscriber never sees the row without it
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ INSERT responses     │  best-effort, retried on outages
    │ schedule push        │  background task, never awaited here
    └──────────────────────┘

The whole flow is bounded by ALERT_CREATE_TIMEOUT_SECONDS.

═══════════════════════════════════════════════════════════════════════════
CANCEL / RESOLVE
═══════════════════════════════════════════════════════════════════════════

Owner only. A non-active alert is a successful no-op. When the write is
rejected or touches zero rows, the row is re-read: a non-active status
means someone (usually supersession) got there first → success; a row
still active after a rejected write → AuthorizationDeniedError.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from backend.app.alerts.fanout import NotificationFanout
from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    AlertType,
    GeoPoint,
    LocationSample,
    Response,
    utcnow,
)
from backend.app.alerts.rate_limiter import SupersessionGuard
from backend.app.core.config import settings
from backend.app.core.errors import (
    AuthorizationDeniedError,
    NotFoundError,
    PanicAlertError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from backend.app.core.tasks import TaskScope
from backend.app.store.alert_store import AlertStore
from backend.app.store.base import (
    StoreAuthorizationError,
    StoreError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

LocationInput = Union[GeoPoint, Mapping[str, Any], None]


# ═══════════════════════════════════════════════════════════════════════════
# Input Sanitizing
# ═══════════════════════════════════════════════════════════════════════════

def parse_alert_type(value: Union[str, AlertType, None]) -> AlertType:
    if value is None:
        return AlertType.OTHER
    if isinstance(value, AlertType):
        return value
    try:
        return AlertType(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in AlertType)
        raise ValidationError(
            f"Invalid alert type '{value}'. Allowed: {allowed}", field="alert_type",
        ) from None


def sanitize_location(location: LocationInput) -> Optional[GeoPoint]:
    """Return a valid GeoPoint or None; invalid input is dropped, not rejected."""
    if location is None:
        return None
    if isinstance(location, GeoPoint):
        point = location
    else:
        try:
            point = GeoPoint(
                lat=float(location["lat"]),
                lng=float(location["lng"]),
                address=location.get("address"),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Dropping malformed alert location: %r", location)
            return None
    if not point.is_valid:
        logger.warning("Dropping out-of-range alert location (%s, %s)", point.lat, point.lng)
        return None
    return point


def _check_coordinates(latitude: float, longitude: float) -> None:
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        raise ValidationError(
            "Coordinates out of range", latitude=latitude, longitude=longitude,
        )


@dataclass
class ResponderLocations:
    """Recent samples of accepted responders, newest first."""
    accepted_user_ids: List[str] = field(default_factory=list)
    locations: List[LocationSample] = field(default_factory=list)

    @property
    def grouped_by_user(self) -> Dict[str, List[LocationSample]]:
        grouped: Dict[str, List[LocationSample]] = {}
        for sample in self.locations:
            grouped.setdefault(sample.user_id, []).append(sample)
        return grouped

    def latest_by_user(self) -> Dict[str, LocationSample]:
        return {uid: samples[0] for uid, samples in self.grouped_by_user.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted_user_ids": list(self.accepted_user_ids),
            "locations": [s.to_dict() for s in self.locations],
            "grouped_by_user": {
                uid: [s.to_dict() for s in samples]
                for uid, samples in self.grouped_by_user.items()
            },
            "count": len(self.locations),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Manager
# ═══════════════════════════════════════════════════════════════════════════

class AlertLifecycleManager:
    def __init__(
        self,
        store: AlertStore,
        *,
        guard: Optional[SupersessionGuard] = None,
        fanout: Optional[NotificationFanout] = None,
        scope: Optional[TaskScope] = None,
        clock: Callable[[], datetime] = utcnow,
        create_timeout: Optional[float] = None,
        acceptance_retries: Optional[int] = None,
        acceptance_retry_delay: Optional[float] = None,
        location_min_spacing: Optional[float] = None,
        responder_location_limit: Optional[int] = None,
        response_retries: Optional[int] = None,
        response_retry_delay: Optional[float] = None,
    ):
        self.store = store
        self.clock = clock
        self.guard = guard or SupersessionGuard(store, clock=clock)
        self.fanout = fanout
        self.scope = scope or TaskScope("lifecycle")
        self.create_timeout = (
            create_timeout if create_timeout is not None
            else settings.ALERT_CREATE_TIMEOUT_SECONDS
        )
        self.acceptance_retries = (
            acceptance_retries if acceptance_retries is not None
            else settings.ACCEPTANCE_CHECK_RETRIES
        )
        self.acceptance_retry_delay = (
            acceptance_retry_delay if acceptance_retry_delay is not None
            else settings.ACCEPTANCE_CHECK_DELAY_SECONDS
        )
        self.location_min_spacing = (
            location_min_spacing if location_min_spacing is not None
            else settings.LOCATION_MIN_SPACING_SECONDS
        )
        self.responder_location_limit = (
            responder_location_limit if responder_location_limit is not None
            else settings.RESPONDER_LOCATION_LIMIT
        )
        self.response_retries = (
            response_retries if response_retries is not None
            else settings.RESPONSE_CREATE_RETRIES
        )
        self.response_retry_delay = (
            response_retry_delay if response_retry_delay is not None
            else settings.RESPONSE_CREATE_DELAY_SECONDS
        )
        self._owner_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ═══════════════════════════════════════════════════════════════════
    # Create
    # ═══════════════════════════════════════════════════════════════════

    async def create_alert(
        self,
        owner_id: str,
        alert_type: Union[str, AlertType, None] = AlertType.OTHER,
        location: LocationInput = None,
    ) -> Alert:
        atype = parse_alert_type(alert_type)
        point = sanitize_location(location)
        try:
            return await asyncio.wait_for(
                self._create(owner_id, atype, point), timeout=self.create_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Alert creation timed out after %.0fs for %s",
                self.create_timeout, owner_id, extra={"user_id": owner_id},
            )
            raise TransientError("create_alert", "timed out") from None
        except StoreUnavailableError as exc:
            raise TransientError("create_alert", str(exc)) from exc
        except StoreAuthorizationError as exc:
            raise AuthorizationDeniedError("Alert creation rejected by access policy") from exc

    async def _create(self, owner_id: str, alert_type: AlertType, location: Optional[GeoPoint]) -> Alert:
        async with self._owner_locks[owner_id]:
            await self.guard.ensure_allowed(owner_id)
            await self.guard.supersede_active(owner_id)
            await self.guard.ensure_allowed(owner_id)

            contact_ids = await self._resolve_contact_ids(owner_id)
            alert = Alert(
                owner_id=owner_id,
                alert_type=alert_type,
                location=location,
                contacts_notified=contact_ids,
                triggered_at=self.clock(),
            )
            try:
                alert = await self.store.insert_alert(alert)
            except (StoreUnavailableError, StoreAuthorizationError):
                raise
            except StoreError as exc:
                logger.error("Failed to insert alert for %s: %s", owner_id, exc)
                raise PanicAlertError("Failed to create emergency alert") from exc

        logger.info(
            "Alert %s created (%s) for %s, %d contact(s) notified",
            alert.id, alert.alert_type.value, owner_id, len(contact_ids),
            extra={"alert_id": alert.id, "user_id": owner_id, "recipient_count": len(contact_ids)},
        )
        await self._create_responses(alert)
        self._schedule_push(alert)
        return alert

    async def _resolve_contact_ids(self, owner_id: str) -> List[str]:
        try:
            contacts = await self.store.notifiable_contacts(owner_id)
        except StoreError as exc:
            logger.warning(
                "Could not load contacts for %s, alerting without contacts: %s",
                owner_id, exc, extra={"user_id": owner_id},
            )
            return []

        ids: List[str] = []
        for contact in contacts:
            uid = contact.contact_user_id
            if not contact.is_notifiable or uid is None:
                continue
            if uid == owner_id:
                logger.warning("Skipping self-referencing contact %s", contact.id)
                continue
            if uid not in ids:
                ids.append(uid)
        return ids

    async def _create_responses(self, alert: Alert) -> None:
        """Outages are retried with doubling backoff; anything else is logged once."""
        delay = self.response_retry_delay
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.store.insert_responses(alert.id, alert.contacts_notified)
                return
            except StoreUnavailableError as exc:
                if attempt > self.response_retries:
                    error = exc
                    break
                logger.info(
                    "Response rows for alert %s unavailable, retry %d/%d in %.1fs: %s",
                    alert.id, attempt, self.response_retries, delay, exc,
                    extra={"alert_id": alert.id, "attempt": attempt},
                )
                await asyncio.sleep(delay)
                delay *= 2
            except StoreError as exc:
                error = exc
                break
        logger.warning(
            "Response rows for alert %s not created (non-critical): %s",
            alert.id, error, extra={"alert_id": alert.id},
        )

    def _schedule_push(self, alert: Alert) -> None:
        if self.fanout is None or not alert.contacts_notified:
            return
        self.scope.spawn(self.fanout.notify(alert), name=f"push:{alert.id}")

    # ═══════════════════════════════════════════════════════════════════
    # Cancel / Resolve
    # ═══════════════════════════════════════════════════════════════════

    async def cancel_alert(self, alert_id: str, by_user_id: str) -> Alert:
        return await self._owner_transition(alert_id, by_user_id, AlertStatus.CANCELLED)

    async def resolve_alert(self, alert_id: str, by_user_id: str) -> Alert:
        return await self._owner_transition(alert_id, by_user_id, AlertStatus.RESOLVED)

    async def _owner_transition(self, alert_id: str, by_user_id: str, target: AlertStatus) -> Alert:
        alert = await self._load(alert_id)
        if alert.owner_id != by_user_id:
            raise AuthorizationDeniedError(
                f"Only the alert owner can {'cancel' if target == AlertStatus.CANCELLED else 'resolve'} this alert",
                alert_id=alert_id,
            )
        if not alert.is_active:
            logger.info(
                "Alert %s already %s, %s is a no-op", alert_id, alert.status.value, target.value,
                extra={"alert_id": alert_id},
            )
            return alert

        denied: Optional[StoreAuthorizationError] = None
        try:
            updated = await self.store.transition_active(target, self.clock(), alert_id=alert_id)
        except StoreAuthorizationError as exc:
            denied, updated = exc, []
        except StoreUnavailableError as exc:
            raise TransientError(f"{target.value}_alert", str(exc)) from exc
        if updated:
            logger.info(
                "Alert %s %s by owner", alert_id, target.value, extra={"alert_id": alert_id},
            )
            return updated[0]

        # Rejected or zero rows: decide from the current state
        current = await self._load(alert_id)
        if not current.is_active:
            logger.info(
                "Alert %s was already %s", alert_id, current.status.value,
                extra={"alert_id": alert_id},
            )
            return current
        if denied is not None:
            raise AuthorizationDeniedError(
                "Alert update rejected by access policy", alert_id=alert_id,
            ) from denied
        raise TransientError(f"{target.value}_alert", "alert is still active", alert_id=alert_id)

    # ═══════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════

    async def _load(self, alert_id: str) -> Alert:
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def get_alert(self, alert_id: str, user_id: Optional[str] = None) -> Alert:
        alert = await self._load(alert_id)
        if user_id is not None and not alert.involves(user_id):
            raise AuthorizationDeniedError(
                "You do not have access to this alert", alert_id=alert_id,
            )
        return alert

    async def get_active_alert(self, user_id: str) -> Optional[Alert]:
        active = await self.store.active_alerts(user_id)
        return active[0] if active else None

    async def get_accepted_responders(self, alert_id: str, user_id: Optional[str] = None) -> List[Response]:
        alert = await self.get_alert(alert_id, user_id)
        responses = await self.store.accepted_responses(alert_id)
        return [r for r in responses if r.contact_user_id in alert.contacts_notified]

    async def get_responder_locations(self, alert_id: str, user_id: Optional[str] = None) -> ResponderLocations:
        accepted = await self.get_accepted_responders(alert_id, user_id)
        ids = [r.contact_user_id for r in accepted]
        if not ids:
            return ResponderLocations()
        samples = await self.store.locations_for(
            alert_id, ids, limit=self.responder_location_limit,
        )
        return ResponderLocations(accepted_user_ids=ids, locations=samples)

    # ═══════════════════════════════════════════════════════════════════
    # Responder actions
    # ═══════════════════════════════════════════════════════════════════

    async def _responder_row(self, alert: Alert, user_id: str) -> Response:
        if user_id not in alert.contacts_notified:
            raise AuthorizationDeniedError(
                "Only notified contacts can respond to this alert", alert_id=alert.id,
            )
        response = await self.store.get_response(alert.id, user_id)
        if response is not None:
            return response
        # Bulk insert at creation is best-effort; backfill the missing row
        try:
            created = await self.store.insert_responses(alert.id, [user_id])
        except StoreError as exc:
            logger.warning("Response backfill for %s failed: %s", user_id, exc)
            created = []
        if created:
            return created[0]
        response = await self.store.get_response(alert.id, user_id)
        if response is None:
            raise TransientError("respond", "response row unavailable", alert_id=alert.id)
        return response

    async def acknowledge(self, alert_id: str, user_id: str) -> Response:
        """Accept to respond. Monotonic: a second call returns the first timestamp."""
        alert = await self._load(alert_id)
        response = await self._responder_row(alert, user_id)
        if response.acknowledged_at is not None:
            return response
        if response.declined_at is not None:
            raise ValidationError("Alert was already declined", alert_id=alert_id)
        if not alert.is_active:
            raise ValidationError("Alert is no longer active", alert_id=alert_id)

        updated = await self.store.mark_acknowledged(alert_id, user_id, self.clock())
        logger.info(
            "Responder %s accepted alert %s", user_id, alert_id,
            extra={"alert_id": alert_id, "contact_id": user_id},
        )
        return updated[0] if updated else await self.store.get_response(alert_id, user_id)

    async def decline(self, alert_id: str, user_id: str) -> Response:
        alert = await self._load(alert_id)
        response = await self._responder_row(alert, user_id)
        if response.declined_at is not None:
            return response
        if response.acknowledged_at is not None:
            raise ValidationError("Acceptance cannot be withdrawn", alert_id=alert_id)

        updated = await self.store.mark_declined(alert_id, user_id, self.clock())
        logger.info(
            "Responder %s declined alert %s", user_id, alert_id,
            extra={"alert_id": alert_id, "contact_id": user_id},
        )
        return updated[0] if updated else await self.store.get_response(alert_id, user_id)

    # ═══════════════════════════════════════════════════════════════════
    # Location samples
    # ═══════════════════════════════════════════════════════════════════

    async def _await_acceptance(self, alert_id: str, user_id: str) -> None:
        """Acceptance may commit just after the first sample arrives; retry briefly."""
        for attempt in range(1, self.acceptance_retries + 1):
            response = await self.store.get_response(alert_id, user_id)
            if response is not None and response.is_accepted:
                return
            if attempt < self.acceptance_retries:
                await asyncio.sleep(self.acceptance_retry_delay)
        raise AuthorizationDeniedError(
            "Only accepted responders can share their location", alert_id=alert_id,
        )

    async def save_location(
        self,
        alert_id: str,
        user_id: str,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
    ) -> LocationSample:
        _check_coordinates(latitude, longitude)
        alert = await self._load(alert_id)
        if not alert.is_active:
            raise ValidationError("Alert is no longer active", alert_id=alert_id)
        if user_id != alert.owner_id:
            if user_id not in alert.contacts_notified:
                raise AuthorizationDeniedError(
                    "You do not have access to this alert", alert_id=alert_id,
                )
            await self._await_acceptance(alert_id, user_id)

        now = self.clock()
        latest = await self.store.latest_location(alert_id, user_id)
        if latest is not None and now - latest.created_at < timedelta(seconds=self.location_min_spacing):
            raise RateLimitedError(
                f"Rate limit exceeded. Please wait {self.location_min_spacing:.0f} seconds.",
                retry_after=int(self.location_min_spacing),
            )

        sample = await self.store.insert_location(
            LocationSample(
                user_id=user_id,
                alert_id=alert_id,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
                created_at=now,
            )
        )
        logger.debug(
            "Location saved for %s on alert %s", user_id, alert_id,
            extra={"alert_id": alert_id, "user_id": user_id},
        )
        return sample

    async def close(self) -> None:
        await self.scope.close("lifecycle manager closed")
