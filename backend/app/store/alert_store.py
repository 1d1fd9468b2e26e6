"""
AlertStore — typed operations over the alert relations.

Wraps a StoreBackend and, after every successful write, publishes one
RowChange per written row through the ChannelManager. That publish is the
"realtime propagation" of the system: subscribers filtering on alert_id or
contacts_notified observe exactly the rows the store committed.

Publishing is best-effort (at-most-once); store errors propagate to the
caller unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from backend.app.alerts.models import (
    ALERTS,
    CONTACTS,
    INVITES,
    LOCATION_SAMPLES,
    PUSH_SUBSCRIPTIONS,
    RESPONSES,
    Alert,
    AlertStatus,
    Contact,
    Invite,
    LocationSample,
    PushSubscription,
    Response,
)
from backend.app.realtime.events import EventKind, RowChange
from backend.app.store.base import (
    Row,
    StoreBackend,
    StoreError,
    asc,
    desc,
    eq,
    gte,
    in_,
    is_null,
    not_null,
)

logger = logging.getLogger(__name__)


class AlertStore:
    def __init__(self, backend: StoreBackend, channels=None):
        self.backend = backend
        self.channels = channels

    # ── Publishing ──

    async def _publish(self, kind: EventKind, table: str, rows: Sequence[Row]) -> None:
        if self.channels is None:
            return
        for row in rows:
            await self.channels.publish(RowChange(kind=kind, table=table, after=row))

    async def _insert(self, table: str, rows: Sequence[Row]) -> List[Row]:
        stored = await self.backend.insert(table, rows)
        await self._publish(EventKind.INSERT, table, stored)
        return stored

    async def _update(self, table: str, values: Row, filters) -> List[Row]:
        updated = await self.backend.update(table, values, filters)
        await self._publish(EventKind.UPDATE, table, updated)
        return updated

    # ═══════════════════════════════════════════════════════════════════
    # Alerts
    # ═══════════════════════════════════════════════════════════════════

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        rows = await self.backend.select(ALERTS, [eq("id", alert_id)], limit=1)
        return Alert.from_row(rows[0]) if rows else None

    async def active_alerts(self, owner_id: str) -> List[Alert]:
        rows = await self.backend.select(
            ALERTS,
            [eq("owner_id", owner_id), eq("status", AlertStatus.ACTIVE.value)],
            order_by=[desc("triggered_at")],
        )
        return [Alert.from_row(r) for r in rows]

    async def active_alerts_since(self, owner_id: str, since: datetime) -> List[Alert]:
        rows = await self.backend.select(
            ALERTS,
            [
                eq("owner_id", owner_id),
                eq("status", AlertStatus.ACTIVE.value),
                gte("triggered_at", since),
            ],
            order_by=[desc("triggered_at")],
            limit=1,
        )
        return [Alert.from_row(r) for r in rows]

    async def insert_alert(self, alert: Alert) -> Alert:
        rows = await self._insert(ALERTS, [alert.to_row()])
        return Alert.from_row(rows[0])

    async def transition_active(
        self,
        status: AlertStatus,
        resolved_at: datetime,
        *,
        alert_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[Alert]:
        """Move active alerts (by id and/or owner) to ``status``."""
        filters = [eq("status", AlertStatus.ACTIVE.value)]
        if alert_id is not None:
            filters.append(eq("id", alert_id))
        if owner_id is not None:
            filters.append(eq("owner_id", owner_id))
        rows = await self._update(
            ALERTS,
            {"status": status.value, "resolved_at": resolved_at},
            filters,
        )
        return [Alert.from_row(r) for r in rows]

    # ═══════════════════════════════════════════════════════════════════
    # Contacts
    # ═══════════════════════════════════════════════════════════════════

    async def contacts_for(self, owner_id: str) -> List[Contact]:
        rows = await self.backend.select(
            CONTACTS,
            [eq("owner_id", owner_id)],
            order_by=[asc("priority"), asc("created_at")],
        )
        return [Contact.from_row(r) for r in rows]

    async def notifiable_contacts(self, owner_id: str) -> List[Contact]:
        rows = await self.backend.select(
            CONTACTS,
            [eq("owner_id", owner_id), eq("verified", True), not_null("contact_user_id")],
            order_by=[asc("priority"), asc("created_at")],
        )
        return [Contact.from_row(r) for r in rows]

    async def find_contact(self, owner_id: str, contact_user_id: str) -> Optional[Contact]:
        rows = await self.backend.select(
            CONTACTS,
            [eq("owner_id", owner_id), eq("contact_user_id", contact_user_id)],
            limit=1,
        )
        return Contact.from_row(rows[0]) if rows else None

    async def insert_contact(self, contact: Contact) -> Contact:
        rows = await self._insert(CONTACTS, [contact.to_row()])
        return Contact.from_row(rows[0])

    async def update_contact(self, contact_id: str, values: Row) -> Optional[Contact]:
        rows = await self._update(CONTACTS, values, [eq("id", contact_id)])
        return Contact.from_row(rows[0]) if rows else None

    # ═══════════════════════════════════════════════════════════════════
    # Responses
    # ═══════════════════════════════════════════════════════════════════

    async def insert_responses(self, alert_id: str, contact_user_ids: Sequence[str]) -> List[Response]:
        if not contact_user_ids:
            return []
        rows = await self._insert(
            RESPONSES,
            [Response(alert_id=alert_id, contact_user_id=uid).to_row() for uid in contact_user_ids],
        )
        return [Response.from_row(r) for r in rows]

    async def responses(self, alert_id: str) -> List[Response]:
        rows = await self.backend.select(RESPONSES, [eq("alert_id", alert_id)])
        return [Response.from_row(r) for r in rows]

    async def get_response(self, alert_id: str, contact_user_id: str) -> Optional[Response]:
        rows = await self.backend.select(
            RESPONSES,
            [eq("alert_id", alert_id), eq("contact_user_id", contact_user_id)],
            limit=1,
        )
        return Response.from_row(rows[0]) if rows else None

    async def accepted_responses(self, alert_id: str) -> List[Response]:
        """Acknowledged and not declined, earliest acknowledgment first."""
        rows = await self.backend.select(
            RESPONSES,
            [eq("alert_id", alert_id), not_null("acknowledged_at"), is_null("declined_at")],
            order_by=[asc("acknowledged_at")],
        )
        return [Response.from_row(r) for r in rows]

    async def mark_acknowledged(self, alert_id: str, contact_user_id: str, at: datetime) -> List[Response]:
        """null → timestamp only; an existing acknowledgment is never overwritten."""
        rows = await self._update(
            RESPONSES,
            {"acknowledged_at": at},
            [
                eq("alert_id", alert_id),
                eq("contact_user_id", contact_user_id),
                is_null("acknowledged_at"),
            ],
        )
        return [Response.from_row(r) for r in rows]

    async def mark_declined(self, alert_id: str, contact_user_id: str, at: datetime) -> List[Response]:
        rows = await self._update(
            RESPONSES,
            {"declined_at": at},
            [
                eq("alert_id", alert_id),
                eq("contact_user_id", contact_user_id),
                is_null("declined_at"),
            ],
        )
        return [Response.from_row(r) for r in rows]

    # ═══════════════════════════════════════════════════════════════════
    # Location samples
    # ═══════════════════════════════════════════════════════════════════

    async def insert_location(self, sample: LocationSample) -> LocationSample:
        rows = await self._insert(LOCATION_SAMPLES, [sample.to_row()])
        return LocationSample.from_row(rows[0])

    async def latest_location(self, alert_id: str, user_id: str) -> Optional[LocationSample]:
        rows = await self.backend.select(
            LOCATION_SAMPLES,
            [eq("alert_id", alert_id), eq("user_id", user_id)],
            order_by=[desc("created_at")],
            limit=1,
        )
        return LocationSample.from_row(rows[0]) if rows else None

    async def locations_for(
        self,
        alert_id: str,
        user_ids: Optional[Sequence[str]] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[LocationSample]:
        """Samples for the alert, newest first, optionally restricted to ``user_ids``."""
        filters = [eq("alert_id", alert_id)]
        if user_ids is not None:
            if not user_ids:
                return []
            filters.append(in_("user_id", user_ids))
        rows = await self.backend.select(
            LOCATION_SAMPLES, filters, order_by=[desc("created_at")], limit=limit,
        )
        return [LocationSample.from_row(r) for r in rows]

    # ═══════════════════════════════════════════════════════════════════
    # Invites
    # ═══════════════════════════════════════════════════════════════════

    async def insert_invite(self, invite: Invite) -> Invite:
        rows = await self._insert(INVITES, [invite.to_row()])
        return Invite.from_row(rows[0])

    async def get_invite(self, token: str) -> Optional[Invite]:
        rows = await self.backend.select(INVITES, [eq("token", token)], limit=1)
        return Invite.from_row(rows[0]) if rows else None

    async def mark_invite_accepted(self, invite_id: str, at: datetime) -> bool:
        """Single-use: only succeeds while accepted_at is still null."""
        rows = await self._update(
            INVITES, {"accepted_at": at}, [eq("id", invite_id), is_null("accepted_at")],
        )
        return bool(rows)

    # ═══════════════════════════════════════════════════════════════════
    # Push subscriptions
    # ═══════════════════════════════════════════════════════════════════

    async def save_push_subscription(self, sub: PushSubscription) -> PushSubscription:
        existing = await self.backend.select(
            PUSH_SUBSCRIPTIONS,
            [eq("user_id", sub.user_id), eq("endpoint", sub.endpoint)],
            limit=1,
        )
        if existing:
            rows = await self.backend.update(
                PUSH_SUBSCRIPTIONS,
                {"p256dh_key": sub.p256dh_key, "auth_key": sub.auth_key},
                [eq("user_id", sub.user_id), eq("endpoint", sub.endpoint)],
            )
        else:
            rows = await self.backend.insert(PUSH_SUBSCRIPTIONS, [sub.to_row()])
        return PushSubscription.from_row(rows[0])

    async def push_subscriptions_for(self, user_ids: Sequence[str]) -> Dict[str, List[PushSubscription]]:
        if not user_ids:
            return {}
        rows = await self.backend.select(PUSH_SUBSCRIPTIONS, [in_("user_id", user_ids)])
        grouped: Dict[str, List[PushSubscription]] = {}
        for row in rows:
            sub = PushSubscription.from_row(row)
            grouped.setdefault(sub.user_id, []).append(sub)
        return grouped

    async def ping(self) -> bool:
        try:
            return await self.backend.ping()
        except StoreError:
            return False
