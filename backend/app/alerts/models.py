"""
models.py — Shared data structures for the panic-alert system.

Defines:
    • AlertStatus  — lifecycle states (active → cancelled | resolved)
    • AlertType    — fixed emergency categories
    • GeoPoint     — validated coordinate pair + optional address
    • Alert        — one emergency episode
    • Contact      — an emergency contact row (notifiable once verified + linked)
    • Response     — per-contact acknowledgment ledger entry
    • LocationSample — append-only position stream entry
    • Invite       — single-use contact invitation
    • PushSubscription — out-of-band push endpoint for a user

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌──────────┐  cancel (owner) / supersede (new alert)  ┌───────────┐
    │  ACTIVE  │ ───────────────────────────────────────▶ │ CANCELLED │
    └────┬─────┘                                          └───────────┘
         │ resolve (owner)                                ┌───────────┐
         └──────────────────────────────────────────────▶ │ RESOLVED  │
                                                          └───────────┘

Terminal states are immutable except for resolved_at. At most one ACTIVE
alert exists per owner after create_alert completes.

Rows travel through the store as plain dicts; ``from_row`` / ``to_row``
convert at the boundary so the domain code never sees storage details.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Relations
# ═══════════════════════════════════════════════════════════════════════════

ALERTS = "alerts"
CONTACTS = "contacts"
RESPONSES = "responses"
LOCATION_SAMPLES = "location_samples"
INVITES = "invites"
PUSH_SUBSCRIPTIONS = "push_subscriptions"

RELATIONS = (
    ALERTS,
    CONTACTS,
    RESPONSES,
    LOCATION_SAMPLES,
    INVITES,
    PUSH_SUBSCRIPTIONS,
)


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    """Alert lifecycle states."""
    ACTIVE    = "active"
    CANCELLED = "cancelled"
    RESOLVED  = "resolved"


class AlertType(str, Enum):
    """Emergency categories accepted at alert creation."""
    ROBBERY        = "robbery"
    HOUSE_BREAKING = "house_breaking"
    CAR_JACKING    = "car_jacking"
    ACCIDENT       = "accident"
    OTHER          = "other"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def new_id() -> str:
    return str(uuid.uuid4())


def new_invite_token() -> str:
    return secrets.token_urlsafe(24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair with optional street address."""
    lat: float
    lng: float
    address: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng, "address": self.address}


@dataclass
class Alert:
    """
    One emergency episode triggered by a user.

    Attributes
    ----------
    id : str
    owner_id : str
        User who triggered the alert.
    status : AlertStatus
    alert_type : AlertType
    location : GeoPoint | None
        Where the alert was raised; None if unknown or invalid.
    triggered_at : datetime
    resolved_at : datetime | None
        Set on cancel, resolve or supersession.
    contacts_notified : list of str
        Ordered, de-duplicated contact user ids, frozen at creation.
    """
    owner_id: str
    alert_type: AlertType = AlertType.OTHER
    status: AlertStatus = AlertStatus.ACTIVE
    location: Optional[GeoPoint] = None
    contacts_notified: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    triggered_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    def involves(self, user_id: str) -> bool:
        """True for the owner and for every notified contact."""
        return user_id == self.owner_id or user_id in self.contacts_notified

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "alert_type": self.alert_type.value,
            "location_lat": self.location.lat if self.location else None,
            "location_lng": self.location.lng if self.location else None,
            "address": self.location.address if self.location else None,
            "triggered_at": self.triggered_at,
            "resolved_at": self.resolved_at,
            "contacts_notified": list(self.contacts_notified),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Alert":
        location = None
        if row.get("location_lat") is not None and row.get("location_lng") is not None:
            location = GeoPoint(
                lat=float(row["location_lat"]),
                lng=float(row["location_lng"]),
                address=row.get("address"),
            )
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            status=AlertStatus(row["status"]),
            alert_type=AlertType(row["alert_type"]),
            location=location,
            triggered_at=row["triggered_at"],
            resolved_at=row.get("resolved_at"),
            contacts_notified=list(row.get("contacts_notified") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "alert_type": self.alert_type.value,
            "location": self.location.to_dict() if self.location else None,
            "triggered_at": _iso(self.triggered_at),
            "resolved_at": _iso(self.resolved_at),
            "contacts_notified": list(self.contacts_notified),
        }


@dataclass
class Contact:
    """An emergency contact owned by ``owner_id``."""
    owner_id: str
    contact_user_id: Optional[str] = None
    verified: bool = False
    priority: int = 0
    name: Optional[str] = None
    email: Optional[str] = None
    relationship: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_notifiable(self) -> bool:
        return self.verified and bool(self.contact_user_id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "contact_user_id": self.contact_user_id,
            "verified": self.verified,
            "priority": self.priority,
            "name": self.name,
            "email": self.email,
            "relationship": self.relationship,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Contact":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            contact_user_id=row.get("contact_user_id"),
            verified=bool(row.get("verified")),
            priority=int(row.get("priority") or 0),
            name=row.get("name"),
            email=row.get("email"),
            relationship=row.get("relationship"),
            created_at=row.get("created_at") or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_row()
        d["created_at"] = _iso(self.created_at)
        d["notifiable"] = self.is_notifiable
        return d


@dataclass
class Response:
    """Acknowledgment ledger entry for (alert, contact)."""
    alert_id: str
    contact_user_id: str
    acknowledged_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None

    @property
    def is_accepted(self) -> bool:
        return self.acknowledged_at is not None and self.declined_at is None

    def to_row(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "contact_user_id": self.contact_user_id,
            "acknowledged_at": self.acknowledged_at,
            "declined_at": self.declined_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Response":
        return cls(
            alert_id=row["alert_id"],
            contact_user_id=row["contact_user_id"],
            acknowledged_at=row.get("acknowledged_at"),
            declined_at=row.get("declined_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "contact_user_id": self.contact_user_id,
            "acknowledged_at": _iso(self.acknowledged_at),
            "declined_at": _iso(self.declined_at),
        }


@dataclass
class LocationSample:
    """One position fix of one party during one alert."""
    user_id: str
    alert_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_id": self.alert_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LocationSample":
        accuracy = row.get("accuracy")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            alert_id=row["alert_id"],
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            accuracy=float(accuracy) if accuracy is not None else None,
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_row()
        d["created_at"] = _iso(self.created_at)
        return d


@dataclass
class Invite:
    """Single-use invitation turning two users into linked contacts."""
    inviter_user_id: str
    target_email: str
    expires_at: datetime
    token: str = field(default_factory=new_invite_token)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token": self.token,
            "inviter_user_id": self.inviter_user_id,
            "target_email": self.target_email,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "accepted_at": self.accepted_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Invite":
        return cls(
            id=row["id"],
            token=row["token"],
            inviter_user_id=row["inviter_user_id"],
            target_email=row["target_email"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            accepted_at=row.get("accepted_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token": self.token,
            "inviter_user_id": self.inviter_user_id,
            "target_email": self.target_email,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "accepted_at": _iso(self.accepted_at),
        }


@dataclass
class PushSubscription:
    """Web-push endpoint registered by a user device."""
    user_id: str
    endpoint: str
    p256dh_key: Optional[str] = None
    auth_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "endpoint": self.endpoint,
            "p256dh_key": self.p256dh_key,
            "auth_key": self.auth_key,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PushSubscription":
        return cls(
            user_id=row["user_id"],
            endpoint=row["endpoint"],
            p256dh_key=row.get("p256dh_key"),
            auth_key=row.get("auth_key"),
            created_at=row.get("created_at") or utcnow(),
        )


@dataclass
class DeliveryResult:
    """Outcome of one out-of-band push attempt."""
    user_id: str
    delivered: bool
    skipped: bool = False
    error_message: Optional[str] = None
    mode: str = "live"  # live | simulated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "delivered": self.delivered,
            "skipped": self.skipped,
            "error_message": self.error_message,
            "mode": self.mode,
        }
