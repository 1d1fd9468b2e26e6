"""
ORM tables for the SQL store backend.

Indexes follow the predicates the alert layer issues: owner + status for
supersession and the rate-limit window, alert id for responses and
location samples, token for invites.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    location_lat: Mapped[Optional[float]] = mapped_column(Float)
    location_lng: Mapped[Optional[float]] = mapped_column(Float)
    address: Mapped[Optional[str]] = mapped_column(String(512))
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    contacts_notified: Mapped[List[str]] = mapped_column(JSONB, nullable=False, default=list)

    __table_args__ = (
        Index("ix_alerts_owner_status", "owner_id", "status"),
        Index("ix_alerts_triggered_at", "triggered_at"),
    )


class ContactRow(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    contact_user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    relationship: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ResponseRow(Base):
    __tablename__ = "responses"

    alert_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    contact_user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class LocationSampleRow(Base):
    __tablename__ = "location_samples"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_id: Mapped[str] = mapped_column(String(36), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_location_samples_alert_created", "alert_id", "created_at"),
    )


class InviteRow(Base):
    __tablename__ = "invites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    inviter_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_email: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class PushSubscriptionRow(Base):
    __tablename__ = "push_subscriptions"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    endpoint: Mapped[str] = mapped_column(String(1024), primary_key=True)
    p256dh_key: Mapped[Optional[str]] = mapped_column(String(255))
    auth_key: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


TABLES = {
    row.__tablename__: row.__table__
    for row in (
        AlertRow,
        ContactRow,
        ResponseRow,
        LocationSampleRow,
        InviteRow,
        PushSubscriptionRow,
    )
}
