"""
Pydantic request / response schemas for the HTTP API.

Request bodies validate shape only; domain rules (alert type enum,
coordinate ranges for alert locations) are enforced by the services so
that an out-of-range alert location is dropped rather than rejected.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ── Alerts ──

class LocationIn(BaseModel):
    """Alert location. Out-of-range coordinates are dropped silently."""
    lat: float = Field(..., examples=[-26.2])
    lng: float = Field(..., examples=[28.0])
    address: Optional[str] = Field(None, max_length=512, examples=["12 Main Rd, Johannesburg"])


class CreateAlertRequest(BaseModel):
    alert_type: str = Field(
        "other", examples=["robbery"],
        description="robbery / house_breaking / car_jacking / accident / other",
    )
    location: Optional[LocationIn] = None


class GeoPointOut(BaseModel):
    lat: float
    lng: float
    address: Optional[str] = None


class AlertOut(BaseModel):
    id: str
    owner_id: str
    status: str
    alert_type: str
    location: Optional[GeoPointOut] = None
    triggered_at: Optional[str]
    resolved_at: Optional[str] = None
    contacts_notified: List[str] = Field(default_factory=list)


class ActiveAlertResponse(BaseModel):
    alert: Optional[AlertOut] = None


class ResponseOut(BaseModel):
    alert_id: str
    contact_user_id: str
    acknowledged_at: Optional[str] = None
    declined_at: Optional[str] = None


class AcceptedRespondersResponse(BaseModel):
    alert_id: str
    accepted_user_ids: List[str]
    responses: List[ResponseOut]
    count: int


class LocationSampleIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, examples=[-26.2041])
    longitude: float = Field(..., ge=-180, le=180, examples=[28.0473])
    accuracy: Optional[float] = Field(None, ge=0, examples=[12.5])


class LocationSampleOut(BaseModel):
    id: str
    user_id: str
    alert_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    created_at: Optional[str]


class ResponderLocationsResponse(BaseModel):
    accepted_user_ids: List[str]
    locations: List[LocationSampleOut]
    grouped_by_user: Dict[str, List[LocationSampleOut]]
    count: int


# ── Contacts ──

class ContactIn(BaseModel):
    name: Optional[str] = Field(None, max_length=255, examples=["Thandi"])
    email: Optional[str] = Field(None, max_length=255, examples=["thandi@example.com"])
    relationship: Optional[str] = Field(None, max_length=64, examples=["sister"])
    priority: int = Field(0, ge=0, le=100)


class ContactOut(BaseModel):
    id: str
    owner_id: str
    contact_user_id: Optional[str] = None
    verified: bool
    notifiable: bool
    priority: int
    name: Optional[str] = None
    email: Optional[str] = None
    relationship: Optional[str] = None
    created_at: Optional[str]


class InviteIn(BaseModel):
    email: str = Field(..., max_length=255, examples=["thandi@example.com"])


class InviteOut(BaseModel):
    id: str
    token: str
    inviter_user_id: str
    target_email: str
    created_at: Optional[str]
    expires_at: Optional[str]
    accepted_at: Optional[str] = None
    invite_url: Optional[str] = None


class AcceptInviteIn(BaseModel):
    email: str = Field(..., max_length=255, description="Email of the accepting account")


class AcceptInviteResponse(BaseModel):
    contact: ContactOut
    reverse_contact: ContactOut


# ── Push ──

class PushKeysIn(BaseModel):
    p256dh: Optional[str] = None
    auth: Optional[str] = None


class PushRegisterIn(BaseModel):
    endpoint: str = Field(..., max_length=1024)
    keys: PushKeysIn = Field(default_factory=PushKeysIn)

    @field_validator("endpoint")
    @classmethod
    def _endpoint_is_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("https://", "http://")):
            raise ValueError("endpoint must be an http(s) URL")
        return v


class PushRegisterResponse(BaseModel):
    user_id: str
    endpoint: str
    registered: bool = True


# ── Health ──

class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    timestamp: str
    uptime_seconds: float
    components: List[Dict[str, Any]]
