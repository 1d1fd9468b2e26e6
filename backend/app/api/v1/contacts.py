"""
FastAPI routes: emergency contacts and invitations.

    GET  /api/v1/contacts                        — caller's contacts
    POST /api/v1/contacts                        — add a manual (unverified) contact
    POST /api/v1/contacts/invites                — invite someone by email
    GET  /api/v1/contacts/invites/{token}        — view an invite
    POST /api/v1/contacts/invites/{token}/accept — accept, linking both users

Only contacts linked through an accepted invite are verified, and only
verified contacts are notified when an alert is raised.
"""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from backend.app.api.deps import AppContext, get_context, get_current_user
from backend.app.api.schemas import (
    AcceptInviteIn,
    AcceptInviteResponse,
    ContactIn,
    ContactOut,
    InviteIn,
    InviteOut,
)

router = APIRouter(prefix="/api/v1/contacts", tags=["contacts"])


@router.get("", response_model=List[ContactOut])
async def list_contacts(
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> List[Dict[str, Any]]:
    contacts = await ctx.contacts.list_contacts(user_id)
    return [c.to_dict() for c in contacts]


@router.post("", response_model=ContactOut, status_code=201)
async def add_contact(
    body: ContactIn,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    contact = await ctx.contacts.add_contact(
        user_id,
        name=body.name,
        email=body.email,
        relationship=body.relationship,
        priority=body.priority,
    )
    return contact.to_dict()


@router.post("/invites", response_model=InviteOut, status_code=201)
async def create_invite(
    body: InviteIn,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    invite = await ctx.contacts.create_invite(user_id, body.email)
    return {**invite.to_dict(), "invite_url": ctx.contacts.invite_url(invite)}


@router.get("/invites/{token}", response_model=InviteOut)
async def get_invite(
    token: str,
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    invite = await ctx.contacts.get_invite(token)
    return invite.to_dict()


@router.post("/invites/{token}/accept", response_model=AcceptInviteResponse)
async def accept_invite(
    token: str,
    body: AcceptInviteIn,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    forward, reverse = await ctx.contacts.accept_invite(token, user_id, body.email)
    return {"contact": forward.to_dict(), "reverse_contact": reverse.to_dict()}
