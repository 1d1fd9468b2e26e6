"""
contacts.py — Emergency contacts and the invite round-trip.

A contact only becomes notifiable once it is verified AND linked to a user
account. That happens exclusively through an accepted invite:

    inviter ──create_invite(email)──▶ Invite(token, expires_at = now + 7 d)
    invitee ──accept_invite(token, email)──▶
        accepted_at: null → now   (single-use, conditional update)
        inviter → invitee contact: verified, linked
        invitee → inviter contact: verified, linked

Existing rows are upgraded in place (a manual contact with the invitee's
email, or a previous link), so repeating the round-trip never duplicates a
contact.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from backend.app.alerts.models import Contact, Invite, utcnow
from backend.app.core.config import settings
from backend.app.core.errors import AuthorizationDeniedError, NotFoundError, ValidationError
from backend.app.store.alert_store import AlertStore

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _require_email(email: Optional[str]) -> str:
    normalized = normalize_email(email)
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain:
        raise ValidationError("A valid email address is required", field="email")
    return normalized


class ContactService:
    def __init__(
        self,
        store: AlertStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        invite_ttl_days: Optional[int] = None,
        invite_base_url: Optional[str] = None,
    ):
        self.store = store
        self.clock = clock
        self.invite_ttl = timedelta(
            days=invite_ttl_days if invite_ttl_days is not None else settings.INVITE_TTL_DAYS
        )
        self.invite_base_url = (invite_base_url or settings.INVITE_BASE_URL).rstrip("/")

    # ── Contacts ──

    async def list_contacts(self, owner_id: str) -> List[Contact]:
        return await self.store.contacts_for(owner_id)

    async def add_contact(
        self,
        owner_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        relationship: Optional[str] = None,
        priority: int = 0,
    ) -> Contact:
        """Manual entry; stays unverified until an invite round-trips."""
        name = (name or "").strip() or None
        if not name and not email:
            raise ValidationError("A contact needs a name or an email")
        contact = Contact(
            owner_id=owner_id,
            name=name,
            email=_require_email(email) if email else None,
            relationship=relationship,
            priority=priority,
            created_at=self.clock(),
        )
        contact = await self.store.insert_contact(contact)
        logger.info("Contact %s added for %s", contact.id, owner_id, extra={"user_id": owner_id})
        return contact

    # ── Invites ──

    def invite_url(self, invite: Invite) -> str:
        return f"{self.invite_base_url}/{invite.token}"

    async def create_invite(self, inviter_id: str, email: str) -> Invite:
        now = self.clock()
        invite = Invite(
            inviter_user_id=inviter_id,
            target_email=_require_email(email),
            created_at=now,
            expires_at=now + self.invite_ttl,
        )
        invite = await self.store.insert_invite(invite)
        logger.info(
            "Invite %s created by %s", invite.id, inviter_id, extra={"user_id": inviter_id},
        )
        return invite

    async def get_invite(self, token: str) -> Invite:
        invite = await self.store.get_invite(token)
        if invite is None:
            raise NotFoundError("Invite", token=token)
        return invite

    async def accept_invite(self, token: str, user_id: str, email: str) -> Tuple[Contact, Contact]:
        """Returns (inviter's contact for the invitee, invitee's contact for the inviter)."""
        invite = await self.get_invite(token)
        now = self.clock()
        if invite.accepted_at is not None:
            raise ValidationError("Invite has already been accepted")
        if invite.is_expired(now):
            raise ValidationError("Invite has expired")
        if normalize_email(email) != invite.target_email:
            raise AuthorizationDeniedError("This invite was sent to a different email address")
        if user_id == invite.inviter_user_id:
            raise ValidationError("You cannot accept your own invite")

        # Links are idempotent, so the invite is only spent once both exist;
        # a failed link leaves it open for another attempt.
        forward = await self._link(invite.inviter_user_id, user_id, email=invite.target_email)
        reverse = await self._link(user_id, invite.inviter_user_id)
        if not await self.store.mark_invite_accepted(invite.id, now):
            raise ValidationError("Invite has already been accepted")

        logger.info(
            "Invite %s accepted: %s <-> %s linked",
            invite.id, invite.inviter_user_id, user_id,
            extra={"user_id": user_id},
        )
        return forward, reverse

    async def _link(self, owner_id: str, contact_user_id: str, *, email: Optional[str] = None) -> Contact:
        existing = await self.store.find_contact(owner_id, contact_user_id)
        if existing is None and email:
            existing = next(
                (
                    c for c in await self.store.contacts_for(owner_id)
                    if c.contact_user_id is None and c.email == email
                ),
                None,
            )
        if existing is not None:
            if existing.is_notifiable and existing.contact_user_id == contact_user_id:
                return existing
            updated = await self.store.update_contact(
                existing.id, {"contact_user_id": contact_user_id, "verified": True},
            )
            return updated or existing
        return await self.store.insert_contact(
            Contact(
                owner_id=owner_id,
                contact_user_id=contact_user_id,
                verified=True,
                email=email,
                created_at=self.clock(),
            )
        )
