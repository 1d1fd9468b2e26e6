"""
FastAPI route: browser push subscription registration.

    POST /api/v1/push/register — store (or refresh) the caller's push endpoint
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from backend.app.alerts.models import PushSubscription
from backend.app.api.deps import AppContext, get_context, get_current_user
from backend.app.api.schemas import PushRegisterIn, PushRegisterResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/push", tags=["push"])


@router.post("/register", response_model=PushRegisterResponse)
async def register_push(
    body: PushRegisterIn,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    subscription = PushSubscription(
        user_id=user_id,
        endpoint=body.endpoint,
        p256dh_key=body.keys.p256dh,
        auth_key=body.keys.auth,
    )
    await ctx.store.save_push_subscription(subscription)
    logger.info("Push endpoint registered for %s", user_id, extra={"user_id": user_id})
    return {"user_id": user_id, "endpoint": body.endpoint, "registered": True}
