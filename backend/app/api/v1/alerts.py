"""
FastAPI routes: panic alert lifecycle and live tracking.

    POST /api/v1/alerts                               — raise a panic alert
    GET  /api/v1/alerts/active                        — caller's active alert
    GET  /api/v1/alerts/{id}                          — alert detail (participants)
    POST /api/v1/alerts/{id}/cancel                   — owner cancels
    POST /api/v1/alerts/{id}/resolve                  — owner resolves
    POST /api/v1/alerts/{id}/acknowledge              — notified contact accepts
    POST /api/v1/alerts/{id}/decline                  — notified contact declines
    GET  /api/v1/alerts/{id}/accepted-responders      — accepted set
    GET  /api/v1/alerts/{id}/responder-locations      — recent responder samples
    POST /api/v1/alerts/{id}/locations                — append a location sample
    WS   /api/v1/alerts/{id}/live?user_id=...         — live acceptance + map feed

The caller is identified by the ``X-User-Id`` header (query parameter
for the WebSocket, which browsers cannot decorate with headers).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from backend.app.api.deps import AppContext, get_context, get_current_user
from backend.app.api.schemas import (
    AcceptedRespondersResponse,
    ActiveAlertResponse,
    AlertOut,
    CreateAlertRequest,
    LocationSampleIn,
    LocationSampleOut,
    ResponderLocationsResponse,
    ResponseOut,
)
from backend.app.core.errors import AuthorizationDeniedError, NotFoundError, PanicAlertError
from backend.app.core.logging_config import bind_context
from backend.app.tracking.live_session import LiveSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alerts", tags=["panic-alerts"])

# Application close codes for the live socket
WS_CLOSE_FORBIDDEN = 4403
WS_CLOSE_NOT_FOUND = 4404


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.post("", response_model=AlertOut, status_code=201)
async def create_alert(
    body: CreateAlertRequest,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    """
    Raise a panic alert for the caller.

    Any older active alert of the caller is auto-cancelled first. A second
    alert within 30 s of the previous one is refused with 429.
    """
    location = body.location.model_dump() if body.location else None
    alert = await ctx.lifecycle.create_alert(user_id, body.alert_type, location)
    return alert.to_dict()


@router.get("/active", response_model=ActiveAlertResponse)
async def get_active_alert(
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    alert = await ctx.lifecycle.get_active_alert(user_id)
    return {"alert": alert.to_dict() if alert else None}


@router.get("/{alert_id}", response_model=AlertOut)
async def get_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    alert = await ctx.lifecycle.get_alert(alert_id, user_id)
    return alert.to_dict()


@router.post("/{alert_id}/cancel", response_model=AlertOut)
async def cancel_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    alert = await ctx.lifecycle.cancel_alert(alert_id, user_id)
    return alert.to_dict()


@router.post("/{alert_id}/resolve", response_model=AlertOut)
async def resolve_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    alert = await ctx.lifecycle.resolve_alert(alert_id, user_id)
    return alert.to_dict()


# ---------------------------------------------------------------------------
# Responders
# ---------------------------------------------------------------------------

@router.post("/{alert_id}/acknowledge", response_model=ResponseOut)
async def acknowledge_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    response = await ctx.lifecycle.acknowledge(alert_id, user_id)
    return response.to_dict()


@router.post("/{alert_id}/decline", response_model=ResponseOut)
async def decline_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    response = await ctx.lifecycle.decline(alert_id, user_id)
    return response.to_dict()


@router.get("/{alert_id}/accepted-responders", response_model=AcceptedRespondersResponse)
async def accepted_responders(
    alert_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    responses = await ctx.lifecycle.get_accepted_responders(alert_id, user_id)
    return {
        "alert_id": alert_id,
        "accepted_user_ids": [r.contact_user_id for r in responses],
        "responses": [r.to_dict() for r in responses],
        "count": len(responses),
    }


@router.get("/{alert_id}/responder-locations", response_model=ResponderLocationsResponse)
async def responder_locations(
    alert_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    result = await ctx.lifecycle.get_responder_locations(alert_id, user_id)
    return result.to_dict()


@router.post("/{alert_id}/locations", response_model=LocationSampleOut, status_code=201)
async def save_location(
    alert_id: str,
    body: LocationSampleIn,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    sample = await ctx.lifecycle.save_location(
        alert_id, user_id, body.latitude, body.longitude, body.accuracy,
    )
    return sample.to_dict()


# ---------------------------------------------------------------------------
# Live feed
# ---------------------------------------------------------------------------

@router.websocket("/{alert_id}/live")
async def live_feed(
    websocket: WebSocket,
    alert_id: str,
    user_id: str = Query(..., min_length=1),
) -> None:
    """
    Live acceptance and map feed for one participant.

    Server → client: ``{"type": "snapshot", ...}`` on every change,
    ``{"type": "error", ...}`` for rejected messages, ``{"type": "pong"}``.
    Client → server: ``position`` (lat/lng fix from the device),
    ``refresh`` (force a location reload), ``ping``.
    """
    ctx: AppContext = websocket.app.state.context
    bind_context(user_id=user_id, alert_id=alert_id, endpoint=websocket.url.path)
    await websocket.accept()

    try:
        alert = await ctx.lifecycle.get_alert(alert_id, user_id)
    except NotFoundError as exc:
        await websocket.send_json({"type": "error", "message": exc.message})
        await websocket.close(code=WS_CLOSE_NOT_FOUND)
        return
    except AuthorizationDeniedError as exc:
        await websocket.send_json({"type": "error", "message": exc.message})
        await websocket.close(code=WS_CLOSE_FORBIDDEN)
        return

    session = LiveSession(
        alert,
        user_id,
        lifecycle=ctx.lifecycle,
        channels=ctx.channels,
        send=websocket.send_json,
    )
    try:
        await session.start()
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object"})
                continue
            try:
                reply = await session.handle_message(message)
            except PanicAlertError as exc:
                reply = {"type": "error", "message": exc.message}
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.debug("Live socket for %s on %s disconnected", user_id, alert_id)
    finally:
        await session.close()
