"""
web_push.py — Out-of-band push channel for emergency alerts.

Delivery mechanism:
    • POST to a push gateway (PUSH_GATEWAY_URL) with the subscription
      endpoint/keys and a small JSON notification body
    • The gateway owns VAPID signing and the push-service round trip

When no gateway is configured the send is simulated: the notification is
logged and reported as delivered with mode="simulated". That keeps local
development and tests free of network calls.

Limitations:
    - Requires the contact's device to have registered a subscription
    - Not delivered while the device is offline (queued by the push service)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.alerts.models import Alert, DeliveryResult, PushSubscription

logger = logging.getLogger(__name__)


def build_notification(alert: Alert) -> Dict[str, Any]:
    """Minimal notification body; rendering is left to the client."""
    kind = alert.alert_type.value.replace("_", " ")
    return {
        "title": "Emergency alert",
        "body": f"A contact triggered a {kind} alert",
        "tag": alert.id,
        "data": {
            "alert_id": alert.id,
            "alert_type": alert.alert_type.value,
            "url": f"/alert/{alert.id}",
        },
        "requireInteraction": True,
    }


async def send(
    subscription: PushSubscription,
    notification: Dict[str, Any],
    *,
    client: Optional[httpx.AsyncClient] = None,
    gateway_url: Optional[str] = None,
) -> DeliveryResult:
    """
    Send one push notification to one registered device.

    Parameters
    ----------
    subscription : PushSubscription
        Target endpoint and keys.
    notification : dict
        Body built by ``build_notification``.
    client : httpx.AsyncClient, optional
        Shared client; required when ``gateway_url`` is set.
    gateway_url : str, optional
        Push gateway; None → simulated delivery.

    Returns
    -------
    DeliveryResult
        Delivered / failed for this device. Transport errors propagate so the
        caller's settled-results collection records them per recipient.
    """
    if not gateway_url or client is None:
        logger.info(
            "[WEB_PUSH] (simulated) alert %s → %s",
            notification.get("tag"), subscription.user_id,
            extra={"user_id": subscription.user_id},
        )
        return DeliveryResult(user_id=subscription.user_id, delivered=True, mode="simulated")

    response = await client.post(
        gateway_url,
        json={
            "subscription": {
                "endpoint": subscription.endpoint,
                "keys": {"p256dh": subscription.p256dh_key, "auth": subscription.auth_key},
            },
            "notification": notification,
        },
    )
    if response.status_code >= 400:
        logger.warning(
            "[WEB_PUSH] Gateway rejected push for %s: HTTP %d",
            subscription.user_id, response.status_code,
            extra={"user_id": subscription.user_id, "status_code": response.status_code},
        )
        return DeliveryResult(
            user_id=subscription.user_id,
            delivered=False,
            error_message=f"HTTP {response.status_code}",
        )

    logger.info("[WEB_PUSH] alert %s → %s", notification.get("tag"), subscription.user_id)
    return DeliveryResult(user_id=subscription.user_id, delivered=True)
