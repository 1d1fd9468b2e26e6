"""
fanout.py — Notification fan-out for a freshly created alert.

Two independent, best-effort deliveries per alert:

    (a) realtime  implicit: the alert INSERT already carries
                  contacts_notified, so every contact-side subscription
                  filtering on it observes a complete row
    (b) push      explicit: one web-push attempt per notified contact

Push attempts are issued concurrently and collected as settled results
(``asyncio.gather(..., return_exceptions=True)``): one recipient's failure
never affects another, and nothing here ever raises into alert creation.
Contacts without a registered push subscription are skipped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

import httpx

from backend.app.alerts.channels import web_push
from backend.app.alerts.models import Alert, DeliveryResult, PushSubscription
from backend.app.core.config import settings
from backend.app.store.alert_store import AlertStore
from backend.app.store.base import StoreError

logger = logging.getLogger(__name__)

PushSender = Callable[..., Awaitable[DeliveryResult]]


class NotificationFanout:
    def __init__(
        self,
        store: AlertStore,
        *,
        sender: PushSender = web_push.send,
        gateway_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.sender = sender
        self.gateway_url = gateway_url if gateway_url is not None else settings.PUSH_GATEWAY_URL
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.PUSH_TIMEOUT_SECONDS
        )

    async def _deliver_one(
        self,
        user_id: str,
        subscriptions: List[PushSubscription],
        notification: dict,
        client: Optional[httpx.AsyncClient],
    ) -> DeliveryResult:
        if not subscriptions:
            logger.debug("No push subscription for %s, skipping", user_id)
            return DeliveryResult(user_id=user_id, delivered=False, skipped=True)

        last_error: Optional[str] = None
        for sub in subscriptions:
            try:
                result = await self.sender(
                    sub, notification, client=client, gateway_url=self.gateway_url,
                )
            except (httpx.HTTPError, OSError) as exc:
                last_error = str(exc) or type(exc).__name__
                continue
            if result.delivered:
                return result
            last_error = result.error_message
        return DeliveryResult(user_id=user_id, delivered=False, error_message=last_error)

    async def notify(self, alert: Alert) -> List[DeliveryResult]:
        """Push to every notified contact; returns one settled result each."""
        recipients = list(alert.contacts_notified)
        if not recipients:
            return []

        start = time.monotonic()
        try:
            subscriptions = await self.store.push_subscriptions_for(recipients)
        except StoreError as exc:
            logger.warning(
                "Push fan-out for alert %s aborted, subscriptions unavailable: %s",
                alert.id, exc, extra={"alert_id": alert.id},
            )
            return []

        notification = web_push.build_notification(alert)
        client = (
            httpx.AsyncClient(timeout=self.timeout_seconds) if self.gateway_url else None
        )
        try:
            settled = await asyncio.gather(
                *[
                    self._deliver_one(uid, subscriptions.get(uid, []), notification, client)
                    for uid in recipients
                ],
                return_exceptions=True,
            )
        finally:
            if client is not None:
                await client.aclose()

        results: List[DeliveryResult] = []
        for uid, outcome in zip(recipients, settled):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Push to %s failed for alert %s: %s", uid, alert.id, outcome,
                    extra={"alert_id": alert.id, "user_id": uid},
                )
                results.append(DeliveryResult(user_id=uid, delivered=False, error_message=str(outcome)))
            else:
                results.append(outcome)

        delivered = sum(1 for r in results if r.delivered)
        skipped = sum(1 for r in results if r.skipped)
        logger.info(
            "Push fan-out for alert %s: %d delivered, %d skipped, %d failed",
            alert.id, delivered, skipped, len(results) - delivered - skipped,
            extra={
                "alert_id": alert.id,
                "recipient_count": len(recipients),
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            },
        )
        return results
