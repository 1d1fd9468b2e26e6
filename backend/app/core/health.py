"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Row store reachability (memory or PostgreSQL)
    • Event transport reachability (in-process or Redis pub/sub)
    • Live channel registry (open subscriptions, failed channels)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from backend.app.core.config import settings
from backend.app.realtime.channel import ChannelManager
from backend.app.realtime.events import ChannelStatus
from backend.app.realtime.transport import Transport
from backend.app.store.base import StoreBackend

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_store(backend: StoreBackend) -> ComponentHealth:
    """Round-trip the row store."""
    comp = ComponentHealth(name=f"store:{backend.name}")
    start = time.monotonic()
    try:
        ok = await backend.ping()
        comp.status = HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY
        comp.message = "Store reachable" if ok else "Store ping failed"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_transport(transport: Transport) -> ComponentHealth:
    """Round-trip the event transport. Alerts still work without it, via polling."""
    comp = ComponentHealth(name=f"realtime:{transport.name}")
    start = time.monotonic()
    try:
        ok = await transport.ping()
        comp.status = HealthStatus.HEALTHY if ok else HealthStatus.DEGRADED
        comp.message = "Transport reachable" if ok else "Transport ping failed, clients fall back to polling"
    except Exception as e:
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_channels(channels: ChannelManager) -> ComponentHealth:
    """Sessions whose channel gave up are polling only; that is degraded, not down."""
    comp = ComponentHealth(name="channels")
    subs = [s for s in (channels.get(key) for key in channels.keys) if s is not None]
    by_status: Dict[str, int] = {}
    for sub in subs:
        by_status[sub.status.value] = by_status.get(sub.status.value, 0) + 1
    gave_up = by_status.get(ChannelStatus.GAVE_UP.value, 0)
    comp.details = {"open": len(subs), "gave_up": gave_up, "by_status": by_status}
    if gave_up:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{gave_up} channel(s) gave up reconnecting"
    else:
        comp.message = f"{len(subs)} open channel(s)"
    return comp


async def run_health_check(
    backend: StoreBackend,
    transport: Transport,
    channels: ChannelManager,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(await check_store(backend))
    report.components.append(await check_transport(transport))
    report.components.append(check_channels(channels))

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
