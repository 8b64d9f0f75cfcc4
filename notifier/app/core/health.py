"""
Health check aggregation — deep probe of the delivery subsystems.

Checks:
    • Channel registry (enabled channels, always-available channel)
    • Rate limiter backend (Redis PING when configured)
    • Delivery ledger backend
    • Provider configuration (simulation vs. live credentials)

Returns a structured report suitable for:
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

from notifier.app.core.config import settings

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


_start_time = time.monotonic()


async def check_registry(stack) -> ComponentHealth:
    comp = ComponentHealth(name="channel_registry")
    start = time.monotonic()
    enabled = [c.type.value for c in stack.registry.list_enabled()]
    always = stack.registry.always_available
    comp.details = {
        "enabled": enabled,
        "always_available": always.value if always else None,
    }
    if not enabled:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "No channels enabled"
    elif always is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Always-available channel disabled"
    else:
        comp.message = f"{len(enabled)} channel(s) enabled"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_rate_limiter(stack) -> ComponentHealth:
    comp = ComponentHealth(name="rate_limiter")
    start = time.monotonic()
    backend = stack.rate_limiter.backend
    comp.details = {"backend": backend}
    if backend == "redis":
        from notifier.app.core.cache import ping_redis
        if await ping_redis():
            comp.message = "Redis reachable"
        else:
            # Limiter fails open while Redis is down
            comp.status = HealthStatus.DEGRADED
            comp.message = "Redis unreachable, rate limits not enforced"
    else:
        comp.message = "In-process windows"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_delivery_store(stack) -> ComponentHealth:
    comp = ComponentHealth(name="delivery_store")
    start = time.monotonic()
    backend = stack.tracker.store.backend
    comp.details = {"backend": backend}
    if backend == "database":
        comp.details["url"] = stack.settings.DATABASE_URL.split("@")[-1]
        try:
            await stack.tracker.store.get_alert("__health__")
            comp.message = "Database reachable"
        except Exception as e:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = str(e)
    else:
        comp.message = "In-memory ledger"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_providers(stack) -> ComponentHealth:
    comp = ComponentHealth(name="providers")
    start = time.monotonic()
    cfg = stack.settings
    providers = {
        "email": cfg.EMAIL_PROVIDER,
        "sms": cfg.SMS_PROVIDER,
        "whatsapp": cfg.WHATSAPP_PROVIDER,
        "slack": cfg.SLACK_PROVIDER,
    }
    missing = []
    if cfg.EMAIL_PROVIDER == "resend" and not cfg.RESEND_API_KEY:
        missing.append("RESEND_API_KEY")
    if "twilio" in (cfg.SMS_PROVIDER, cfg.WHATSAPP_PROVIDER) and not (
        cfg.TWILIO_ACCOUNT_SID and cfg.TWILIO_AUTH_TOKEN
    ):
        missing.append("TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN")

    comp.details = {"providers": providers, "transports": sorted(c.value for c in stack.dispatcher.transports)}
    if missing:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Missing credentials: {', '.join(missing)}"
    elif all(p == "simulation" for p in providers.values()):
        comp.message = "All providers simulated"
    else:
        comp.message = "Live providers configured"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(stack) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        version=stack.settings.APP_VERSION,
        environment=stack.settings.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_registry, check_rate_limiter, check_delivery_store, check_providers):
        report.components.append(await check(stack))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
