"""
tracker.py — Delivery ledger and engagement analytics.

The tracker owns every write to alerts and delivery attempts:

    record_alert / set_alert_status     alert lifecycle
    record_attempt                      dispatcher outcome (sent | failed)
    apply_provider_event                provider receipts (delivered/opened/clicked)

and answers the analytics read:

    get_delivery_stats(recipient_id, window_days)

        delivery_rate = delivered / sent
        open_rate     = opened / delivered
        click_rate    = clicked / opened

An attempt that has reached a later state counts toward every earlier
one, so an "opened" attempt is also sent and delivered. Rates with a zero
denominator are 0.0.

Storage is pluggable: InMemoryDeliveryStore for development and tests,
SqlAlchemyDeliveryStore (sql_store.py) when DELIVERY_STORE=database.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from notifier.app.core.errors import NotFoundError, ValidationError
from notifier.app.delivery.models import (
    CALLBACK_STATUSES,
    Alert,
    AlertStatus,
    AttemptStatus,
    ChannelPerformance,
    DeliveryAttempt,
    DeliveryStats,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Storage interface
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryStore(abc.ABC):
    backend = "abstract"

    @abc.abstractmethod
    async def save_alert(self, alert: Alert) -> None: ...

    @abc.abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]: ...

    @abc.abstractmethod
    async def list_alerts_for_recipient(
        self, recipient_id: str, since: datetime,
    ) -> List[Alert]: ...

    @abc.abstractmethod
    async def list_due_alerts(self, now: datetime) -> List[Alert]: ...

    @abc.abstractmethod
    async def save_attempt(self, attempt: DeliveryAttempt) -> None: ...

    @abc.abstractmethod
    async def get_attempt(self, attempt_id: str) -> Optional[DeliveryAttempt]: ...

    @abc.abstractmethod
    async def find_attempt_by_provider_id(
        self, provider_message_id: str,
    ) -> Optional[DeliveryAttempt]: ...

    @abc.abstractmethod
    async def list_attempts(self, alert_id: str) -> List[DeliveryAttempt]: ...

    @abc.abstractmethod
    async def list_attempts_for_recipient(
        self, recipient_id: str, since: datetime,
    ) -> List[DeliveryAttempt]: ...

    async def close(self) -> None:
        return None


class InMemoryDeliveryStore(DeliveryStore):
    """Process-local ledger (production: database)."""

    backend = "memory"

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._attempts: Dict[str, DeliveryAttempt] = {}
        self._lock = asyncio.Lock()

    async def save_alert(self, alert: Alert) -> None:
        async with self._lock:
            self._alerts[alert.id] = copy.copy(alert)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return copy.copy(alert) if alert else None

    async def list_alerts_for_recipient(self, recipient_id: str, since: datetime) -> List[Alert]:
        return [
            copy.copy(a) for a in self._alerts.values()
            if a.recipient_id == recipient_id and a.created_at >= since
        ]

    async def list_due_alerts(self, now: datetime) -> List[Alert]:
        due = [
            copy.copy(a) for a in self._alerts.values()
            if a.status == AlertStatus.PENDING and a.scheduled_at <= now
        ]
        return sorted(due, key=lambda a: a.scheduled_at)

    async def save_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self._lock:
            self._attempts[attempt.id] = copy.copy(attempt)

    async def get_attempt(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        attempt = self._attempts.get(attempt_id)
        return copy.copy(attempt) if attempt else None

    async def find_attempt_by_provider_id(self, provider_message_id: str) -> Optional[DeliveryAttempt]:
        for attempt in self._attempts.values():
            if attempt.provider_message_id == provider_message_id:
                return copy.copy(attempt)
        return None

    async def list_attempts(self, alert_id: str) -> List[DeliveryAttempt]:
        return [copy.copy(a) for a in self._attempts.values() if a.alert_id == alert_id]

    async def list_attempts_for_recipient(
        self, recipient_id: str, since: datetime,
    ) -> List[DeliveryAttempt]:
        return [
            copy.copy(a) for a in self._attempts.values()
            if a.recipient_id == recipient_id and a.created_at >= since
        ]

    def __len__(self) -> int:
        return len(self._attempts)


# ═══════════════════════════════════════════════════════════════════════════
# Tracker
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryTracker:
    def __init__(self, store: DeliveryStore):
        self.store = store
        self._event_lock = asyncio.Lock()

    # ── Alerts ──

    async def record_alert(self, alert: Alert) -> Alert:
        await self.store.save_alert(alert)
        return alert

    async def set_alert_status(self, alert: Alert, status: AlertStatus) -> Alert:
        alert.advance(status)
        await self.store.save_alert(alert)
        return alert

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def get_attempts(self, alert_id: str) -> List[DeliveryAttempt]:
        attempts = await self.store.list_attempts(alert_id)
        return sorted(attempts, key=lambda a: a.created_at)

    async def list_due_alerts(self, now: datetime) -> List[Alert]:
        return await self.store.list_due_alerts(now)

    # ── Attempts ──

    async def record_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        await self.store.save_attempt(attempt)
        return attempt

    async def apply_provider_event(
        self,
        attempt_id: str,
        status: AttemptStatus,
        occurred_at: Optional[datetime] = None,
    ) -> Tuple[DeliveryAttempt, bool]:
        """
        Apply a provider receipt. Returns ``(attempt, applied)``.

        Regressions, repeats and events for failed attempts are ignored and
        reported with ``applied=False``.
        """
        if status not in CALLBACK_STATUSES:
            raise ValidationError(
                f"Provider events may only report {sorted(s.value for s in CALLBACK_STATUSES)}",
                field="status",
            )

        async with self._event_lock:
            attempt = await self.store.get_attempt(attempt_id)
            if attempt is None:
                raise NotFoundError("DeliveryAttempt", attempt_id=attempt_id)

            if not attempt.can_advance_to(status):
                logger.info(
                    "Ignoring %s event for attempt in state %s", status.value, attempt.status.value,
                    extra={"attempt_id": attempt.id, "alert_id": attempt.alert_id},
                )
                return attempt, False

            attempt.advance(status, occurred_at or datetime.now(timezone.utc))
            await self.store.save_attempt(attempt)

        logger.info(
            "Attempt %s → %s", attempt.id, status.value,
            extra={"attempt_id": attempt.id, "alert_id": attempt.alert_id,
                   "channel": attempt.channel.value},
        )
        return attempt, True

    async def apply_provider_event_by_message_id(
        self,
        provider_message_id: str,
        status: AttemptStatus,
        occurred_at: Optional[datetime] = None,
    ) -> Tuple[DeliveryAttempt, bool]:
        attempt = await self.store.find_attempt_by_provider_id(provider_message_id)
        if attempt is None:
            raise NotFoundError("DeliveryAttempt", provider_message_id=provider_message_id)
        return await self.apply_provider_event(attempt.id, status, occurred_at)

    # ── Analytics ──

    async def get_delivery_stats(
        self,
        recipient_id: str,
        window_days: int = 7,
        *,
        now: Optional[datetime] = None,
        preferred_limit: int = 3,
    ) -> DeliveryStats:
        if window_days <= 0:
            raise ValidationError("window_days must be positive", field="window_days")

        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=window_days)

        alerts = await self.store.list_alerts_for_recipient(recipient_id, since)
        attempts = await self.store.list_attempts_for_recipient(recipient_id, since)

        stats = DeliveryStats(
            recipient_id=recipient_id,
            window_days=window_days,
            total_alerts=len(alerts),
        )
        for attempt in attempts:
            stats.totals.add(attempt)
            stats.channel_performance.setdefault(attempt.channel, ChannelPerformance()).add(attempt)

        ranked = sorted(
            (c for c, perf in stats.channel_performance.items() if perf.sent > 0),
            key=lambda c: (
                -stats.channel_performance[c].open_rate,
                -stats.channel_performance[c].delivery_rate,
                -stats.channel_performance[c].sent,
                c.value,
            ),
        )
        stats.preferred_channels = ranked[:preferred_limit]
        return stats
