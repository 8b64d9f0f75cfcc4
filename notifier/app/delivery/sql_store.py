"""
sql_store.py — DeliveryStore backed by SQLAlchemy async sessions.

Used when DELIVERY_STORE=database (PostgreSQL via asyncpg in production,
SQLite via aiosqlite in tests).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifier.app.delivery.models import (
    Alert,
    AlertStatus,
    AttemptStatus,
    ChannelType,
    DeliveryAttempt,
    Urgency,
)
from notifier.app.delivery.orm import AlertRow, DeliveryAttemptRow
from notifier.app.delivery.tracker import DeliveryStore

logger = logging.getLogger(__name__)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Row mapping ──

def alert_to_row(alert: Alert) -> AlertRow:
    return AlertRow(
        id=alert.id,
        recipient_id=alert.recipient_id,
        template_id=alert.template_id,
        variables=dict(alert.variables),
        channels=[c.value for c in alert.channels],
        urgency=alert.urgency.value,
        broadcast_mode=alert.broadcast_mode,
        send_to_all=alert.send_to_all,
        status=alert.status.value,
        created_at=_to_db(alert.created_at),
        scheduled_at=_to_db(alert.scheduled_at),
        expires_at=_to_db(alert.expires_at),
    )


def row_to_alert(row: AlertRow) -> Alert:
    return Alert(
        id=row.id,
        recipient_id=row.recipient_id,
        template_id=row.template_id,
        variables=dict(row.variables or {}),
        channels=tuple(ChannelType(c) for c in row.channels or ()),
        urgency=Urgency(row.urgency),
        broadcast_mode=row.broadcast_mode,
        send_to_all=row.send_to_all,
        status=AlertStatus(row.status),
        created_at=_from_db(row.created_at),
        scheduled_at=_from_db(row.scheduled_at),
        expires_at=_from_db(row.expires_at),
    )


def attempt_to_row(attempt: DeliveryAttempt) -> DeliveryAttemptRow:
    return DeliveryAttemptRow(
        id=attempt.id,
        alert_id=attempt.alert_id,
        recipient_id=attempt.recipient_id,
        channel=attempt.channel.value,
        status=attempt.status.value,
        provider_message_id=attempt.provider_message_id,
        failure_reason=attempt.failure_reason,
        retryable=attempt.retryable,
        created_at=_to_db(attempt.created_at),
        sent_at=_to_db(attempt.sent_at),
        delivered_at=_to_db(attempt.delivered_at),
        opened_at=_to_db(attempt.opened_at),
        clicked_at=_to_db(attempt.clicked_at),
    )


def row_to_attempt(row: DeliveryAttemptRow) -> DeliveryAttempt:
    return DeliveryAttempt(
        id=row.id,
        alert_id=row.alert_id,
        recipient_id=row.recipient_id,
        channel=ChannelType(row.channel),
        status=AttemptStatus(row.status),
        provider_message_id=row.provider_message_id,
        failure_reason=row.failure_reason,
        retryable=row.retryable,
        created_at=_from_db(row.created_at),
        sent_at=_from_db(row.sent_at),
        delivered_at=_from_db(row.delivered_at),
        opened_at=_from_db(row.opened_at),
        clicked_at=_from_db(row.clicked_at),
    )


class SqlAlchemyDeliveryStore(DeliveryStore):
    backend = "database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save_alert(self, alert: Alert) -> None:
        async with self._session_factory() as session:
            await session.merge(alert_to_row(alert))
            await session.commit()

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async with self._session_factory() as session:
            row = await session.get(AlertRow, alert_id)
            return row_to_alert(row) if row else None

    async def list_alerts_for_recipient(self, recipient_id: str, since: datetime) -> List[Alert]:
        stmt = (
            select(AlertRow)
            .where(AlertRow.recipient_id == recipient_id)
            .where(AlertRow.created_at >= _to_db(since))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row_to_alert(r) for r in result.scalars().all()]

    async def list_due_alerts(self, now: datetime) -> List[Alert]:
        stmt = (
            select(AlertRow)
            .where(AlertRow.status == AlertStatus.PENDING.value)
            .where(AlertRow.scheduled_at <= _to_db(now))
            .order_by(AlertRow.scheduled_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row_to_alert(r) for r in result.scalars().all()]

    async def save_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self._session_factory() as session:
            await session.merge(attempt_to_row(attempt))
            await session.commit()

    async def get_attempt(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        async with self._session_factory() as session:
            row = await session.get(DeliveryAttemptRow, attempt_id)
            return row_to_attempt(row) if row else None

    async def find_attempt_by_provider_id(
        self, provider_message_id: str,
    ) -> Optional[DeliveryAttempt]:
        stmt = select(DeliveryAttemptRow).where(
            DeliveryAttemptRow.provider_message_id == provider_message_id,
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return row_to_attempt(row) if row else None

    async def list_attempts(self, alert_id: str) -> List[DeliveryAttempt]:
        stmt = (
            select(DeliveryAttemptRow)
            .where(DeliveryAttemptRow.alert_id == alert_id)
            .order_by(DeliveryAttemptRow.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row_to_attempt(r) for r in result.scalars().all()]

    async def list_attempts_for_recipient(
        self, recipient_id: str, since: datetime,
    ) -> List[DeliveryAttempt]:
        stmt = (
            select(DeliveryAttemptRow)
            .where(DeliveryAttemptRow.recipient_id == recipient_id)
            .where(DeliveryAttemptRow.created_at >= _to_db(since))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row_to_attempt(r) for r in result.scalars().all()]
