"""
test_sql_store.py — SQLAlchemy-backed delivery ledger (SQLite via aiosqlite).

Run with:
    pytest tests/test_sql_store.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from notifier.app.core.database import create_engine_from_url, init_db, make_session_factory
from notifier.app.delivery.dispatcher import SendOptions
from notifier.app.delivery.models import (
    Alert,
    AlertStatus,
    AttemptStatus,
    ChannelType,
    DeliveryAttempt,
    Urgency,
)
from notifier.app.delivery.service import build_delivery_stack
from notifier.app.delivery.sql_store import SqlAlchemyDeliveryStore
from notifier.app.delivery.tracker import DeliveryTracker

from conftest import T0, FakeClock, make_recipient, make_settings, make_template, make_transports


async def _make_store(tmp_path):
    engine = create_engine_from_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_db(engine)
    return engine, SqlAlchemyDeliveryStore(make_session_factory(engine))


def _make_alert(**kwargs) -> Alert:
    defaults = dict(
        recipient_id="seller-1", template_id="restock", variables={"asin": "B0"},
        channels=(ChannelType.EMAIL, ChannelType.DASHBOARD), urgency=Urgency.HIGH,
        created_at=T0, scheduled_at=T0,
    )
    defaults.update(kwargs)
    return Alert(**defaults)


class TestSqlAlchemyDeliveryStore:

    @pytest.mark.asyncio
    async def test_alert_round_trip(self, tmp_path):
        engine, store = await _make_store(tmp_path)
        try:
            alert = _make_alert(expires_at=T0 + timedelta(hours=2), broadcast_mode=True)
            await store.save_alert(alert)
            loaded = await store.get_alert(alert.id)

            assert loaded.variables == {"asin": "B0"}
            assert loaded.channels == (ChannelType.EMAIL, ChannelType.DASHBOARD)
            assert loaded.urgency == Urgency.HIGH
            assert loaded.broadcast_mode
            assert loaded.created_at == T0
            assert loaded.expires_at == T0 + timedelta(hours=2)
            assert loaded.created_at.tzinfo is not None
            assert await store.get_alert("ALR-MISSING") is None
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_save_updates_existing_row(self, tmp_path):
        engine, store = await _make_store(tmp_path)
        try:
            alert = _make_alert()
            await store.save_alert(alert)
            alert.advance(AlertStatus.COMPLETED)
            await store.save_alert(alert)
            assert (await store.get_alert(alert.id)).status == AlertStatus.COMPLETED
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_due_alerts(self, tmp_path):
        engine, store = await _make_store(tmp_path)
        try:
            due = _make_alert()
            later = _make_alert(scheduled_at=T0 + timedelta(hours=1))
            await store.save_alert(later)
            await store.save_alert(due)
            assert [a.id for a in await store.list_due_alerts(T0)] == [due.id]
            ids = [a.id for a in await store.list_due_alerts(T0 + timedelta(hours=1))]
            assert ids == [due.id, later.id]
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_attempt_round_trip_and_lookup(self, tmp_path):
        engine, store = await _make_store(tmp_path)
        try:
            alert = _make_alert()
            await store.save_alert(alert)
            attempt = DeliveryAttempt(
                alert_id=alert.id, recipient_id="seller-1", channel=ChannelType.SMS,
                created_at=T0, provider_message_id="SM1",
            )
            attempt.advance(AttemptStatus.SENT, T0)
            await store.save_attempt(attempt)

            found = await store.find_attempt_by_provider_id("SM1")
            assert found.id == attempt.id
            assert found.sent_at == T0
            assert await store.find_attempt_by_provider_id("SM2") is None

            since = await store.list_attempts_for_recipient("seller-1", T0 - timedelta(days=1))
            assert [a.id for a in since] == [attempt.id]
            assert await store.list_attempts_for_recipient("seller-1", T0 + timedelta(seconds=1)) == []
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_provider_event_persists(self, tmp_path):
        engine, store = await _make_store(tmp_path)
        try:
            tracker = DeliveryTracker(store)
            alert = _make_alert()
            await tracker.record_alert(alert)
            attempt = DeliveryAttempt(alert_id=alert.id, recipient_id="seller-1",
                                      channel=ChannelType.EMAIL, created_at=T0)
            attempt.advance(AttemptStatus.SENT, T0)
            await tracker.record_attempt(attempt)

            _, applied = await tracker.apply_provider_event(
                attempt.id, AttemptStatus.OPENED, T0 + timedelta(minutes=2),
            )
            assert applied
            stored = await store.get_attempt(attempt.id)
            assert stored.status == AttemptStatus.OPENED
            assert stored.delivered_at == T0 + timedelta(minutes=2)
        finally:
            await engine.dispose()


class TestDispatchWithDatabaseLedger:

    @pytest.mark.asyncio
    async def test_send_and_stats(self, tmp_path):
        engine, store = await _make_store(tmp_path)
        try:
            stack = build_delivery_stack(
                make_settings(),
                transports=make_transports(),
                store=store,
                recipients=[make_recipient()],
                templates=[make_template()],
                clock=FakeClock(),
            )
            report = await stack.dispatcher.send_alert(
                "seller-1", "restock", {"asin": "B0"},
                SendOptions(broadcast_mode=True, urgency=Urgency.CRITICAL),
            )
            assert len(report.attempts) == 3

            attempts = await stack.tracker.get_attempts(report.alert_id)
            assert {a.channel for a in attempts} == {
                ChannelType.EMAIL, ChannelType.WHATSAPP, ChannelType.DASHBOARD,
            }
            assert (await stack.tracker.get_alert(report.alert_id)).status == AlertStatus.COMPLETED

            stats = await stack.tracker.get_delivery_stats("seller-1", 7, now=T0)
            assert stats.total_alerts == 1
            assert stats.totals.sent == 3
        finally:
            await engine.dispose()
