"""
test_tracker.py — Delivery ledger, provider receipts and analytics.

Covers:
    • Alert / attempt recording and lookup
    • Provider events: forward-only, back-fill, failed attempts, by message id
    • get_delivery_stats: rates, zero denominators, window, preferred channels

Run with:
    pytest tests/test_tracker.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from notifier.app.core.errors import NotFoundError, ValidationError
from notifier.app.delivery.models import (
    Alert,
    AlertStatus,
    AttemptStatus,
    ChannelType,
    DeliveryAttempt,
)
from notifier.app.delivery.tracker import DeliveryTracker, InMemoryDeliveryStore

from conftest import T0


def _make_tracker() -> DeliveryTracker:
    return DeliveryTracker(InMemoryDeliveryStore())


async def _record(
    tracker: DeliveryTracker,
    channel: ChannelType,
    status: AttemptStatus,
    *,
    recipient_id: str = "seller-1",
    created_at=T0,
    provider_message_id=None,
) -> DeliveryAttempt:
    attempt = DeliveryAttempt(
        alert_id="ALR-1", recipient_id=recipient_id, channel=channel,
        created_at=created_at, provider_message_id=provider_message_id,
    )
    if status == AttemptStatus.FAILED:
        attempt.advance(AttemptStatus.FAILED, created_at)
    elif status != AttemptStatus.PENDING:
        attempt.advance(AttemptStatus.SENT, created_at)
        if status != AttemptStatus.SENT:
            attempt.advance(status, created_at)
    return await tracker.record_attempt(attempt)


# ═══════════════════════════════════════════════════════════════════════════
# Ledger
# ═══════════════════════════════════════════════════════════════════════════

class TestLedger:

    @pytest.mark.asyncio
    async def test_alert_round_trip(self):
        tracker = _make_tracker()
        alert = Alert(recipient_id="seller-1", template_id="restock", created_at=T0, scheduled_at=T0)
        await tracker.record_alert(alert)
        await tracker.set_alert_status(alert, AlertStatus.PROCESSING)

        stored = await tracker.get_alert(alert.id)
        assert stored.status == AlertStatus.PROCESSING
        assert stored is not alert

    @pytest.mark.asyncio
    async def test_unknown_alert(self):
        with pytest.raises(NotFoundError):
            await _make_tracker().get_alert("ALR-MISSING")

    @pytest.mark.asyncio
    async def test_attempts_sorted_by_creation(self):
        tracker = _make_tracker()
        late = await _record(tracker, ChannelType.SMS, AttemptStatus.SENT, created_at=T0 + timedelta(seconds=5))
        early = await _record(tracker, ChannelType.EMAIL, AttemptStatus.FAILED)
        attempts = await tracker.get_attempts("ALR-1")
        assert [a.id for a in attempts] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_due_alerts(self):
        tracker = _make_tracker()
        now_alert = Alert(recipient_id="s", template_id="t", scheduled_at=T0)
        later = Alert(recipient_id="s", template_id="t", scheduled_at=T0 + timedelta(hours=1))
        done = Alert(recipient_id="s", template_id="t", scheduled_at=T0, status=AlertStatus.COMPLETED)
        for alert in (later, now_alert, done):
            await tracker.record_alert(alert)
        due = await tracker.list_due_alerts(T0)
        assert [a.id for a in due] == [now_alert.id]


# ═══════════════════════════════════════════════════════════════════════════
# Provider events
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderEvents:

    @pytest.mark.asyncio
    async def test_forward_event_applied(self):
        tracker = _make_tracker()
        attempt = await _record(tracker, ChannelType.EMAIL, AttemptStatus.SENT)
        updated, applied = await tracker.apply_provider_event(
            attempt.id, AttemptStatus.DELIVERED, T0 + timedelta(minutes=1),
        )
        assert applied
        assert updated.status == AttemptStatus.DELIVERED
        stored = (await tracker.get_attempts("ALR-1"))[0]
        assert stored.delivered_at == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_skip_ahead_backfills(self):
        tracker = _make_tracker()
        attempt = await _record(tracker, ChannelType.EMAIL, AttemptStatus.SENT)
        at = T0 + timedelta(minutes=3)
        updated, applied = await tracker.apply_provider_event(attempt.id, AttemptStatus.CLICKED, at)
        assert applied
        assert updated.delivered_at == at
        assert updated.opened_at == at
        assert updated.clicked_at == at

    @pytest.mark.asyncio
    async def test_regression_ignored(self):
        tracker = _make_tracker()
        attempt = await _record(tracker, ChannelType.EMAIL, AttemptStatus.OPENED)
        updated, applied = await tracker.apply_provider_event(attempt.id, AttemptStatus.DELIVERED)
        assert not applied
        assert updated.status == AttemptStatus.OPENED

    @pytest.mark.asyncio
    async def test_failed_attempt_ignores_events(self):
        tracker = _make_tracker()
        attempt = await _record(tracker, ChannelType.SMS, AttemptStatus.FAILED)
        _, applied = await tracker.apply_provider_event(attempt.id, AttemptStatus.DELIVERED)
        assert not applied

    @pytest.mark.asyncio
    async def test_invalid_status(self):
        tracker = _make_tracker()
        attempt = await _record(tracker, ChannelType.EMAIL, AttemptStatus.SENT)
        with pytest.raises(ValidationError):
            await tracker.apply_provider_event(attempt.id, AttemptStatus.SENT)

    @pytest.mark.asyncio
    async def test_unknown_attempt(self):
        with pytest.raises(NotFoundError):
            await _make_tracker().apply_provider_event("DLV-MISSING", AttemptStatus.DELIVERED)

    @pytest.mark.asyncio
    async def test_by_provider_message_id(self):
        tracker = _make_tracker()
        await _record(tracker, ChannelType.SMS, AttemptStatus.SENT, provider_message_id="SM123")
        updated, applied = await tracker.apply_provider_event_by_message_id("SM123", AttemptStatus.DELIVERED)
        assert applied
        assert updated.channel == ChannelType.SMS
        with pytest.raises(NotFoundError):
            await tracker.apply_provider_event_by_message_id("SM999", AttemptStatus.DELIVERED)


# ═══════════════════════════════════════════════════════════════════════════
# Analytics
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryStats:

    async def _seed(self, tracker: DeliveryTracker) -> None:
        await _record(tracker, ChannelType.EMAIL, AttemptStatus.OPENED)
        await _record(tracker, ChannelType.EMAIL, AttemptStatus.SENT)
        await _record(tracker, ChannelType.WHATSAPP, AttemptStatus.DELIVERED)
        await _record(tracker, ChannelType.SMS, AttemptStatus.FAILED)
        await _record(tracker, ChannelType.EMAIL, AttemptStatus.CLICKED, recipient_id="seller-2")

    @pytest.mark.asyncio
    async def test_rates(self):
        tracker = _make_tracker()
        await self._seed(tracker)
        stats = await tracker.get_delivery_stats("seller-1", 7, now=T0)

        assert stats.totals.attempted == 4
        assert stats.totals.sent == 3
        assert stats.totals.failed == 1
        assert stats.delivery_rate == pytest.approx(2 / 3)
        assert stats.open_rate == pytest.approx(0.5)
        assert stats.click_rate == 0.0

        email = stats.channel_performance[ChannelType.EMAIL]
        assert email.sent == 2
        assert email.delivery_rate == 0.5
        assert email.open_rate == 1.0

    @pytest.mark.asyncio
    async def test_preferred_channels_ranked_by_open_rate(self):
        tracker = _make_tracker()
        await self._seed(tracker)
        stats = await tracker.get_delivery_stats("seller-1", 7, now=T0)
        # SMS never reached "sent" and is not a candidate
        assert stats.preferred_channels == [ChannelType.EMAIL, ChannelType.WHATSAPP]

    @pytest.mark.asyncio
    async def test_preferred_limit(self):
        tracker = _make_tracker()
        await self._seed(tracker)
        stats = await tracker.get_delivery_stats("seller-1", 7, now=T0, preferred_limit=1)
        assert stats.preferred_channels == [ChannelType.EMAIL]

    @pytest.mark.asyncio
    async def test_empty_window(self):
        stats = await _make_tracker().get_delivery_stats("nobody", 7, now=T0)
        assert stats.total_alerts == 0
        assert stats.delivery_rate == 0.0
        assert stats.open_rate == 0.0
        assert stats.click_rate == 0.0
        assert stats.preferred_channels == []

    @pytest.mark.asyncio
    async def test_window_excludes_old_attempts(self):
        tracker = _make_tracker()
        await _record(tracker, ChannelType.EMAIL, AttemptStatus.SENT, created_at=T0 - timedelta(days=10))
        await _record(tracker, ChannelType.SMS, AttemptStatus.SENT, created_at=T0 - timedelta(days=2))
        stats = await tracker.get_delivery_stats("seller-1", 7, now=T0)
        assert set(stats.channel_performance) == {ChannelType.SMS}

        wide = await tracker.get_delivery_stats("seller-1", 30, now=T0)
        assert set(wide.channel_performance) == {ChannelType.EMAIL, ChannelType.SMS}

    @pytest.mark.asyncio
    async def test_reads_are_idempotent(self):
        tracker = _make_tracker()
        await self._seed(tracker)
        first = await tracker.get_delivery_stats("seller-1", 7, now=T0)
        second = await tracker.get_delivery_stats("seller-1", 7, now=T0)
        assert first.to_dict() == second.to_dict()

    @pytest.mark.asyncio
    async def test_window_must_be_positive(self):
        with pytest.raises(ValidationError):
            await _make_tracker().get_delivery_stats("seller-1", 0, now=T0)

    @pytest.mark.asyncio
    async def test_counts_alerts_in_window(self):
        tracker = _make_tracker()
        await tracker.record_alert(Alert(recipient_id="seller-1", template_id="t", created_at=T0))
        await tracker.record_alert(Alert(recipient_id="seller-1", template_id="t",
                                         created_at=T0 - timedelta(days=8)))
        stats = await tracker.get_delivery_stats("seller-1", 7, now=T0)
        assert stats.total_alerts == 1
