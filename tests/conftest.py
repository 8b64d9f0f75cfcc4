"""
Shared test helpers for the alert delivery tests.

Provides a controllable clock, recording transports and factories for
settings, recipients, templates and a fully wired delivery stack.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from notifier.app.core.config import Settings
from notifier.app.delivery.models import (
    ChannelType,
    PersonalizationRules,
    RecipientContext,
    SendResult,
    Template,
    Urgency,
)
from notifier.app.delivery.rate_limiter import InMemoryRateLimiter
from notifier.app.delivery.service import DeliveryStack, build_delivery_stack

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Mutable clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """
    Fake channel transport.

    Returns queued results in order, then succeeds. Optionally sleeps,
    raises, or runs a hook before answering.
    """

    def __init__(
        self,
        results: Optional[List[SendResult]] = None,
        *,
        delay: float = 0.0,
        raises: Optional[Exception] = None,
        hook=None,
    ):
        self.calls: List[Tuple[str, str, str]] = []
        self.results = list(results or [])
        self.delay = delay
        self.raises = raises
        self.hook = hook
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, address: str, subject: str, body: str) -> SendResult:
        self.calls.append((address, subject, body))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.hook is not None:
                self.hook()
            if self.raises is not None:
                raise self.raises
            if self.results:
                return self.results.pop(0)
            return SendResult(success=True, provider_message_id=f"msg-{len(self.calls)}")
        finally:
            self.in_flight -= 1


class YieldingRateLimiter(InMemoryRateLimiter):
    """In-memory limiter that yields to the event loop between reading and recording a window."""

    async def _recent(self, key, now):
        recent = await super()._recent(key, now)
        await asyncio.sleep(0)
        return recent


class SharedCounter:
    """Tracks concurrent in-flight calls across several transports."""

    def __init__(self):
        self.in_flight = 0
        self.max_in_flight = 0

    def transport(self, delay: float = 0.05):
        async def send(address: str, subject: str, body: str) -> SendResult:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await asyncio.sleep(delay)
                return SendResult(success=True, provider_message_id=f"msg-{address}")
            finally:
                self.in_flight -= 1
        return send


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def make_recipient(
    rid: str = "seller-1",
    name: str = "Ana",
    preferred: Optional[List[ChannelType]] = None,
    addresses: Optional[Dict[ChannelType, str]] = None,
    **kwargs,
) -> RecipientContext:
    """Create a test recipient reachable on every external channel."""
    if addresses is None:
        addresses = {
            ChannelType.EMAIL: "ana@example.com",
            ChannelType.WHATSAPP: "+15550001111",
            ChannelType.SMS: "+15550001111",
            ChannelType.SLACK: "https://hooks.slack.com/services/T0/B0/x",
        }
    return RecipientContext(
        recipient_id=rid,
        display_name=name,
        contact_addresses=addresses,
        preferred_channels=preferred if preferred is not None else [ChannelType.EMAIL, ChannelType.WHATSAPP],
        **kwargs,
    )


def make_template(
    tid: str = "restock",
    *,
    urgency: Urgency = Urgency.NORMAL,
    rules: Optional[PersonalizationRules] = None,
    subject: str = "Restock {{asin}}",
    body: str = "Stock for {{asin}} is low.",
    required=frozenset({"asin"}),
) -> Template:
    return Template(
        id=tid,
        subject=subject,
        body=body,
        required_variables=frozenset(required),
        urgency=urgency,
        personalization=rules or PersonalizationRules(include_context=False),
    )


def make_transports(**overrides) -> Dict[ChannelType, RecordingTransport]:
    transports = {channel: RecordingTransport() for channel in ChannelType}
    for name, transport in overrides.items():
        transports[ChannelType(name)] = transport
    return transports


def make_stack(
    *,
    clock: Optional[FakeClock] = None,
    transports=None,
    recipients=None,
    templates=None,
    **settings_overrides,
) -> DeliveryStack:
    settings = make_settings(**settings_overrides)
    return build_delivery_stack(
        settings,
        transports=transports if transports is not None else make_transports(),
        recipients=recipients if recipients is not None else [make_recipient()],
        templates=templates if templates is not None else [make_template()],
        clock=clock or FakeClock(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
