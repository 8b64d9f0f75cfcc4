"""
service.py — Wires the delivery components into one stack.

    Settings ─► ChannelRegistry ─┬─► RateLimiter (memory | redis)
                                 ├─► ChannelSelector
                                 └─► DeliveryDispatcher ◄── templates, recipients,
                                                            personalization, tracker,
                                                            transports

Everything is built explicitly from a Settings instance; components are
passed into the dispatcher rather than looked up globally, so tests build
their own stack with fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional

import httpx

from notifier.app.core.config import Settings
from notifier.app.delivery.channels import Transport, build_transports
from notifier.app.delivery.channels.dashboard import NotificationTopic
from notifier.app.delivery.directory import (
    InMemoryRecipientDirectory,
    InMemoryRecommendationSource,
)
from notifier.app.delivery.dispatcher import DeliveryDispatcher
from notifier.app.delivery.models import ChannelType, RecipientContext, Template
from notifier.app.delivery.personalization import PersonalizationEngine
from notifier.app.delivery.rate_limiter import InMemoryRateLimiter, RedisRateLimiter
from notifier.app.delivery.registry import ChannelRegistry, parse_channel
from notifier.app.delivery.selector import ChannelSelector
from notifier.app.delivery.templates import InMemoryTemplateStore
from notifier.app.delivery.tracker import DeliveryStore, DeliveryTracker, InMemoryDeliveryStore

logger = logging.getLogger(__name__)


@dataclass
class DeliveryStack:
    settings: Settings
    registry: ChannelRegistry
    templates: InMemoryTemplateStore
    recipients: InMemoryRecipientDirectory
    recommendations: InMemoryRecommendationSource
    rate_limiter: object
    personalization: PersonalizationEngine
    selector: ChannelSelector
    tracker: DeliveryTracker
    topic: NotificationTopic
    dispatcher: DeliveryDispatcher
    http_client: Optional[httpx.AsyncClient] = None

    async def startup(self) -> None:
        if self.tracker.store.backend == "database":
            from notifier.app.core.database import init_db
            await init_db()

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.tracker.store.backend == "database":
            from notifier.app.core.database import close_db
            await close_db()
        if self.rate_limiter.backend == "redis":
            from notifier.app.core.cache import close_redis
            await close_redis()


def build_rate_limiter(settings: Settings, registry: ChannelRegistry):
    if settings.RATE_LIMIT_BACKEND == "redis":
        from notifier.app.core.cache import get_redis
        return RedisRateLimiter(
            get_redis(settings.REDIS_URL), registry, prefix=settings.RATE_LIMIT_KEY_PREFIX,
        )
    if settings.RATE_LIMIT_BACKEND != "memory":
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {settings.RATE_LIMIT_BACKEND}")
    return InMemoryRateLimiter(registry)


def build_store(settings: Settings) -> DeliveryStore:
    if settings.DELIVERY_STORE == "database":
        from notifier.app.core.database import get_session_factory
        from notifier.app.delivery.sql_store import SqlAlchemyDeliveryStore
        return SqlAlchemyDeliveryStore(get_session_factory(settings.DATABASE_URL))
    if settings.DELIVERY_STORE != "memory":
        raise ValueError(f"Unknown DELIVERY_STORE: {settings.DELIVERY_STORE}")
    return InMemoryDeliveryStore()


def build_delivery_stack(
    settings: Settings,
    *,
    transports: Optional[Mapping[ChannelType, Transport]] = None,
    store: Optional[DeliveryStore] = None,
    rate_limiter=None,
    recipients: Optional[Iterable[RecipientContext]] = None,
    templates: Optional[Iterable[Template]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> DeliveryStack:
    """Build every delivery component from settings; keyword overrides win."""
    registry = ChannelRegistry.from_settings(settings)

    template_store = InMemoryTemplateStore(templates)
    if settings.SEED_DEFAULT_TEMPLATES:
        template_store.seed_defaults()

    directory = InMemoryRecipientDirectory(list(recipients or ()))
    recommendations = InMemoryRecommendationSource()
    topic = NotificationTopic()

    http_client = None
    if transports is None:
        http_client = httpx.AsyncClient(timeout=settings.SEND_TIMEOUT_SECONDS)
        transports = build_transports(settings, topic, client=http_client)

    limiter = rate_limiter or build_rate_limiter(settings, registry)
    tracker = DeliveryTracker(store or build_store(settings))

    personalization = PersonalizationEngine(
        recommendations,
        max_short_length=settings.SHORT_MESSAGE_MAX_CHARS,
        recommendation_limit=settings.RECOMMENDATION_LIMIT,
        clock=clock,
    )
    selector = ChannelSelector(
        registry,
        high_urgency_fanout=settings.HIGH_URGENCY_CHANNEL_COUNT,
        default_preferences=[parse_channel(c) for c in settings.DEFAULT_PREFERRED_CHANNELS],
    )
    dispatcher = DeliveryDispatcher(
        registry=registry,
        templates=template_store,
        recipients=directory,
        rate_limiter=limiter,
        personalization=personalization,
        selector=selector,
        tracker=tracker,
        transports=transports,
        send_timeout_seconds=settings.SEND_TIMEOUT_SECONDS,
        clock=clock,
    )

    logger.info(
        "Delivery stack ready: store=%s, rate_limiter=%s, %d transport(s)",
        tracker.store.backend, limiter.backend, len(dispatcher.transports),
    )
    return DeliveryStack(
        settings=settings,
        registry=registry,
        templates=template_store,
        recipients=directory,
        recommendations=recommendations,
        rate_limiter=limiter,
        personalization=personalization,
        selector=selector,
        tracker=tracker,
        topic=topic,
        dispatcher=dispatcher,
        http_client=http_client,
    )
