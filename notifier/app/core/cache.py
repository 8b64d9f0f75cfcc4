"""
Redis connection layer — shared async client for the rate limiter.

Provides:
    • Lazy async client (created on first use, never at import time)
    • Ping helper for health probes
    • Orderly shutdown

Usage:
    from notifier.app.core.cache import get_redis

    client = get_redis()
    await client.zcard("ratelimit:r-1:sms")
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from notifier.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client — initialised on first use
_redis_client: Optional[aioredis.Redis] = None


def get_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Get or create the async Redis client. No connection is opened until first command."""
    global _redis_client
    if _redis_client is None:
        target = url or settings.REDIS_URL
        _redis_client = aioredis.from_url(
            target,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client created: %s", _redact(target))
    return _redis_client


async def ping_redis() -> bool:
    """True if the server answers PING."""
    if _redis_client is None:
        return False
    try:
        return bool(await _redis_client.ping())
    except Exception as e:
        logger.warning("Redis PING failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url
