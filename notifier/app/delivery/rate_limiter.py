"""
rate_limiter.py — Per (recipient, channel) throttling with atomic reserve.

═══════════════════════════════════════════════════════════════════════════
WINDOW RULES
═══════════════════════════════════════════════════════════════════════════

For a channel with policy (max_per_hour=H, max_per_day=D, cooldown=C min):

    reject  if  sends in (now - 24h, now]  >= D      reason "daily"
    reject  if  sends in (now - 60m, now]  >= H      reason "hourly"
    reject  if  any send in (now - C, now]           reason "cooldown"
    else    record a send at ``now`` and allow

Counting and recording happen as one operation per key, so two concurrent
callers can never both take the last slot.

Edge handling:
    • Unknown or disabled channel          → reject (closed)
    • Timestamps later than ``now``        → ignored (treated as no sends)
    • Redis unreachable                     → allow, logged at WARNING

Two backends share the ``reserve`` contract:

    InMemoryRateLimiter   per-key asyncio.Lock around a deque of timestamps
    RedisRateLimiter      sorted set per key, Lua script for atomicity
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional, Tuple

from notifier.app.delivery.models import ChannelType, RateLimitPolicy
from notifier.app.delivery.registry import ChannelRegistry

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: str = "ok"  # ok | daily | hourly | cooldown | unknown_channel | disabled

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = RateDecision(True)


def _utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class _BaseRateLimiter(abc.ABC):
    """Shared channel resolution for both backends."""

    backend = "base"

    def __init__(self, registry: ChannelRegistry):
        self._registry = registry

    def _policy(self, channel: ChannelType) -> Tuple[Optional[RateLimitPolicy], str]:
        entry = self._registry.find(channel)
        if entry is None:
            return None, "unknown_channel"
        if not entry.enabled:
            return None, "disabled"
        return entry.rate_limits, "ok"

    @abc.abstractmethod
    async def reserve(
        self, recipient_id: str, channel: ChannelType, now: Optional[datetime] = None,
    ) -> RateDecision: ...

    async def check_and_reserve(
        self, recipient_id: str, channel: ChannelType, now: Optional[datetime] = None,
    ) -> bool:
        """True if a send is allowed now; the send is counted when allowed."""
        return (await self.reserve(recipient_id, channel, now)).allowed


# ═══════════════════════════════════════════════════════════════════════════
# In-process backend
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryRateLimiter(_BaseRateLimiter):
    """
    Sliding windows held in process memory.

    Suitable for a single worker; use RedisRateLimiter when several
    processes deliver for the same recipients.
    """

    backend = "memory"

    def __init__(self, registry: ChannelRegistry):
        super().__init__(registry)
        self._windows: Dict[Tuple[str, ChannelType], Deque[datetime]] = defaultdict(deque)
        self._locks: Dict[Tuple[str, ChannelType], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def reserve(
        self, recipient_id: str, channel: ChannelType, now: Optional[datetime] = None,
    ) -> RateDecision:
        policy, reason = self._policy(channel)
        if policy is None:
            return RateDecision(False, reason)

        now = _utc(now or datetime.now(timezone.utc))
        key = (recipient_id, channel)

        async with self._locks[key]:
            past = await self._recent(key, now)

            if len(past) >= policy.max_per_day:
                return RateDecision(False, "daily")

            hour_floor = now - HOUR
            if sum(1 for ts in past if ts > hour_floor) >= policy.max_per_hour:
                return RateDecision(False, "hourly")

            if policy.cooldown_minutes > 0 and past:
                cooldown_floor = now - timedelta(minutes=policy.cooldown_minutes)
                if past[-1] > cooldown_floor:
                    return RateDecision(False, "cooldown")

            await self._record(key, now)
            return ALLOW

    # ── Window storage (called with the key's lock held) ──

    async def _recent(self, key: Tuple[str, ChannelType], now: datetime) -> List[datetime]:
        """Sends in the trailing day, oldest first, excluding future stamps."""
        window = self._windows[key]
        day_floor = now - DAY
        while window and window[0] <= day_floor:
            window.popleft()
        # Entries stamped after ``now`` come from a skewed clock; skip them
        return [ts for ts in window if ts <= now]

    async def _record(self, key: Tuple[str, ChannelType], now: datetime) -> None:
        window = self._windows[key]
        window.append(now)
        if len(window) > 1 and window[-2] > now:
            # Keep the deque ordered when calls arrive out of order
            self._windows[key] = deque(sorted(window))

    def usage(self, recipient_id: str, channel: ChannelType) -> int:
        return len(self._windows.get((recipient_id, channel), ()))


# ═══════════════════════════════════════════════════════════════════════════
# Redis backend
# ═══════════════════════════════════════════════════════════════════════════

# KEYS[1] = window key
# ARGV: now, day_floor, hour_floor, cooldown_floor, max_day, max_hour,
#       cooldown_enabled, member, ttl_seconds
_RESERVE_SCRIPT = """
local key = KEYS[1]
local now = ARGV[1]
redis.call('ZREMRANGEBYSCORE', key, '-inf', ARGV[2])
if redis.call('ZCOUNT', key, '(' .. ARGV[2], now) >= tonumber(ARGV[5]) then
    return 'daily'
end
if redis.call('ZCOUNT', key, '(' .. ARGV[3], now) >= tonumber(ARGV[6]) then
    return 'hourly'
end
if ARGV[7] == '1' and redis.call('ZCOUNT', key, '(' .. ARGV[4], now) > 0 then
    return 'cooldown'
end
redis.call('ZADD', key, now, ARGV[8])
redis.call('EXPIRE', key, tonumber(ARGV[9]))
return 'ok'
"""


class RedisRateLimiter(_BaseRateLimiter):
    """Sliding windows in Redis sorted sets scored by epoch seconds."""

    backend = "redis"

    def __init__(self, client, registry: ChannelRegistry, *, prefix: str = "ratelimit"):
        super().__init__(registry)
        self._client = client
        self._prefix = prefix
        self._seq = 0

    def key_for(self, recipient_id: str, channel: ChannelType) -> str:
        return f"{self._prefix}:{recipient_id}:{channel.value}"

    async def reserve(
        self, recipient_id: str, channel: ChannelType, now: Optional[datetime] = None,
    ) -> RateDecision:
        policy, reason = self._policy(channel)
        if policy is None:
            return RateDecision(False, reason)

        now = _utc(now or datetime.now(timezone.utc))
        ts = now.timestamp()
        self._seq += 1
        member = f"{ts:.6f}-{id(self)}-{self._seq}"

        # Scores are passed pre-formatted so the script never formats floats
        args = (
            f"{ts:.6f}",
            f"{(now - DAY).timestamp():.6f}",
            f"{(now - HOUR).timestamp():.6f}",
            f"{(now - timedelta(minutes=policy.cooldown_minutes)).timestamp():.6f}",
            str(policy.max_per_day),
            str(policy.max_per_hour),
            "1" if policy.cooldown_minutes > 0 else "0",
            member,
            str(int(DAY.total_seconds()) + 60),
        )

        key = self.key_for(recipient_id, channel)
        try:
            result = await self._client.eval(_RESERVE_SCRIPT, 1, key, *args)
        except Exception as e:
            logger.warning(
                "Rate limiter unavailable, allowing send: %s", e,
                extra={"recipient_id": recipient_id, "channel": channel.value},
            )
            return RateDecision(True, "fail_open")

        if isinstance(result, bytes):
            result = result.decode()
        if result == "ok":
            return ALLOW
        return RateDecision(False, str(result))
