"""
registry.py — Channel catalogue with per-channel priority and rate limits.

═══════════════════════════════════════════════════════════════════════════
DEFAULT CATALOGUE
═══════════════════════════════════════════════════════════════════════════

    Channel      Priority   Max/hour   Max/day   Cooldown
    ─────────    ────────   ────────   ───────   ────────
    email        1          50         200       5 min
    whatsapp     2          20         100       15 min
    sms          3          10         50        30 min
    slack        4          30         200       5 min
    dashboard    5          1000       5000      none

Lower priority is tried first in fallback chains. The dashboard is the
always-available channel: it is appended to every selection and is never
counted against the high-urgency fan-out.

Deployments adjust the catalogue through ``CHANNEL_OVERRIDES`` and
``DISABLED_CHANNELS``; see ``ChannelRegistry.from_settings``.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from notifier.app.core.errors import NotFoundError, ValidationError
from notifier.app.delivery.models import Channel, ChannelType, RateLimitPolicy

logger = logging.getLogger(__name__)


DEFAULT_CHANNELS: Dict[ChannelType, Channel] = {
    ChannelType.EMAIL: Channel(
        type=ChannelType.EMAIL, enabled=True, priority=1,
        rate_limits=RateLimitPolicy(max_per_hour=50, max_per_day=200, cooldown_minutes=5),
    ),
    ChannelType.WHATSAPP: Channel(
        type=ChannelType.WHATSAPP, enabled=True, priority=2,
        rate_limits=RateLimitPolicy(max_per_hour=20, max_per_day=100, cooldown_minutes=15),
    ),
    ChannelType.SMS: Channel(
        type=ChannelType.SMS, enabled=True, priority=3,
        rate_limits=RateLimitPolicy(max_per_hour=10, max_per_day=50, cooldown_minutes=30),
    ),
    ChannelType.SLACK: Channel(
        type=ChannelType.SLACK, enabled=True, priority=4,
        rate_limits=RateLimitPolicy(max_per_hour=30, max_per_day=200, cooldown_minutes=5),
    ),
    ChannelType.DASHBOARD: Channel(
        type=ChannelType.DASHBOARD, enabled=True, priority=5,
        rate_limits=RateLimitPolicy(max_per_hour=1000, max_per_day=5000, cooldown_minutes=0),
    ),
}

_POLICY_KEYS = ("max_per_hour", "max_per_day", "cooldown_minutes")


def parse_channel(value: Any) -> ChannelType:
    """Coerce a string or enum to ChannelType, raising ValidationError if unknown."""
    if isinstance(value, ChannelType):
        return value
    try:
        return ChannelType(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown channel '{value}'", field="channel") from None


class ChannelRegistry:
    """
    Read-mostly catalogue of channels.

    Treated as immutable once the delivery stack is built; reconfiguration
    means building a new registry.
    """

    def __init__(
        self,
        channels: Optional[Mapping[ChannelType, Channel]] = None,
        *,
        always_available: ChannelType = ChannelType.DASHBOARD,
    ):
        self._channels: Dict[ChannelType, Channel] = dict(channels or DEFAULT_CHANNELS)
        self._always_available = always_available

    # ── Lookup ──

    def get(self, channel: Any) -> Channel:
        """Return the channel entry or raise NotFoundError."""
        channel_type = parse_channel(channel)
        entry = self._channels.get(channel_type)
        if entry is None:
            raise NotFoundError("Channel", channel=channel_type.value)
        return entry

    def find(self, channel: ChannelType) -> Optional[Channel]:
        return self._channels.get(channel)

    def is_enabled(self, channel: ChannelType) -> bool:
        entry = self._channels.get(channel)
        return bool(entry and entry.enabled)

    def list_all(self) -> List[Channel]:
        return sorted(self._channels.values(), key=lambda c: (c.priority, c.type.value))

    def list_enabled(self) -> List[Channel]:
        """Enabled channels ordered by ascending priority."""
        return [c for c in self.list_all() if c.enabled]

    def priority_of(self, channel: ChannelType) -> int:
        entry = self._channels.get(channel)
        return entry.priority if entry else 10_000

    def sort_by_priority(self, channels: Iterable[ChannelType]) -> List[ChannelType]:
        return sorted(channels, key=lambda c: (self.priority_of(c), c.value))

    @property
    def always_available(self) -> Optional[ChannelType]:
        """The always-available channel, if configured and enabled."""
        if self.is_enabled(self._always_available):
            return self._always_available
        return None

    # ── Construction ──

    @classmethod
    def from_settings(cls, settings) -> "ChannelRegistry":
        """
        Build the catalogue from defaults plus deployment overrides.

        ``CHANNEL_OVERRIDES`` maps a channel name to any of ``enabled``,
        ``priority``, ``max_per_hour``, ``max_per_day``, ``cooldown_minutes``.
        """
        channels = dict(DEFAULT_CHANNELS)

        for name, override in settings.CHANNEL_OVERRIDES.items():
            channel_type = parse_channel(name)
            channels[channel_type] = apply_override(channels[channel_type], override)

        for name in settings.DISABLED_CHANNELS:
            channel_type = parse_channel(name)
            channels[channel_type] = replace(channels[channel_type], enabled=False)

        registry = cls(
            channels,
            always_available=parse_channel(settings.ALWAYS_AVAILABLE_CHANNEL),
        )
        logger.info(
            "Channel registry: %s",
            ", ".join(f"{c.type.value}(p{c.priority})" for c in registry.list_enabled()),
        )
        return registry


def apply_override(channel: Channel, override: Mapping[str, Any]) -> Channel:
    unknown = set(override) - {"enabled", "priority", *_POLICY_KEYS}
    if unknown:
        raise ValidationError(
            f"Unknown override keys for {channel.type.value}: {sorted(unknown)}",
            field="CHANNEL_OVERRIDES",
        )

    policy_changes = {k: int(override[k]) for k in _POLICY_KEYS if k in override}
    if any(v < 0 for v in policy_changes.values()):
        raise ValidationError(
            f"Rate limits for {channel.type.value} must be non-negative",
            field="CHANNEL_OVERRIDES",
        )

    return replace(
        channel,
        enabled=bool(override.get("enabled", channel.enabled)),
        priority=int(override.get("priority", channel.priority)),
        rate_limits=replace(channel.rate_limits, **policy_changes),
    )
