"""
selector.py — Urgency-driven channel selection.

    Urgency      External channels chosen from the recipient's preferences
    ────────     ──────────────────────────────────────────────────────────
    critical     every preferred channel
    high         the two highest-priority preferred channels
    normal/low   the single most-preferred channel

Disabled and unknown preferences are ignored. The always-available channel
(dashboard) is appended last and does not count toward the fan-out. An
empty preference list falls back to ``DEFAULT_PREFERRED_CHANNELS``.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from notifier.app.delivery.models import ChannelType, Urgency
from notifier.app.delivery.registry import ChannelRegistry


class ChannelSelector:
    def __init__(
        self,
        registry: ChannelRegistry,
        *,
        high_urgency_fanout: int = 2,
        default_preferences: Optional[Sequence[ChannelType]] = None,
    ):
        self._registry = registry
        self._high_fanout = high_urgency_fanout
        self._defaults = list(default_preferences or [ChannelType.EMAIL])

    def select(
        self, urgency: Urgency, preferences: Iterable[ChannelType],
    ) -> List[ChannelType]:
        """Ordered, de-duplicated channels for one alert."""
        always = self._registry.always_available
        candidates = self._usable(preferences, always) or self._usable(self._defaults, always)

        if urgency == Urgency.CRITICAL:
            chosen = candidates
        elif urgency == Urgency.HIGH:
            chosen = self._registry.sort_by_priority(candidates)[: self._high_fanout]
        else:
            chosen = candidates[:1]

        ordered = self._registry.sort_by_priority(chosen)
        if always is not None:
            ordered.append(always)
        return ordered

    def _usable(
        self, preferences: Iterable[ChannelType], always: Optional[ChannelType],
    ) -> List[ChannelType]:
        seen: List[ChannelType] = []
        for channel in preferences:
            if channel == always or channel in seen:
                continue
            if self._registry.is_enabled(channel):
                seen.append(channel)
        return seen
