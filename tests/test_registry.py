"""
test_registry.py — Channel catalogue and deployment overrides.

Run with:
    pytest tests/test_registry.py -v
"""

from __future__ import annotations

import pytest

from notifier.app.core.errors import NotFoundError, ValidationError
from notifier.app.delivery.models import ChannelType
from notifier.app.delivery.registry import (
    DEFAULT_CHANNELS,
    ChannelRegistry,
    apply_override,
    parse_channel,
)

from conftest import make_settings


class TestDefaultCatalogue:

    def test_priorities(self):
        registry = ChannelRegistry()
        assert [c.type for c in registry.list_enabled()] == [
            ChannelType.EMAIL,
            ChannelType.WHATSAPP,
            ChannelType.SMS,
            ChannelType.SLACK,
            ChannelType.DASHBOARD,
        ]

    def test_rate_limits(self):
        sms = DEFAULT_CHANNELS[ChannelType.SMS].rate_limits
        assert (sms.max_per_hour, sms.max_per_day, sms.cooldown_minutes) == (10, 50, 30)
        dash = DEFAULT_CHANNELS[ChannelType.DASHBOARD].rate_limits
        assert dash.cooldown_minutes == 0

    def test_always_available_is_dashboard(self):
        assert ChannelRegistry().always_available == ChannelType.DASHBOARD


class TestLookup:

    def test_get_by_name(self):
        assert ChannelRegistry().get("Email").type == ChannelType.EMAIL

    def test_get_unknown_name(self):
        with pytest.raises(ValidationError):
            ChannelRegistry().get("pager")

    def test_get_missing_entry(self):
        registry = ChannelRegistry({ChannelType.EMAIL: DEFAULT_CHANNELS[ChannelType.EMAIL]})
        with pytest.raises(NotFoundError):
            registry.get(ChannelType.SMS)
        assert registry.find(ChannelType.SMS) is None
        assert not registry.is_enabled(ChannelType.SMS)

    def test_sort_by_priority(self):
        registry = ChannelRegistry()
        ordered = registry.sort_by_priority([ChannelType.SLACK, ChannelType.EMAIL, ChannelType.SMS])
        assert ordered == [ChannelType.EMAIL, ChannelType.SMS, ChannelType.SLACK]

    def test_parse_channel(self):
        assert parse_channel(" SMS ") == ChannelType.SMS
        assert parse_channel(ChannelType.SLACK) == ChannelType.SLACK
        with pytest.raises(ValidationError):
            parse_channel("fax")


class TestFromSettings:

    def test_disabled_channels(self):
        registry = ChannelRegistry.from_settings(make_settings(DISABLED_CHANNELS=["sms"]))
        assert not registry.is_enabled(ChannelType.SMS)
        assert ChannelType.SMS not in [c.type for c in registry.list_enabled()]
        assert registry.find(ChannelType.SMS) is not None

    def test_overrides(self):
        registry = ChannelRegistry.from_settings(make_settings(
            CHANNEL_OVERRIDES={"sms": {"priority": 0, "max_per_hour": 2}},
        ))
        sms = registry.get(ChannelType.SMS)
        assert sms.priority == 0
        assert sms.rate_limits.max_per_hour == 2
        assert sms.rate_limits.max_per_day == 50
        assert registry.list_enabled()[0].type == ChannelType.SMS

    def test_disabled_dashboard_has_no_always_available(self):
        registry = ChannelRegistry.from_settings(make_settings(DISABLED_CHANNELS=["dashboard"]))
        assert registry.always_available is None

    def test_unknown_channel_in_overrides(self):
        with pytest.raises(ValidationError):
            ChannelRegistry.from_settings(make_settings(CHANNEL_OVERRIDES={"fax": {}}))


class TestApplyOverride:

    def test_unknown_key(self):
        with pytest.raises(ValidationError):
            apply_override(DEFAULT_CHANNELS[ChannelType.EMAIL], {"burst": 3})

    def test_negative_limit(self):
        with pytest.raises(ValidationError):
            apply_override(DEFAULT_CHANNELS[ChannelType.EMAIL], {"max_per_day": -1})

    def test_disable(self):
        channel = apply_override(DEFAULT_CHANNELS[ChannelType.SLACK], {"enabled": False})
        assert not channel.enabled
        assert channel.priority == 4
