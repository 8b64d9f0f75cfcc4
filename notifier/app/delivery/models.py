"""
models.py — Shared data structures for the alert delivery system.

Defines:
    • ChannelType / Urgency / Tone        — catalogue enums
    • AlertStatus / AttemptStatus         — lifecycle state machines
    • FailureCategory                     — why a channel did not produce "sent"
    • Channel / RateLimitPolicy           — registry entries
    • Template / PersonalizationRules     — message definitions
    • RecipientContext / Recommendation   — inputs from external collaborators
    • Alert / DeliveryAttempt             — the delivery ledger
    • DispatchReport / DeliveryStats      — results returned to callers

═══════════════════════════════════════════════════════════════════════════
DELIVERY ATTEMPT STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    PENDING ──► SENT ──► DELIVERED ──► OPENED ──► CLICKED
       │
       └──────► FAILED (terminal)

The dispatcher only writes SENT or FAILED. Later states arrive through
provider callbacks and may skip ahead (an "opened" receipt implies the
message was delivered), but never move backwards.

═══════════════════════════════════════════════════════════════════════════
ALERT STATUS
═══════════════════════════════════════════════════════════════════════════

    PENDING ──► PROCESSING ──► COMPLETED

Monotonic. A scheduled alert stays PENDING until its scheduled_at passes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from notifier.app.core.errors import StateTransitionError


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class ChannelType(str, Enum):
    """Available delivery channels."""
    EMAIL     = "email"
    WHATSAPP  = "whatsapp"
    SMS       = "sms"
    SLACK     = "slack"
    DASHBOARD = "dashboard"  # in-app, always available


# Channels limited to short plain-text messages
SHORT_MESSAGE_CHANNELS: FrozenSet[ChannelType] = frozenset({
    ChannelType.SMS,
    ChannelType.WHATSAPP,
    ChannelType.SLACK,
})

# Channels that render full-length content
LONG_FORM_CHANNELS: FrozenSet[ChannelType] = frozenset({
    ChannelType.EMAIL,
    ChannelType.DASHBOARD,
})


class Urgency(str, Enum):
    LOW      = "low"
    NORMAL   = "normal"
    HIGH     = "high"
    CRITICAL = "critical"


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    FRIENDLY     = "friendly"
    URGENT       = "urgent"


class AlertStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"


_ALERT_STATUS_RANK = {
    AlertStatus.PENDING: 0,
    AlertStatus.PROCESSING: 1,
    AlertStatus.COMPLETED: 2,
}


class AttemptStatus(str, Enum):
    PENDING   = "pending"
    SENT      = "sent"
    DELIVERED = "delivered"
    OPENED    = "opened"
    CLICKED   = "clicked"
    FAILED    = "failed"


# Forward progression for non-failed attempts
_ATTEMPT_PROGRESSION: Tuple[AttemptStatus, ...] = (
    AttemptStatus.PENDING,
    AttemptStatus.SENT,
    AttemptStatus.DELIVERED,
    AttemptStatus.OPENED,
    AttemptStatus.CLICKED,
)

# Statuses a provider callback may report
CALLBACK_STATUSES: FrozenSet[AttemptStatus] = frozenset({
    AttemptStatus.DELIVERED,
    AttemptStatus.OPENED,
    AttemptStatus.CLICKED,
})


class FailureCategory(str, Enum):
    """Error taxonomy used for skip bookkeeping and failed attempts."""
    RATE_LIMITED        = "rate_limited"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    PROVIDER_ERROR      = "provider_error"
    EXPIRED             = "expired"


class DispatchMode(str, Enum):
    BROADCAST      = "broadcast"
    FALLBACK_CHAIN = "fallback_chain"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _generate_alert_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def _generate_attempt_id() -> str:
    return f"DLV-{uuid.uuid4().hex[:12].upper()}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Registry entries
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RateLimitPolicy:
    """Per-channel throttling policy."""
    max_per_hour: int
    max_per_day: int
    cooldown_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_per_hour": self.max_per_hour,
            "max_per_day": self.max_per_day,
            "cooldown_minutes": self.cooldown_minutes,
        }


@dataclass(frozen=True)
class Channel:
    """A configured delivery channel. Lower priority value is tried first."""
    type: ChannelType
    enabled: bool
    priority: int
    rate_limits: RateLimitPolicy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "enabled": self.enabled,
            "priority": self.priority,
            "rate_limits": self.rate_limits.to_dict(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PersonalizationRules:
    tone: Tone = Tone.PROFESSIONAL
    include_context: bool = True
    include_recommendations: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tone": self.tone.value,
            "include_context": self.include_context,
            "include_recommendations": self.include_recommendations,
        }


@dataclass(frozen=True)
class Template:
    """
    A parameterised message definition.

    ``subject`` and ``body`` contain ``{{key}}`` placeholders. Every key in
    ``required_variables`` must resolve at render time.
    """
    id: str
    subject: str
    body: str
    name: str = ""
    channel_hint: Optional[ChannelType] = None
    required_variables: FrozenSet[str] = frozenset()
    urgency: Urgency = Urgency.NORMAL
    personalization: PersonalizationRules = field(default_factory=PersonalizationRules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "channel_hint": self.channel_hint.value if self.channel_hint else None,
            "subject": self.subject,
            "body": self.body,
            "required_variables": sorted(self.required_variables),
            "urgency": self.urgency.value,
            "personalization": self.personalization.to_dict(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# External collaborator payloads
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RecipientContext:
    """
    Everything the dispatcher knows about a recipient.

    Attributes
    ----------
    recipient_id : str
    display_name : str
        Used by the greeting and the ``{{display_name}}`` placeholder.
    contact_addresses : dict
        Channel → address (email, E.164 phone, Slack webhook URL).
        The dashboard channel needs no address.
    preferred_channels : list of ChannelType
        Most-preferred first.
    tone : Tone | None
        Recipient's preferred tone, used when the template is neutral.
    timezone : str
        IANA zone name for the time-of-day greeting.
    performance_summary : dict
        Recent business figures surfaced on long-form channels.
    """
    recipient_id: str
    display_name: str = ""
    contact_addresses: Dict[ChannelType, str] = field(default_factory=dict)
    preferred_channels: List[ChannelType] = field(default_factory=list)
    tone: Optional[Tone] = None
    timezone: str = "UTC"
    performance_summary: Dict[str, Any] = field(default_factory=dict)

    def address_for(self, channel: ChannelType) -> Optional[str]:
        if channel == ChannelType.DASHBOARD:
            return self.contact_addresses.get(channel) or self.recipient_id
        return self.contact_addresses.get(channel) or None

    def as_variables(self) -> Dict[str, str]:
        """Placeholder values derivable from the profile."""
        values = {
            "recipient_id": self.recipient_id,
            "display_name": self.display_name or self.recipient_id,
        }
        for key, value in self.performance_summary.items():
            values.setdefault(str(key), str(value))
        return values

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "display_name": self.display_name,
            "contact_addresses": {
                c.value: addr for c, addr in self.contact_addresses.items()
            },
            "preferred_channels": [c.value for c in self.preferred_channels],
            "tone": self.tone.value if self.tone else None,
            "timezone": self.timezone,
            "performance_summary": dict(self.performance_summary),
        }


@dataclass(frozen=True)
class Recommendation:
    title: str
    impact: float = 0.0


@dataclass(frozen=True)
class SendResult:
    """Outcome of one provider call."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    body: str
    degraded: bool = False


# ═══════════════════════════════════════════════════════════════════════════
# Ledger
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Alert:
    """One logical notification request."""
    recipient_id: str
    template_id: str
    variables: Dict[str, str] = field(default_factory=dict)
    channels: Tuple[ChannelType, ...] = ()
    urgency: Urgency = Urgency.NORMAL
    broadcast_mode: bool = False
    send_to_all: bool = False
    id: str = field(default_factory=_generate_alert_id)
    created_at: datetime = field(default_factory=_now)
    scheduled_at: datetime = field(default_factory=_now)
    expires_at: Optional[datetime] = None
    status: AlertStatus = AlertStatus.PENDING

    @property
    def mode(self) -> DispatchMode:
        return DispatchMode.BROADCAST if self.broadcast_mode else DispatchMode.FALLBACK_CHAIN

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_at <= now

    def advance(self, status: AlertStatus) -> None:
        """Move the alert forward; regressions raise."""
        if _ALERT_STATUS_RANK[status] < _ALERT_STATUS_RANK[self.status]:
            raise StateTransitionError("Alert", self.status.value, status.value)
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.id,
            "recipient_id": self.recipient_id,
            "template_id": self.template_id,
            "variables": dict(self.variables),
            "channels": [c.value for c in self.channels],
            "urgency": self.urgency.value,
            "mode": self.mode.value,
            "send_to_all": self.send_to_all,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "scheduled_at": self.scheduled_at.isoformat(),
            "expires_at": _iso(self.expires_at),
        }


@dataclass
class DeliveryAttempt:
    """Record of one channel-specific send for one alert."""
    alert_id: str
    recipient_id: str
    channel: ChannelType
    status: AttemptStatus = AttemptStatus.PENDING
    id: str = field(default_factory=_generate_attempt_id)
    created_at: datetime = field(default_factory=_now)
    provider_message_id: Optional[str] = None
    failure_reason: Optional[str] = None
    retryable: bool = False
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None

    @property
    def reached_sent(self) -> bool:
        return self.status not in (AttemptStatus.PENDING, AttemptStatus.FAILED)

    def reached(self, status: AttemptStatus) -> bool:
        """True if the attempt is at or beyond ``status`` on the success path."""
        if self.status == AttemptStatus.FAILED or status == AttemptStatus.FAILED:
            return self.status == status
        return _ATTEMPT_PROGRESSION.index(self.status) >= _ATTEMPT_PROGRESSION.index(status)

    def can_advance_to(self, status: AttemptStatus) -> bool:
        if self.status == AttemptStatus.FAILED:
            return False
        if status == AttemptStatus.FAILED:
            return self.status == AttemptStatus.PENDING
        if status == AttemptStatus.PENDING:
            return False
        return _ATTEMPT_PROGRESSION.index(status) > _ATTEMPT_PROGRESSION.index(self.status)

    def advance(self, status: AttemptStatus, at: Optional[datetime] = None) -> None:
        """
        Move forward along the state machine.

        Skipping ahead back-fills the timestamps of the implied earlier
        states with ``at``.
        """
        if not self.can_advance_to(status):
            raise StateTransitionError("DeliveryAttempt", self.status.value, status.value)
        at = at or _now()

        if status == AttemptStatus.FAILED:
            self.status = status
            return

        start = _ATTEMPT_PROGRESSION.index(self.status) + 1
        end = _ATTEMPT_PROGRESSION.index(status)
        for step in _ATTEMPT_PROGRESSION[start:end + 1]:
            attr = f"{step.value}_at"
            if getattr(self, attr) is None:
                setattr(self, attr, at)
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.id,
            "alert_id": self.alert_id,
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "provider_message_id": self.provider_message_id,
            "failure_reason": self.failure_reason,
            "retryable": self.retryable,
            "created_at": self.created_at.isoformat(),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "opened_at": _iso(self.opened_at),
            "clicked_at": _iso(self.clicked_at),
        }


@dataclass(frozen=True)
class SkippedChannel:
    """A selected channel that produced no attempt record."""
    channel: ChannelType
    category: FailureCategory
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "category": self.category.value,
            "reason": self.reason,
        }


@dataclass
class DispatchReport:
    """Result of one send_alert call."""
    alert: Alert
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    skipped: List[SkippedChannel] = field(default_factory=list)
    scheduled: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def alert_id(self) -> str:
        return self.alert.id

    @property
    def success(self) -> bool:
        """True if any attempted channel reached SENT."""
        return any(a.reached_sent for a in self.attempts)

    @property
    def expired(self) -> bool:
        return any(s.category == FailureCategory.EXPIRED for s in self.skipped)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert.id,
            "status": self.alert.status.value,
            "mode": self.alert.mode.value,
            "success": self.success,
            "scheduled": self.scheduled,
            "expired": self.expired,
            "channels": [c.value for c in self.alert.channels],
            "attempts": [a.to_dict() for a in self.attempts],
            "skipped": [s.to_dict() for s in self.skipped],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Analytics
# ═══════════════════════════════════════════════════════════════════════════

def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


@dataclass
class ChannelPerformance:
    attempted: int = 0
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    failed: int = 0

    @property
    def delivery_rate(self) -> float:
        return _ratio(self.delivered, self.sent)

    @property
    def open_rate(self) -> float:
        return _ratio(self.opened, self.delivered)

    @property
    def click_rate(self) -> float:
        return _ratio(self.clicked, self.opened)

    def add(self, attempt: DeliveryAttempt) -> None:
        self.attempted += 1
        if attempt.status == AttemptStatus.FAILED:
            self.failed += 1
            return
        if attempt.reached(AttemptStatus.SENT):
            self.sent += 1
        if attempt.reached(AttemptStatus.DELIVERED):
            self.delivered += 1
        if attempt.reached(AttemptStatus.OPENED):
            self.opened += 1
        if attempt.reached(AttemptStatus.CLICKED):
            self.clicked += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "sent": self.sent,
            "delivered": self.delivered,
            "opened": self.opened,
            "clicked": self.clicked,
            "failed": self.failed,
            "delivery_rate": round(self.delivery_rate, 4),
            "open_rate": round(self.open_rate, 4),
            "click_rate": round(self.click_rate, 4),
        }


@dataclass
class DeliveryStats:
    recipient_id: str
    window_days: int
    total_alerts: int = 0
    totals: ChannelPerformance = field(default_factory=ChannelPerformance)
    channel_performance: Dict[ChannelType, ChannelPerformance] = field(default_factory=dict)
    preferred_channels: List[ChannelType] = field(default_factory=list)

    @property
    def delivery_rate(self) -> float:
        return self.totals.delivery_rate

    @property
    def open_rate(self) -> float:
        return self.totals.open_rate

    @property
    def click_rate(self) -> float:
        return self.totals.click_rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "window_days": self.window_days,
            "total_alerts": self.total_alerts,
            "total_attempts": self.totals.attempted,
            "delivery_rate": round(self.delivery_rate, 4),
            "open_rate": round(self.open_rate, 4),
            "click_rate": round(self.click_rate, 4),
            "channel_performance": {
                c.value: perf.to_dict()
                for c, perf in self.channel_performance.items()
            },
            "preferred_channels": [c.value for c in self.preferred_channels],
        }
