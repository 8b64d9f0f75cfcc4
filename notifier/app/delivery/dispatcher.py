"""
dispatcher.py — Alert delivery orchestration.

This is the central coordinator that:
    1. Validates the request (template, recipient, required variables)
    2. Chooses channels (explicit list, or urgency-driven selection)
    3. Records the alert, or parks it when scheduled for later
    4. Runs each channel through expiry → availability → rate limit →
       render → provider send → ledger
    5. Returns a DispatchReport carrying the alert id

═══════════════════════════════════════════════════════════════════════════
DISPATCH MODES
═══════════════════════════════════════════════════════════════════════════

    Broadcast        every channel at once, fan-out bounded by a semaphore
                     sized to the channel count; all outcomes recorded

    FallbackChain    channels one by one in priority order; stops at the
                     first "sent" unless send_to_all, in which case every
                     channel is tried, still sequentially

═══════════════════════════════════════════════════════════════════════════
PER-CHANNEL OUTCOMES
═══════════════════════════════════════════════════════════════════════════

    Outcome               Ledger record         Fallback chain
    ──────────────────    ──────────────────    ──────────────────────
    expired               none                  remaining channels dropped
    channel unavailable   none                  next channel
    rate limited          none                  next channel
    provider failure      attempt FAILED        next channel
    provider accepted     attempt SENT          stop (unless send_to_all)

Only validation failures propagate to the caller. There are no same-channel
retries; failed attempts carry ``retryable`` so callers can decide whether
to send again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from notifier.app.core.errors import (
    ChannelUnavailable,
    ExpiredAlert,
    NotFoundError,
    ProviderError,
    RateLimitExceeded,
    ValidationError,
)
from notifier.app.delivery.channels import Transport
from notifier.app.delivery.models import (
    Alert,
    AlertStatus,
    AttemptStatus,
    ChannelType,
    DeliveryAttempt,
    DispatchReport,
    FailureCategory,
    RecipientContext,
    SendResult,
    SkippedChannel,
    Template,
    Urgency,
)
from notifier.app.delivery.personalization import PersonalizationEngine
from notifier.app.delivery.registry import ChannelRegistry, parse_channel
from notifier.app.delivery.selector import ChannelSelector
from notifier.app.delivery.tracker import DeliveryTracker

logger = logging.getLogger(__name__)

Outcome = Union[DeliveryAttempt, SkippedChannel]


@dataclass
class SendOptions:
    """Caller options for one send_alert call."""
    urgency: Optional[Urgency] = None
    channels: Optional[Sequence[Any]] = None  # explicit list bypasses selection
    broadcast_mode: bool = False
    send_to_all: bool = False
    schedule_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class DeliveryDispatcher:
    def __init__(
        self,
        *,
        registry: ChannelRegistry,
        templates,
        recipients,
        rate_limiter,
        personalization: PersonalizationEngine,
        selector: ChannelSelector,
        tracker: DeliveryTracker,
        transports: Mapping[ChannelType, Transport],
        send_timeout_seconds: float = 15.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.templates = templates
        self.recipients = recipients
        self.rate_limiter = rate_limiter
        self.personalization = personalization
        self.selector = selector
        self.tracker = tracker
        self.transports = dict(transports)
        self.send_timeout_seconds = send_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return _utc(self._clock())

    # ═══════════════════════════════════════════════════════════════════════
    # Entry points
    # ═══════════════════════════════════════════════════════════════════════

    async def send_alert(
        self,
        recipient_id: str,
        template_id: str,
        variables: Optional[Mapping[str, Any]] = None,
        options: Optional[SendOptions] = None,
    ) -> DispatchReport:
        """
        Deliver one alert. Raises ValidationError before anything is
        recorded; every other failure is reported per channel.
        """
        options = options or SendOptions()
        variables = {str(k): str(v) for k, v in (variables or {}).items() if v is not None}

        template = await self._load_template(template_id)
        recipient = await self._load_recipient(recipient_id)
        self.personalization.validate(template, variables, recipient)

        now = self.now()
        schedule_at = _utc(options.schedule_at)
        expires_at = _utc(options.expires_at)
        if expires_at and schedule_at and expires_at <= schedule_at:
            raise ValidationError("expires_at must be after schedule_at", field="expires_at")

        try:
            urgency = Urgency(options.urgency) if options.urgency else template.urgency
        except ValueError:
            raise ValidationError(f"Unknown urgency '{options.urgency}'", field="urgency") from None
        skipped: List[SkippedChannel] = []
        if options.channels is not None:
            channels = self._explicit_channels(options.channels, skipped)
        else:
            channels = self.selector.select(urgency, recipient.preferred_channels)

        alert = Alert(
            recipient_id=recipient.recipient_id,
            template_id=template.id,
            variables=variables,
            channels=tuple(channels),
            urgency=urgency,
            broadcast_mode=options.broadcast_mode,
            send_to_all=options.send_to_all,
            created_at=now,
            scheduled_at=schedule_at or now,
            expires_at=expires_at,
        )
        await self.tracker.record_alert(alert)
        log_extra = {"alert_id": alert.id, "recipient_id": alert.recipient_id,
                     "template_id": template.id}
        for skip in skipped:
            self._log_skip(alert, skip)

        if not alert.is_due(now):
            logger.info(
                "Alert scheduled for %s on %d channel(s)",
                alert.scheduled_at.isoformat(), len(alert.channels), extra=log_extra,
            )
            return DispatchReport(alert=alert, skipped=skipped, scheduled=True)

        report = await self._run(alert, template, recipient)
        report.skipped = skipped + report.skipped
        return report

    async def dispatch_scheduled(self, now: Optional[datetime] = None) -> List[DispatchReport]:
        """Dispatch every pending alert whose scheduled time has passed."""
        now = _utc(now) or self.now()
        reports: List[DispatchReport] = []

        for alert in await self.tracker.list_due_alerts(now):
            try:
                template = await self._load_template(alert.template_id)
                recipient = await self._load_recipient(alert.recipient_id)
                self.personalization.validate(template, alert.variables, recipient)
            except ValidationError as e:
                # Template or recipient removed or changed after scheduling
                logger.warning(
                    "Scheduled alert dropped: %s", e.message,
                    extra={"alert_id": alert.id, "recipient_id": alert.recipient_id},
                )
                await self.tracker.set_alert_status(alert, AlertStatus.COMPLETED)
                reports.append(DispatchReport(alert=alert, completed_at=self.now()))
                continue
            reports.append(await self._run(alert, template, recipient))

        if reports:
            logger.info("Dispatched %d scheduled alert(s)", len(reports))
        return reports

    # ═══════════════════════════════════════════════════════════════════════
    # Validation helpers
    # ═══════════════════════════════════════════════════════════════════════

    async def _load_template(self, template_id: str) -> Template:
        try:
            return await self.templates.get_template(template_id)
        except NotFoundError:
            raise ValidationError(
                f"Unknown template '{template_id}'", field="template_id",
            ) from None

    async def _load_recipient(self, recipient_id: str) -> RecipientContext:
        try:
            return await self.recipients.get_recipient_context(recipient_id)
        except NotFoundError:
            raise ValidationError(
                f"Unknown recipient '{recipient_id}'", field="recipient_id",
            ) from None

    def _explicit_channels(
        self, requested: Sequence[Any], skipped: List[SkippedChannel],
    ) -> List[ChannelType]:
        if not requested:
            raise ValidationError("channels must not be empty when given", field="channels")

        parsed: List[ChannelType] = []
        for value in requested:
            channel = parse_channel(value)
            if channel not in parsed:
                parsed.append(channel)

        usable = []
        for channel in parsed:
            if self.registry.is_enabled(channel):
                usable.append(channel)
            else:
                skipped.append(SkippedChannel(
                    channel, FailureCategory.CHANNEL_UNAVAILABLE, "channel disabled",
                ))

        always = self.registry.always_available
        ordered = self.registry.sort_by_priority(c for c in usable if c != always)
        if always in usable:
            ordered.append(always)
        return ordered

    # ═══════════════════════════════════════════════════════════════════════
    # Orchestration
    # ═══════════════════════════════════════════════════════════════════════

    async def _run(
        self, alert: Alert, template: Template, recipient: RecipientContext,
    ) -> DispatchReport:
        report = DispatchReport(alert=alert, started_at=self.now())
        await self.tracker.set_alert_status(alert, AlertStatus.PROCESSING)

        try:
            if alert.broadcast_mode:
                outcomes = await self._run_broadcast(alert, template, recipient)
            else:
                outcomes = await self._run_chain(alert, template, recipient)
        finally:
            await self.tracker.set_alert_status(alert, AlertStatus.COMPLETED)
            report.completed_at = self.now()

        for outcome in outcomes:
            if isinstance(outcome, DeliveryAttempt):
                report.attempts.append(outcome)
            else:
                report.skipped.append(outcome)

        logger.info(
            "Alert %s completed [%s]: %d sent, %d failed, %d skipped",
            alert.id, alert.mode.value,
            sum(1 for a in report.attempts if a.status == AttemptStatus.SENT),
            sum(1 for a in report.attempts if a.status == AttemptStatus.FAILED),
            len(report.skipped),
            extra={"alert_id": alert.id, "recipient_id": alert.recipient_id},
        )
        return report

    async def _run_broadcast(
        self, alert: Alert, template: Template, recipient: RecipientContext,
    ) -> List[Outcome]:
        if not alert.channels:
            return []
        limit = asyncio.Semaphore(len(alert.channels))

        async def bounded(channel: ChannelType) -> Outcome:
            async with limit:
                return await self._attempt_channel(alert, template, recipient, channel)

        return list(await asyncio.gather(*(bounded(c) for c in alert.channels)))

    async def _run_chain(
        self, alert: Alert, template: Template, recipient: RecipientContext,
    ) -> List[Outcome]:
        outcomes: List[Outcome] = []
        channels = list(alert.channels)

        for index, channel in enumerate(channels):
            outcome = await self._attempt_channel(alert, template, recipient, channel)
            outcomes.append(outcome)

            if isinstance(outcome, SkippedChannel) and outcome.category == FailureCategory.EXPIRED:
                for remaining in channels[index + 1:]:
                    outcomes.append(SkippedChannel(
                        remaining, FailureCategory.EXPIRED, "alert expired",
                    ))
                break

            sent = isinstance(outcome, DeliveryAttempt) and outcome.status == AttemptStatus.SENT
            if sent and not alert.send_to_all:
                break

        return outcomes

    # ═══════════════════════════════════════════════════════════════════════
    # Per-channel pipeline
    # ═══════════════════════════════════════════════════════════════════════

    async def _attempt_channel(
        self,
        alert: Alert,
        template: Template,
        recipient: RecipientContext,
        channel: ChannelType,
    ) -> Outcome:
        try:
            return await self._deliver(alert, template, recipient, channel)
        except ExpiredAlert:
            skip = SkippedChannel(channel, FailureCategory.EXPIRED, "alert expired")
        except ChannelUnavailable as e:
            skip = SkippedChannel(channel, FailureCategory.CHANNEL_UNAVAILABLE, e.reason)
        except RateLimitExceeded as e:
            skip = SkippedChannel(channel, FailureCategory.RATE_LIMITED, e.reason)
        self._log_skip(alert, skip)
        return skip

    async def _deliver(
        self,
        alert: Alert,
        template: Template,
        recipient: RecipientContext,
        channel: ChannelType,
    ) -> DeliveryAttempt:
        now = self.now()
        if alert.is_expired(now):
            raise ExpiredAlert(alert.id)

        if not self.registry.is_enabled(channel):
            raise ChannelUnavailable(channel.value, "channel disabled")
        address = recipient.address_for(channel)
        if not address:
            raise ChannelUnavailable(channel.value, "no contact address")
        transport = self.transports.get(channel)
        if transport is None:
            raise ChannelUnavailable(channel.value, "no transport configured")

        decision = await self.rate_limiter.reserve(recipient.recipient_id, channel, now)
        if not decision.allowed:
            raise RateLimitExceeded(recipient.recipient_id, channel.value, decision.reason)

        content = await self.personalization.render(template, alert.variables, recipient, channel)

        attempt = DeliveryAttempt(
            alert_id=alert.id,
            recipient_id=recipient.recipient_id,
            channel=channel,
            created_at=now,
        )
        try:
            result = await self._call_transport(transport, channel, address, content.subject, content.body)
            if not result.success:
                raise ProviderError(
                    channel.value, result.error or "send rejected", retryable=result.retryable,
                )
        except ProviderError as e:
            attempt.failure_reason = e.provider_message
            attempt.retryable = e.retryable
            attempt.advance(AttemptStatus.FAILED, self.now())
            logger.warning(
                "Delivery failed on %s: %s", channel.value, e.provider_message,
                extra={"alert_id": alert.id, "attempt_id": attempt.id,
                       "channel": channel.value, "category": FailureCategory.PROVIDER_ERROR.value},
            )
        else:
            attempt.provider_message_id = result.provider_message_id
            attempt.advance(AttemptStatus.SENT, self.now())
            logger.info(
                "Sent via %s%s", channel.value, " (degraded render)" if content.degraded else "",
                extra={"alert_id": alert.id, "attempt_id": attempt.id, "channel": channel.value},
            )

        await self.tracker.record_attempt(attempt)
        return attempt

    async def _call_transport(
        self, transport: Transport, channel: ChannelType, address: str, subject: str, body: str,
    ) -> SendResult:
        try:
            return await asyncio.wait_for(
                transport(address, subject, body), timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return SendResult(
                success=False,
                error=f"timed out after {self.send_timeout_seconds:g}s",
                retryable=True,
            )
        except Exception as e:
            logger.error("Transport for %s raised: %s", channel.value, e, exc_info=True)
            return SendResult(success=False, error=str(e) or type(e).__name__)

    def _log_skip(self, alert: Alert, skip: SkippedChannel) -> None:
        logger.warning(
            "Skipped %s: %s", skip.channel.value, skip.reason,
            extra={"alert_id": alert.id, "recipient_id": alert.recipient_id,
                   "channel": skip.channel.value, "category": skip.category.value},
        )
