"""
personalization.py — Turns a Template into channel-ready text.

═══════════════════════════════════════════════════════════════════════════
RENDER PIPELINE
═══════════════════════════════════════════════════════════════════════════

    1. Substitution      {{key}} ← call variables, then recipient profile
                         missing required key → ValidationError
                         unresolved optional key → removed
    2. Context           "Good morning, Ana!" greeting (recipient timezone)
                         business-context line on long-form channels only
    3. Tone              friendly → "!" at sentence ends + " 😊"
                         urgent   → "🚨 URGENT: " prefix, imperatives upper-cased
                         professional → unchanged
    4. Recommendations   "Your top opportunities:" + up to N ranked items
                         empty or failing source → step skipped
    5. Channel format    SMS / WhatsApp / Slack: markup stripped, cut to 1500
                         email / dashboard: unchanged

Any failure other than a validation failure falls back to the plain
template (variables substituted, unresolved placeholders removed) and the
result is flagged ``degraded``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notifier.app.core.errors import ValidationError
from notifier.app.delivery.models import (
    LONG_FORM_CHANNELS,
    SHORT_MESSAGE_CHANNELS,
    ChannelType,
    Recommendation,
    RecipientContext,
    RenderedContent,
    Template,
    Tone,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")
_MARKUP_RE = re.compile(r"<[^>]+>")
_GREETING_RE = re.compile(r"^\s*(hi|hello|hey|dear|good (morning|afternoon|evening))\b", re.IGNORECASE)
_SENTENCE_END_RE = re.compile(r"\.(?=\s|$)")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

URGENT_MARKER = "🚨 URGENT: "
FRIENDLY_MARKER = " 😊"
IMPERATIVE_WORDS = ("please", "act", "now", "order", "review", "respond", "update", "check")
_IMPERATIVE_RE = re.compile(
    r"\b(" + "|".join(IMPERATIVE_WORDS) + r")\b", re.IGNORECASE,
)


def placeholders(text: str) -> set:
    return {m.group(1) for m in PLACEHOLDER_RE.finditer(text)}


def substitute(text: str, values: Mapping[str, str]) -> str:
    """Replace known placeholders and drop the rest."""
    return PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), ""), text)


def strip_markup(text: str) -> str:
    return _MARKUP_RE.sub("", text)


def greeting_for(hour: int) -> str:
    if hour < 12:
        return "Good morning"
    if hour < 17:
        return "Good afternoon"
    return "Good evening"


def local_hour(now: datetime, tz_name: str) -> int:
    try:
        zone = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(zone).hour


def business_context_line(summary: Mapping[str, object]) -> str:
    if not summary:
        return ""
    revenue = summary.get("revenue", 0)
    units = summary.get("units_sold", 0)
    return f"Your current performance: {revenue} revenue, {units} units sold this week."


def apply_tone(text: str, tone: Tone) -> str:
    if tone == Tone.FRIENDLY:
        toned = _SENTENCE_END_RE.sub("!", text.rstrip())
        return toned + FRIENDLY_MARKER
    if tone == Tone.URGENT:
        toned = _IMPERATIVE_RE.sub(lambda m: m.group(1).upper(), text)
        return toned if toned.startswith(URGENT_MARKER) else URGENT_MARKER + toned
    return text


def format_recommendations(items: Sequence[Recommendation]) -> str:
    lines = []
    for rank, rec in enumerate(items, start=1):
        sign = "+" if rec.impact > 0 else "-" if rec.impact < 0 else ""
        lines.append(f"{rank}. {rec.title} ({sign}${abs(rec.impact):g})")
    return "Your top opportunities:\n" + "\n".join(lines)


class PersonalizationEngine:
    """
    Renders templates for one recipient and one channel.

    Parameters
    ----------
    recommendation_source : optional
        Object with ``async get_top_recommendations(recipient_id, limit)``.
    max_short_length : int
        Character cap for short-message channels.
    recommendation_limit : int
        Items included when the template asks for recommendations.
    clock : callable
        Returns the current aware datetime (greeting hour).
    """

    def __init__(
        self,
        recommendation_source=None,
        *,
        max_short_length: int = 1500,
        recommendation_limit: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._recommendations = recommendation_source
        self._max_short_length = max_short_length
        self._recommendation_limit = recommendation_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Substitution ──

    @staticmethod
    def resolve_values(
        variables: Mapping[str, object], recipient: Optional[RecipientContext],
    ) -> Dict[str, str]:
        values: Dict[str, str] = dict(recipient.as_variables()) if recipient else {}
        for key, value in variables.items():
            if value is not None:
                values[str(key)] = str(value)
        return values

    def validate(
        self,
        template: Template,
        variables: Mapping[str, object],
        recipient: Optional[RecipientContext] = None,
    ) -> Dict[str, str]:
        """Resolve values, raising ValidationError if a required one is missing."""
        values = self.resolve_values(variables, recipient)
        missing = sorted(k for k in template.required_variables if k not in values)
        if missing:
            raise ValidationError(
                f"Missing template variables for '{template.id}': {', '.join(missing)}",
                field="variables",
                template_id=template.id,
                missing=missing,
            )
        return values

    # ── Render ──

    async def render(
        self,
        template: Template,
        variables: Mapping[str, object],
        recipient: RecipientContext,
        channel: ChannelType,
    ) -> RenderedContent:
        values = self.validate(template, variables, recipient)
        try:
            return await self._personalize(template, values, recipient, channel)
        except ValidationError:
            raise
        except Exception as e:
            logger.warning(
                "Degraded render for template %s: %s", template.id, e,
                extra={
                    "template_id": template.id,
                    "recipient_id": recipient.recipient_id,
                    "channel": channel.value,
                },
            )
            return RenderedContent(
                subject=self._format(substitute(template.subject, values), channel),
                body=self._format(substitute(template.body, values), channel),
                degraded=True,
            )

    async def _personalize(
        self,
        template: Template,
        values: Mapping[str, str],
        recipient: RecipientContext,
        channel: ChannelType,
    ) -> RenderedContent:
        rules = template.personalization
        subject = substitute(template.subject, values)
        body = _BLANK_RUN_RE.sub("\n\n", substitute(template.body, values)).strip()

        if rules.include_context:
            body = self._add_context(body, recipient, channel)

        body = apply_tone(body, self._effective_tone(template, recipient))

        if rules.include_recommendations:
            body = await self._add_recommendations(body, recipient)

        return RenderedContent(
            subject=self._format(subject, channel),
            body=self._format(body, channel),
        )

    def _effective_tone(self, template: Template, recipient: RecipientContext) -> Tone:
        tone = template.personalization.tone
        if tone == Tone.PROFESSIONAL and recipient.tone is not None:
            return recipient.tone
        return tone

    def _add_context(self, body: str, recipient: RecipientContext, channel: ChannelType) -> str:
        if not _GREETING_RE.match(body):
            hour = local_hour(self._clock(), recipient.timezone)
            name = recipient.display_name or "there"
            body = f"{greeting_for(hour)}, {name}!\n\n{body}"

        if channel in LONG_FORM_CHANNELS:
            line = business_context_line(recipient.performance_summary)
            if line:
                body = f"{body}\n\n{line}"
        return body

    async def _add_recommendations(self, body: str, recipient: RecipientContext) -> str:
        if self._recommendations is None:
            return body
        try:
            items = await self._recommendations.get_top_recommendations(
                recipient.recipient_id, self._recommendation_limit,
            )
        except Exception as e:
            logger.warning(
                "Recommendation source failed: %s", e,
                extra={"recipient_id": recipient.recipient_id},
            )
            return body
        items = list(items or [])[: self._recommendation_limit]
        if not items:
            return body
        return f"{body}\n\n{format_recommendations(items)}"

    def _format(self, text: str, channel: ChannelType) -> str:
        if channel in SHORT_MESSAGE_CHANNELS:
            return strip_markup(text)[: self._max_short_length]
        return text
