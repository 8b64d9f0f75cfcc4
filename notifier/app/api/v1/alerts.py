"""
FastAPI routes: alert delivery.

Provides endpoints to:
    POST /api/v1/alerts                               — send an alert
    GET  /api/v1/alerts/channels                      — channel catalogue
    GET  /api/v1/alerts/templates                     — list templates
    PUT  /api/v1/alerts/templates/{template_id}       — create / replace a template
    GET  /api/v1/alerts/stats/{recipient_id}          — engagement analytics
    POST /api/v1/alerts/deliveries/{attempt_id}/events — provider receipt webhook
    POST /api/v1/alerts/deliveries/by-provider-id/{provider_message_id}/events
                                                      — receipt keyed by provider id
    POST /api/v1/alerts/scheduled/dispatch            — run due scheduled alerts
    GET  /api/v1/alerts/{alert_id}                    — alert with its attempts
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from notifier.app.api.schemas import (
    ProviderEventRequest,
    ScheduledDispatchRequest,
    SendAlertRequest,
    TemplateRequest,
)
from notifier.app.core.errors import ValidationError
from notifier.app.delivery.dispatcher import SendOptions
from notifier.app.delivery.models import PersonalizationRules, Template
from notifier.app.delivery.personalization import placeholders
from notifier.app.delivery.registry import parse_channel
from notifier.app.delivery.service import DeliveryStack

router = APIRouter(prefix="/api/v1/alerts", tags=["alert-delivery"])


def get_stack(request: Request) -> DeliveryStack:
    return request.app.state.delivery


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    summary="Send an alert",
    description=(
        "Validates the template variables, selects channels by urgency (or uses "
        "the explicit list) and delivers in broadcast or fallback-chain mode."
    ),
)
async def send_alert(
    body: SendAlertRequest,
    response: Response,
    stack: DeliveryStack = Depends(get_stack),
):
    report = await stack.dispatcher.send_alert(
        body.recipient_id,
        body.template_id,
        body.variables,
        SendOptions(
            urgency=body.urgency,
            channels=body.channels,
            broadcast_mode=body.broadcast_mode,
            send_to_all=body.send_to_all,
            schedule_at=body.schedule_at,
            expires_at=body.expires_at,
        ),
    )
    if report.scheduled:
        response.status_code = 202
    return report.to_dict()


@router.get("/channels", summary="List configured channels")
async def list_channels(stack: DeliveryStack = Depends(get_stack)):
    always = stack.registry.always_available
    return {
        "channels": [c.to_dict() for c in stack.registry.list_all()],
        "always_available": always.value if always else None,
        "high_urgency_fanout": stack.settings.HIGH_URGENCY_CHANNEL_COUNT,
    }


@router.get("/templates", summary="List templates")
async def list_templates(stack: DeliveryStack = Depends(get_stack)):
    templates = await stack.templates.list_templates()
    return {"templates": [t.to_dict() for t in templates]}


@router.put("/templates/{template_id}", summary="Create or replace a template")
async def upsert_template(
    template_id: str,
    body: TemplateRequest,
    stack: DeliveryStack = Depends(get_stack),
):
    declared = placeholders(body.subject) | placeholders(body.body)
    undeclared = sorted(set(body.required_variables) - declared)
    if undeclared:
        raise ValidationError(
            f"Required variables not used in subject or body: {', '.join(undeclared)}",
            field="required_variables",
        )

    template = Template(
        id=template_id,
        name=body.name or template_id,
        channel_hint=parse_channel(body.channel_hint) if body.channel_hint else None,
        subject=body.subject,
        body=body.body,
        required_variables=frozenset(body.required_variables),
        urgency=body.urgency,
        personalization=PersonalizationRules(
            tone=body.tone,
            include_context=body.include_context,
            include_recommendations=body.include_recommendations,
        ),
    )
    await stack.templates.upsert(template)
    return template.to_dict()


@router.get("/stats/{recipient_id}", summary="Delivery and engagement analytics")
async def delivery_stats(
    recipient_id: str,
    window_days: Optional[int] = Query(None, ge=1, le=365),
    stack: DeliveryStack = Depends(get_stack),
):
    stats = await stack.tracker.get_delivery_stats(
        recipient_id,
        window_days or stack.settings.STATS_DEFAULT_WINDOW_DAYS,
        now=stack.dispatcher.now(),
        preferred_limit=stack.settings.PREFERRED_CHANNEL_LIMIT,
    )
    return stats.to_dict()


@router.post(
    "/deliveries/{attempt_id}/events",
    summary="Apply a provider delivery receipt",
    description="Forward-only: regressions and events for failed attempts are ignored.",
)
async def provider_event(
    attempt_id: str,
    body: ProviderEventRequest,
    stack: DeliveryStack = Depends(get_stack),
):
    attempt, applied = await stack.tracker.apply_provider_event(
        attempt_id, body.status, body.occurred_at,
    )
    return {"applied": applied, "attempt": attempt.to_dict()}


@router.post(
    "/deliveries/by-provider-id/{provider_message_id}/events",
    summary="Apply a provider delivery receipt by provider message id",
    description="Same as the attempt-id webhook, keyed by the id the provider returned on send.",
)
async def provider_event_by_message_id(
    provider_message_id: str,
    body: ProviderEventRequest,
    stack: DeliveryStack = Depends(get_stack),
):
    attempt, applied = await stack.tracker.apply_provider_event_by_message_id(
        provider_message_id, body.status, body.occurred_at,
    )
    return {"applied": applied, "attempt": attempt.to_dict()}


@router.post("/scheduled/dispatch", summary="Dispatch due scheduled alerts")
async def dispatch_scheduled(
    body: Optional[ScheduledDispatchRequest] = None,
    stack: DeliveryStack = Depends(get_stack),
):
    reports = await stack.dispatcher.dispatch_scheduled(body.now if body else None)
    return {"dispatched": len(reports), "reports": [r.to_dict() for r in reports]}


@router.get("/{alert_id}", summary="Get an alert and its delivery attempts")
async def get_alert(alert_id: str, stack: DeliveryStack = Depends(get_stack)):
    alert = await stack.tracker.get_alert(alert_id)
    attempts = await stack.tracker.get_attempts(alert_id)
    return {**alert.to_dict(), "attempts": [a.to_dict() for a in attempts]}
