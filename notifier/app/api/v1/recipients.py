"""
FastAPI routes: recipient profiles, recommendations and in-app notifications.

Provides endpoints to:
    PUT /api/v1/recipients/{recipient_id}                  — store profile
    GET /api/v1/recipients/{recipient_id}                  — read profile
    PUT /api/v1/recipients/{recipient_id}/recommendations  — replace ranked items
    GET /api/v1/recipients/{recipient_id}/notifications    — recent dashboard events
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from notifier.app.api.schemas import RecipientRequest, RecommendationsRequest
from notifier.app.api.v1.alerts import get_stack
from notifier.app.delivery.models import Recommendation, RecipientContext
from notifier.app.delivery.registry import parse_channel
from notifier.app.delivery.service import DeliveryStack

router = APIRouter(prefix="/api/v1/recipients", tags=["recipients"])


@router.put("/{recipient_id}", summary="Create or replace a recipient profile")
async def upsert_recipient(
    recipient_id: str,
    body: RecipientRequest,
    stack: DeliveryStack = Depends(get_stack),
):
    recipient = RecipientContext(
        recipient_id=recipient_id,
        display_name=body.display_name,
        contact_addresses={
            parse_channel(name): address
            for name, address in body.contact_addresses.items() if address
        },
        preferred_channels=[parse_channel(c) for c in body.preferred_channels],
        tone=body.tone,
        timezone=body.timezone,
        performance_summary=dict(body.performance_summary),
    )
    await stack.recipients.upsert(recipient)
    return recipient.to_dict()


@router.get("/{recipient_id}", summary="Get a recipient profile")
async def get_recipient(recipient_id: str, stack: DeliveryStack = Depends(get_stack)):
    recipient = await stack.recipients.get_recipient_context(recipient_id)
    return recipient.to_dict()


@router.put("/{recipient_id}/recommendations", summary="Replace ranked recommendations")
async def set_recommendations(
    recipient_id: str,
    body: RecommendationsRequest,
    stack: DeliveryStack = Depends(get_stack),
):
    ranked = await stack.recommendations.set_recommendations(
        recipient_id,
        [Recommendation(title=item.title, impact=item.impact) for item in body.items],
    )
    return {
        "recipient_id": recipient_id,
        "items": [{"title": r.title, "impact": r.impact} for r in ranked],
    }


@router.get("/{recipient_id}/notifications", summary="Recent in-app notifications")
async def recent_notifications(
    recipient_id: str,
    limit: int = Query(20, ge=1, le=200),
    stack: DeliveryStack = Depends(get_stack),
):
    return {
        "recipient_id": recipient_id,
        "notifications": stack.topic.recent(recipient_id, limit),
    }
