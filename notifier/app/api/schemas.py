"""
Pydantic schemas for the alert delivery API.

Separated from the route handlers so they are reusable across the codebase
(background workers, tests). Channel names are accepted as plain strings
and resolved by the registry, so an unknown channel produces the same
VALIDATION_ERROR envelope as the rest of the delivery errors.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from notifier.app.delivery.models import AttemptStatus, Tone, Urgency


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class SendAlertRequest(BaseModel):
    """Deliver one alert to one recipient."""
    recipient_id: str = Field(..., min_length=1, examples=["seller-42"])
    template_id: str = Field(..., min_length=1, examples=["stockout_warning"])
    variables: Dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"product_title": "Yoga Mat", "asin": "B000123", "days_remaining": 3}],
    )
    urgency: Optional[Urgency] = Field(
        None, description="Overrides the template urgency",
    )
    channels: Optional[List[str]] = Field(
        None, description="Explicit channels; bypasses urgency-based selection",
        examples=[["email", "sms"]],
    )
    broadcast_mode: bool = Field(False, description="Send on all channels concurrently")
    send_to_all: bool = Field(
        False, description="Fallback chain continues after the first success",
    )
    schedule_at: Optional[datetime] = Field(None, description="Deliver later")
    expires_at: Optional[datetime] = Field(None, description="Abandon delivery after")


class ProviderEventRequest(BaseModel):
    """Delivery receipt reported by a provider webhook."""
    status: AttemptStatus = Field(..., examples=["delivered"])
    occurred_at: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def _callback_status(cls, v: AttemptStatus) -> AttemptStatus:
        if v not in (AttemptStatus.DELIVERED, AttemptStatus.OPENED, AttemptStatus.CLICKED):
            raise ValueError("status must be delivered, opened or clicked")
        return v


class ScheduledDispatchRequest(BaseModel):
    now: Optional[datetime] = Field(None, description="Defaults to the current time")


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateRequest(BaseModel):
    name: str = ""
    channel_hint: Optional[str] = None
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    required_variables: List[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.NORMAL
    tone: Tone = Tone.PROFESSIONAL
    include_context: bool = True
    include_recommendations: bool = False


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------

class RecipientRequest(BaseModel):
    display_name: str = Field("", examples=["Ana"])
    contact_addresses: Dict[str, str] = Field(
        default_factory=dict,
        examples=[{"email": "ana@example.com", "sms": "+15550001111"}],
    )
    preferred_channels: List[str] = Field(default_factory=list, examples=[["email", "whatsapp"]])
    tone: Optional[Tone] = None
    timezone: str = Field("UTC", examples=["America/New_York"])
    performance_summary: Dict[str, Any] = Field(default_factory=dict)


class RecommendationIn(BaseModel):
    title: str = Field(..., min_length=1)
    impact: float = 0.0


class RecommendationsRequest(BaseModel):
    items: List[RecommendationIn] = Field(default_factory=list)
