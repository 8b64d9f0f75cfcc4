"""
ORM tables for the delivery ledger.

Timestamps are stored as naive UTC; conversion happens in sql_store.py.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from notifier.app.core.database import Base


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class AlertRow(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_recipient_created", "recipient_id", "created_at"),
        Index("ix_alerts_status_scheduled", "status", "scheduled_at"),
    )

    id = Column(String(32), primary_key=True)
    recipient_id = Column(String(128), nullable=False, index=True)
    template_id = Column(String(128), nullable=False)
    variables = Column(JSON_TYPE, nullable=False, default=dict)
    channels = Column(JSON_TYPE, nullable=False, default=list)
    urgency = Column(String(16), nullable=False)
    broadcast_mode = Column(Boolean, nullable=False, default=False)
    send_to_all = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)


class DeliveryAttemptRow(Base):
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        Index("ix_delivery_attempts_recipient_created", "recipient_id", "created_at"),
    )

    id = Column(String(32), primary_key=True)
    alert_id = Column(
        String(32),
        ForeignKey("alerts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient_id = Column(String(128), nullable=False)
    channel = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    provider_message_id = Column(String(255), nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    retryable = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
