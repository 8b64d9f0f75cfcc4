"""
dashboard.py — In-app notifications via an in-process event topic.

The dashboard is the always-available channel. Its transport never leaves
the process: it publishes an event on a NotificationTopic, and any
subscriber (a websocket handler, the recipient notifications route, a test)
receives it through its own asyncio.Queue.

Event shape:
    {"id", "recipient_id", "title", "message", "created_at"}
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from notifier.app.delivery.models import SendResult

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    queue: "asyncio.Queue[Dict[str, Any]]"
    recipient_id: Optional[str] = None  # None receives every event
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    def wants(self, event: Dict[str, Any]) -> bool:
        return self.recipient_id is None or event.get("recipient_id") == self.recipient_id


class NotificationTopic:
    """Fan-out of dashboard events to subscribers, plus a bounded history."""

    def __init__(self, *, history_size: int = 500, queue_size: int = 100):
        self._subscribers: Dict[str, Subscription] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._queue_size = queue_size

    def subscribe(self, recipient_id: Optional[str] = None) -> Subscription:
        sub = Subscription(queue=asyncio.Queue(maxsize=self._queue_size), recipient_id=recipient_id)
        self._subscribers[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.pop(subscription.id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Dict[str, Any]) -> int:
        """Deliver to matching subscribers. Returns how many received it."""
        self._history.append(event)
        delivered = 0
        for sub in list(self._subscribers.values()):
            if not sub.wants(event):
                continue
            if sub.queue.full():
                # Slow consumer: drop its oldest event
                sub.queue.get_nowait()
                logger.warning("Dashboard subscriber %s lagging, dropped an event", sub.id)
            sub.queue.put_nowait(event)
            delivered += 1
        return delivered

    def recent(self, recipient_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest-first events for one recipient."""
        matching = [e for e in reversed(self._history) if e.get("recipient_id") == recipient_id]
        return matching[:limit]


async def send(
    address: str,
    subject: str,
    body: str,
    *,
    topic: NotificationTopic,
) -> SendResult:
    """Publish a dashboard notification for recipient ``address``."""
    event = {
        "id": f"dash-{uuid.uuid4().hex[:12]}",
        "recipient_id": address,
        "title": subject,
        "message": body,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    listeners = topic.publish(event)
    logger.info(
        "[DASHBOARD] → %s: '%s' (%d live subscriber(s))", address, subject, listeners,
        extra={"channel": "dashboard", "recipient_id": address},
    )
    return SendResult(success=True, provider_message_id=event["id"])
