"""
directory.py — Recipient profiles and the recommendation source.

Both are external collaborators of the dispatcher. The in-memory
implementations back the HTTP API and the tests (production: the
account service and the recommendation engine).
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Sequence

from notifier.app.core.errors import NotFoundError
from notifier.app.delivery.models import Recommendation, RecipientContext

logger = logging.getLogger(__name__)


class RecipientDirectory(Protocol):
    async def get_recipient_context(self, recipient_id: str) -> RecipientContext:
        ...


class RecommendationSource(Protocol):
    async def get_top_recommendations(
        self, recipient_id: str, limit: int,
    ) -> Sequence[Recommendation]:
        ...


class InMemoryRecipientDirectory:
    def __init__(self, recipients: Optional[Sequence[RecipientContext]] = None):
        self._recipients: Dict[str, RecipientContext] = {
            r.recipient_id: r for r in recipients or ()
        }

    async def get_recipient_context(self, recipient_id: str) -> RecipientContext:
        recipient = self._recipients.get(recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient", recipient_id=recipient_id)
        return recipient

    async def upsert(self, recipient: RecipientContext) -> RecipientContext:
        self._recipients[recipient.recipient_id] = recipient
        logger.info(
            "Recipient profile stored (%d channels)", len(recipient.contact_addresses),
            extra={"recipient_id": recipient.recipient_id},
        )
        return recipient


class InMemoryRecommendationSource:
    """Ranked opportunities per recipient, highest impact first."""

    def __init__(self):
        self._items: Dict[str, List[Recommendation]] = {}

    async def set_recommendations(
        self, recipient_id: str, items: Sequence[Recommendation],
    ) -> List[Recommendation]:
        ranked = sorted(items, key=lambda r: r.impact, reverse=True)
        self._items[recipient_id] = ranked
        return ranked

    async def get_top_recommendations(
        self, recipient_id: str, limit: int,
    ) -> List[Recommendation]:
        return list(self._items.get(recipient_id, [])[:limit])
