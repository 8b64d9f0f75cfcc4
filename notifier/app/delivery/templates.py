"""
templates.py — Template store and the built-in alert templates.

Templates are read-only during dispatch. The store is seeded with the
defaults below when it starts empty (``SEED_DEFAULT_TEMPLATES``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from notifier.app.core.errors import NotFoundError
from notifier.app.delivery.models import (
    ChannelType,
    PersonalizationRules,
    Template,
    Tone,
    Urgency,
)

logger = logging.getLogger(__name__)


STOCKOUT_WARNING = Template(
    id="stockout_warning",
    name="Stockout Warning",
    channel_hint=ChannelType.EMAIL,
    subject="Stock Alert: {{product_title}} - {{days_remaining}} days remaining",
    body=(
        'Your product "{{product_title}}" (ASIN: {{asin}}) is running low on inventory.\n'
        "\n"
        "Current stock: {{current_stock}} units\n"
        "Daily sales velocity: {{daily_velocity}} units\n"
        "Estimated stockout: {{days_remaining}} days\n"
        "\n"
        "Recommended action: please order {{recommended_quantity}} units "
        "to avoid a stockout.\n"
        "{{supplier_contact}}\n"
        "\n"
        "Time is critical, act now to prevent lost sales."
    ),
    required_variables=frozenset({
        "product_title", "asin", "current_stock", "daily_velocity",
        "days_remaining", "recommended_quantity",
    }),
    urgency=Urgency.CRITICAL,
    personalization=PersonalizationRules(
        tone=Tone.URGENT, include_context=True, include_recommendations=False,
    ),
)

BUYBOX_LOST = Template(
    id="buybox_lost",
    name="Buy Box Lost",
    channel_hint=ChannelType.EMAIL,
    subject="Buy Box Alert: {{product_title}} - Action needed",
    body=(
        'You have lost the Buy Box for "{{product_title}}" (ASIN: {{asin}}).\n'
        "\n"
        "Competitor price: ${{competitor_price}}\n"
        "Your price: ${{current_price}}\n"
        "Price gap: ${{price_gap}}\n"
        "\n"
        "Recommended price: ${{recommended_price}} "
        "(estimated daily impact +${{estimated_impact}})."
    ),
    required_variables=frozenset({
        "product_title", "asin", "competitor_price", "current_price", "price_gap",
    }),
    urgency=Urgency.HIGH,
    personalization=PersonalizationRules(
        tone=Tone.PROFESSIONAL, include_context=True, include_recommendations=True,
    ),
)

DEFAULT_TEMPLATES: List[Template] = [STOCKOUT_WARNING, BUYBOX_LOST]


class InMemoryTemplateStore:
    """Template lookup keyed by id (production: database)."""

    def __init__(self, templates: Optional[Iterable[Template]] = None):
        self._templates: Dict[str, Template] = {t.id: t for t in templates or ()}
        self._lock = asyncio.Lock()

    async def get_template(self, template_id: str) -> Template:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError("Template", template_id=template_id)
        return template

    async def list_templates(self) -> List[Template]:
        return sorted(self._templates.values(), key=lambda t: t.id)

    async def upsert(self, template: Template) -> Template:
        async with self._lock:
            created = template.id not in self._templates
            self._templates[template.id] = template
        logger.info(
            "Template %s %s", template.id, "created" if created else "updated",
            extra={"template_id": template.id},
        )
        return template

    def seed_defaults(self) -> int:
        """Load DEFAULT_TEMPLATES if the store is empty. Returns the count added."""
        if self._templates:
            return 0
        for template in DEFAULT_TEMPLATES:
            self._templates[template.id] = template
        return len(DEFAULT_TEMPLATES)
