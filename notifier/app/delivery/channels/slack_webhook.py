"""
slack_webhook.py — Slack delivery via incoming webhooks.

The recipient's contact address for this channel is the webhook URL.
Slack answers a successful post with the plain text ``ok`` and no message
id, so a local id is generated for the ledger.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from notifier.app.delivery.channels import provider_http
from notifier.app.delivery.models import SendResult

logger = logging.getLogger(__name__)


def build_payload(subject: str, body: str) -> dict:
    return {
        "text": f"{subject}\n{body}" if subject else body,
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": subject[:150] or "Alert"}},
            {"type": "section", "text": {"type": "mrkdwn", "text": body[:3000]}},
        ],
    }


async def send(
    address: str,
    subject: str,
    body: str,
    *,
    provider: str = "simulation",
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 15.0,
) -> SendResult:
    if provider == "simulation":
        logger.info("[SLACK] → webhook: '%s'", subject, extra={"channel": "slack"})
        return provider_http.simulated_result("slack")

    if provider != "webhook":
        return provider_http.unknown_provider("slack", provider)

    if not address.startswith("https://"):
        return SendResult(success=False, error="Slack address must be an https webhook URL")

    try:
        response = await provider_http.post(
            address,
            client=client,
            timeout_seconds=timeout_seconds,
            json=build_payload(subject, body),
        )
    except httpx.HTTPError as exc:
        return provider_http.result_from_transport_error("slack", exc)

    return provider_http.result_from_response("slack", response, id_field=None)
