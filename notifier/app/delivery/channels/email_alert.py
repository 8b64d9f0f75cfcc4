"""
email_alert.py — Email delivery channel.

Delivery mechanism:
    • Resend HTTP API (POST https://api.resend.com/emails)
    • HTML body wrapping the personalised text, plus a plain-text part
    • Delivery / open / click receipts arrive via the provider webhook

Email is the long-form channel: it receives the full personalised body,
including the business-context line and recommendations.
"""

from __future__ import annotations

import html
import logging
from typing import Optional

import httpx

from notifier.app.delivery.channels import provider_http
from notifier.app.delivery.models import SendResult

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


def build_html_body(subject: str, body: str) -> str:
    """Render the personalised text as a minimal HTML email."""
    paragraphs = "".join(
        f"<p style=\"margin:0 0 12px;\">{html.escape(block).replace(chr(10), '<br>')}</p>"
        for block in body.split("\n\n") if block.strip()
    )
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">'
        '<div style="background:#1f2937;color:white;padding:16px;border-radius:8px 8px 0 0;">'
        f'<h2 style="margin:0;">{html.escape(subject)}</h2>'
        "</div>"
        '<div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">'
        f"{paragraphs}"
        "</div>"
        "</div>"
    )


async def send(
    address: str,
    subject: str,
    body: str,
    *,
    provider: str = "simulation",
    api_key: Optional[str] = None,
    from_address: str = "alerts@notifier.local",
    from_name: str = "Notifier Alerts",
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 15.0,
) -> SendResult:
    """
    Send one email.

    Parameters
    ----------
    address : str
        Recipient email address.
    subject, body : str
        Personalised content.
    provider : str
        "simulation" or "resend".
    api_key : str | None
        Resend API key (not needed for simulation).
    client : httpx.AsyncClient | None
        Shared client; a short-lived one is used when omitted.

    Returns
    -------
    SendResult
    """
    if provider == "simulation":
        logger.info(
            "[EMAIL] → %s: Subject='%s' (%d chars)", address, subject, len(body),
            extra={"channel": "email"},
        )
        return provider_http.simulated_result("email")

    if provider != "resend":
        return provider_http.unknown_provider("email", provider)

    if not api_key:
        return SendResult(success=False, error="RESEND_API_KEY is not configured")

    payload = {
        "from": f"{from_name} <{from_address}>",
        "to": [address],
        "subject": subject,
        "html": build_html_body(subject, body),
        "text": body,
    }
    try:
        response = await provider_http.post(
            RESEND_URL,
            client=client,
            timeout_seconds=timeout_seconds,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
        )
    except httpx.HTTPError as exc:
        return provider_http.result_from_transport_error("email", exc)

    return provider_http.result_from_response("email", response, id_field="id")
