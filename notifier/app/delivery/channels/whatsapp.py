"""
whatsapp.py — WhatsApp delivery channel (Twilio WhatsApp sender).

Numbers are sent with the ``whatsapp:`` scheme on both ends, e.g.
``whatsapp:+14155238886``. The body is already short-formatted
(markup stripped, 1500 characters at most) by the personalization engine.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from notifier.app.delivery.channels import provider_http
from notifier.app.delivery.channels.sms_gateway import post_twilio_message
from notifier.app.delivery.models import SendResult

logger = logging.getLogger(__name__)


def whatsapp_address(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


async def send(
    address: str,
    subject: str,
    body: str,
    *,
    provider: str = "simulation",
    account_sid: Optional[str] = None,
    auth_token: Optional[str] = None,
    from_number: str = "",
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 15.0,
) -> SendResult:
    if provider == "simulation":
        logger.info(
            "[WHATSAPP] → %s: %d chars", whatsapp_address(address), len(body),
            extra={"channel": "whatsapp"},
        )
        return provider_http.simulated_result("whatsapp")

    if provider != "twilio":
        return provider_http.unknown_provider("whatsapp", provider)

    # Subject goes in bold on the first line
    text = f"*{subject}*\n\n{body}" if subject else body
    return await post_twilio_message(
        "whatsapp",
        to=whatsapp_address(address),
        from_=whatsapp_address(from_number),
        body=text,
        account_sid=account_sid,
        auth_token=auth_token,
        client=client,
        timeout_seconds=timeout_seconds,
    )
