"""
sms_gateway.py — SMS delivery channel via Twilio.

═══════════════════════════════════════════════════════════════════════════
GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    App  →  HTTP POST  →  Twilio Messages API  →  Carrier  →  Handset
                  │
                  └── Status callback (delivered) → provider webhook

    Twilio: POST https://api.twilio.com/2010-04-01/Accounts/{SID}/Messages.json
            form fields To, From, Body; HTTP basic auth (SID, token)
            response JSON carries the message "sid"

The same Messages endpoint serves WhatsApp (see whatsapp.py), so the
request helper lives here. Default provider is simulation.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from notifier.app.delivery.channels import provider_http
from notifier.app.delivery.models import SendResult

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

# Segment size for GSM 7-bit messages
SMS_SEGMENT_GSM7 = 160


def segment_count(text: str) -> int:
    return max(1, 1 + (len(text) - 1) // SMS_SEGMENT_GSM7)


async def post_twilio_message(
    channel: str,
    *,
    to: str,
    from_: str,
    body: str,
    account_sid: Optional[str],
    auth_token: Optional[str],
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 15.0,
) -> SendResult:
    if not account_sid or not auth_token:
        return SendResult(success=False, error="Twilio credentials are not configured")

    try:
        response = await provider_http.post(
            TWILIO_MESSAGES_URL.format(sid=account_sid),
            client=client,
            timeout_seconds=timeout_seconds,
            data={"To": to, "From": from_, "Body": body},
            auth=(account_sid, auth_token),
        )
    except httpx.HTTPError as exc:
        return provider_http.result_from_transport_error(channel, exc)

    return provider_http.result_from_response(channel, response, id_field="sid")


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
    """
    Send one SMS. ``subject`` is not transmitted; SMS carries the body only.

    Parameters
    ----------
    address : str
        E.164 phone number.
    provider : str
        "simulation" or "twilio".
    """
    if provider == "simulation":
        logger.info(
            "[SMS] → %s: %d chars, %d segment(s) → '%s'",
            address, len(body), segment_count(body),
            body[:80] + ("..." if len(body) > 80 else ""),
            extra={"channel": "sms"},
        )
        return provider_http.simulated_result("sms")

    if provider != "twilio":
        return provider_http.unknown_provider("sms", provider)

    return await post_twilio_message(
        "sms",
        to=address,
        from_=from_number,
        body=body,
        account_sid=account_sid,
        auth_token=auth_token,
        client=client,
        timeout_seconds=timeout_seconds,
    )
