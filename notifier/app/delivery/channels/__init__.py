"""
channels — Per-channel delivery backends.

Each channel module exposes:
    async send(address, subject, body, *, provider=..., ...) → SendResult

Channels are stateless functions. ``build_transports`` binds them to the
configured providers so the dispatcher only ever calls
``transport(address, subject, body)``.
"""

from __future__ import annotations

from functools import partial
from typing import Awaitable, Callable, Dict, Optional

import httpx

from notifier.app.delivery.models import ChannelType, SendResult

Transport = Callable[[str, str, str], Awaitable[SendResult]]


def build_transports(
    settings,
    topic,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[ChannelType, Transport]:
    """Bind each channel's send() to its provider configuration."""
    from notifier.app.delivery.channels import (
        dashboard,
        email_alert,
        slack_webhook,
        sms_gateway,
        whatsapp,
    )

    timeout = settings.SEND_TIMEOUT_SECONDS
    return {
        ChannelType.EMAIL: partial(
            email_alert.send,
            provider=settings.EMAIL_PROVIDER,
            api_key=settings.RESEND_API_KEY,
            from_address=settings.EMAIL_FROM_ADDRESS,
            from_name=settings.EMAIL_FROM_NAME,
            client=client,
            timeout_seconds=timeout,
        ),
        ChannelType.SMS: partial(
            sms_gateway.send,
            provider=settings.SMS_PROVIDER,
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_SMS_NUMBER,
            client=client,
            timeout_seconds=timeout,
        ),
        ChannelType.WHATSAPP: partial(
            whatsapp.send,
            provider=settings.WHATSAPP_PROVIDER,
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_WHATSAPP_NUMBER,
            client=client,
            timeout_seconds=timeout,
        ),
        ChannelType.SLACK: partial(
            slack_webhook.send,
            provider=settings.SLACK_PROVIDER,
            client=client,
            timeout_seconds=timeout,
        ),
        ChannelType.DASHBOARD: partial(dashboard.send, topic=topic),
    }
