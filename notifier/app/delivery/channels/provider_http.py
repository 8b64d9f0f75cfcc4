"""
provider_http.py — Shared HTTP plumbing for provider-backed channels.

Failure classification:

    Outcome                         retryable
    ─────────────────────────────   ─────────
    timeout / connection error      yes
    HTTP 429                        yes
    HTTP 5xx                        yes
    other HTTP 4xx                  no
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

import httpx

from notifier.app.delivery.models import SendResult

logger = logging.getLogger(__name__)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def simulated_result(channel: str) -> SendResult:
    return SendResult(success=True, provider_message_id=f"sim-{channel}-{uuid.uuid4().hex[:12]}")


def unknown_provider(channel: str, provider: str) -> SendResult:
    return SendResult(success=False, error=f"Unknown {channel} provider: {provider}")


async def post(
    url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 15.0,
    **kwargs: Any,
) -> httpx.Response:
    """POST with the caller's client, or a short-lived one."""
    if client is not None:
        return await client.post(url, timeout=timeout_seconds, **kwargs)
    async with httpx.AsyncClient(timeout=timeout_seconds) as own_client:
        return await own_client.post(url, **kwargs)


def result_from_response(
    channel: str, response: httpx.Response, *, id_field: Optional[str] = "id",
) -> SendResult:
    """Map a provider HTTP response onto a SendResult."""
    if response.is_success:
        message_id = None
        if id_field:
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                message_id = data.get(id_field)
        return SendResult(
            success=True,
            provider_message_id=message_id or f"{channel}-{uuid.uuid4().hex[:12]}",
        )

    detail = response.text[:200]
    logger.warning(
        "[%s] Provider returned HTTP %d: %s", channel.upper(), response.status_code, detail,
        extra={"channel": channel, "status_code": response.status_code},
    )
    return SendResult(
        success=False,
        error=f"HTTP {response.status_code}: {detail}",
        retryable=is_retryable_status(response.status_code),
    )


def result_from_transport_error(channel: str, exc: httpx.HTTPError) -> SendResult:
    kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "transport error"
    logger.warning(
        "[%s] Provider %s: %s", channel.upper(), kind, exc,
        extra={"channel": channel},
    )
    return SendResult(success=False, error=f"{kind}: {exc}", retryable=True)
