"""
Centralised error handling — exception hierarchy + FastAPI handlers.

The delivery taxonomy:

    Exception            Raised when                                Effect
    ─────────────────    ───────────────────────────────────────    ─────────────────────
    ValidationError      unknown template / channel / recipient,    send_alert fails,
                         missing required template variable         nothing recorded
    RateLimitExceeded    recipient+channel over cap or cooling      channel skipped
    ChannelUnavailable   channel disabled, no address, no transport channel skipped
    ProviderError        provider rejected, errored or timed out    attempt recorded FAILED
    ExpiredAlert         expires_at passed before a channel ran     remaining channels dropped

Only ValidationError escapes ``send_alert``; the others are raised and
handled inside the dispatch loop.

Usage:
    from notifier.app.core.errors import ValidationError, register_error_handlers

    raise ValidationError("Missing template variable", field="asin")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from notifier.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotifierError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(NotifierError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(NotifierError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class RateLimitExceeded(NotifierError):
    """Recipient/channel over its cap or inside cooldown (429)."""

    def __init__(self, recipient_id: str, channel: str, reason: str = "cap"):
        super().__init__(
            message=f"Rate limit exceeded for {recipient_id} on {channel} ({reason})",
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"recipient_id": recipient_id, "channel": channel, "reason": reason},
        )
        self.reason = reason


class ChannelUnavailable(NotifierError):
    """Channel cannot be used for this recipient (409)."""

    def __init__(self, channel: str, reason: str):
        super().__init__(
            message=f"Channel '{channel}' unavailable: {reason}",
            status_code=409,
            error_code="CHANNEL_UNAVAILABLE",
            details={"channel": channel, "reason": reason},
        )
        self.reason = reason


class ProviderError(NotifierError):
    """Provider executed the send but rejected or failed it (502)."""

    def __init__(self, channel: str, message: str = "", *, retryable: bool = False):
        super().__init__(
            message=f"Provider for '{channel}' failed: {message}",
            status_code=502,
            error_code="PROVIDER_ERROR",
            details={"channel": channel, "retryable": retryable},
        )
        self.provider_message = message
        self.retryable = retryable


class ExpiredAlert(NotifierError):
    """Alert expired before a channel could be attempted (410)."""

    def __init__(self, alert_id: str):
        super().__init__(
            message=f"Alert {alert_id} expired",
            status_code=410,
            error_code="ALERT_EXPIRED",
            details={"alert_id": alert_id},
        )


class StateTransitionError(NotifierError):
    """Illegal status transition on an alert or delivery attempt (409)."""

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(
            message=f"{entity} cannot move from '{current}' to '{requested}'",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"entity": entity, "current": current, "requested": requested},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(NotifierError)
    async def handle_notifier_error(request: Request, exc: NotifierError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
