"""
Request middleware — correlation IDs, timing, access log.

Every request gets an ``X-Request-ID`` (taken from the caller when present)
which is placed in the logging context, so log lines emitted by the
dispatcher while serving the request carry it too.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from notifier.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

# Probe and docs traffic is not access-logged
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach a request id, time the call and log one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms)",
                request.method, path, elapsed,
                extra={"duration_ms": elapsed, "status_code": 500, "endpoint": path},
            )
            set_request_context()
            raise

        elapsed = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            # 429 from the API is expected back-pressure, not a server problem
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400 and response.status_code != 429:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(
                level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, elapsed, client_ip,
                extra={
                    "duration_ms": elapsed,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()
        return response
