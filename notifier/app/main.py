"""
FastAPI application entry point.

Run with:
    uvicorn notifier.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn notifier.app.main:app --reload
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from notifier.app.core.config import Settings, settings as default_settings
from notifier.app.core.logging_config import setup_logging, get_logger
from notifier.app.core.errors import register_error_handlers
from notifier.app.core.middleware import RequestLoggingMiddleware
from notifier.app.core.health import HealthStatus, run_health_check

# ── Delivery ──
from notifier.app.delivery.service import DeliveryStack, build_delivery_stack

# ── API routers ──
from notifier.app.api.v1.alerts import router as alert_router
from notifier.app.api.v1.recipients import router as recipient_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


async def _scheduler_loop(stack: DeliveryStack, interval: float) -> None:
    """Dispatch due scheduled alerts every ``interval`` seconds."""
    while True:
        try:
            await stack.dispatcher.dispatch_scheduled()
        except Exception:
            logger.exception("Scheduled dispatch failed")
        await asyncio.sleep(interval)


def create_app(
    settings: Optional[Settings] = None,
    stack: Optional[DeliveryStack] = None,
) -> FastAPI:
    settings = settings or default_settings
    stack = stack or build_delivery_stack(settings)

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        await stack.startup()

        scheduler = None
        if settings.SCHEDULER_ENABLED:
            scheduler = asyncio.create_task(
                _scheduler_loop(stack, settings.SCHEDULER_INTERVAL_SECONDS),
            )
        yield

        if scheduler is not None:
            scheduler.cancel()
            with suppress(asyncio.CancelledError):
                await scheduler
        await stack.close()
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-channel alert delivery. Urgency-based channel selection, "
            "per-recipient rate limiting, template personalization, "
            "broadcast and fallback-chain dispatch over email, WhatsApp, SMS, "
            "Slack and the in-app dashboard, with delivery and engagement "
            "analytics."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.delivery = stack
    app.state.settings = settings

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(recipient_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "channels": [c.type.value for c in stack.registry.list_enabled()],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all delivery subsystems."""
        report = await run_health_check(stack)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(stack)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
