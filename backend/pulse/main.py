"""Pulse Streaming — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pulse.api.v1.admin import router as admin_router
from pulse.api.v1.auth import router as auth_router
from pulse.api.v1.billing import router as billing_router
from pulse.api.v1.cron import router as cron_router
from pulse.api.v1.video import router as video_router
from pulse.api.v1.webhooks import router as webhooks_router
from pulse.billing.errors import BillingError, RateLimited
from pulse.billing.expiry_scanner import ExpiryScanner
from pulse.billing.timeutils import utcnow
from pulse.config import settings

# Configure root logger so all pulse.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    from pulse.database import async_session_factory, engine

    # Startup
    scanner = None
    if settings.expiry_scanner_enabled:
        scanner = ExpiryScanner(async_session_factory)
        scanner.start()
    yield
    # Shutdown — stop the scanner, then dispose engine connections
    if scanner is not None:
        await scanner.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription billing, entitlements and secure video delivery for Pulse Streaming.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render billing errors as ``{"error": {...}}`` with their mapped status."""
    logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RateLimited):
        retry_after = max(0, int((exc.reset_at - utcnow()).total_seconds()) + 1)
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Routers
app.include_router(auth_router)
app.include_router(billing_router)
app.include_router(webhooks_router)
app.include_router(video_router)
app.include_router(admin_router)
app.include_router(cron_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
