"""Campaign Dialer API - Main FastAPI application.

Runs outbound calling campaigns for workspace voice agents: a bounded
batch of calls is started, provider webhooks start each replacement,
and cron endpoints recover stalled chains.
"""

from __future__ import annotations

import sys

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from dialer import __version__
from dialer.api import campaigns, cron, webhooks
from dialer.config import settings
from dialer.errors import DialerError, to_http_exception


def configure_logging() -> None:
    """Send loguru output to stderr at the configured level."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())


async def dialer_error_handler(request: Request, exc: DialerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message or type(exc).__name__}")
    return await http_exception_handler(request, to_http_exception(exc))


# ──────────────────────────────────────────────────────────────────
# Application factory
# ──────────────────────────────────────────────────────────────────

def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Webhook-driven outbound call campaigns for voice agents",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        debug=settings.debug,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DialerError, dialer_error_handler)

    # Include routers
    app.include_router(campaigns.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")

    # Health check
    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "dialer", "storage": settings.storage_backend}

    @app.get("/")
    async def root():
        return {
            "name": f"{settings.app_name} API",
            "version": __version__,
            "docs": "/docs",
        }

    logger.info(f"{settings.app_name} API initialized (storage={settings.storage_backend})")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("dialer.main:app", host="0.0.0.0", port=8000, reload=True)
