"""Subscription Sync — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from subsync.api.v1.billing import router as billing_router
from subsync.api.v1.webhooks import router as webhooks_router
from subsync.billing.errors import BillingError, billing_error_handler
from subsync.billing.notifications import drain_background_tasks
from subsync.billing.rate_limit import RateLimiter
from subsync.config import settings

# Configure root logger so all subsync.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    yield
    # Shutdown: drain detached notifications, then dispose engine connections
    from subsync.database import engine

    await drain_background_tasks()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Keeps local subscription state in sync with Stripe.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Process-scoped rate-limit store; tests replace it with an isolated instance
app.state.rate_limiter = RateLimiter()

app.add_exception_handler(BillingError, billing_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(billing_router)
app.include_router(webhooks_router)


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
