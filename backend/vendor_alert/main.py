"""
Vendor Alert Service
Main FastAPI application
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vendor_alert.config import settings
from vendor_alert.database import SessionLocal, close_db, init_db
from vendor_alert.errors import register_error_handlers
from vendor_alert.realtime import ChannelManager, RealtimeService
from vendor_alert.routes import api, chat, oauth, realtime, webhooks
from vendor_alert.services.background import background_runner
from vendor_alert.services.notification_service import NotificationService
from vendor_alert.services.scheduler import NotifyScheduler

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Vendor Alert service...")
    await init_db()

    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler = NotifyScheduler(
            notification_service=NotificationService(SessionLocal, publisher=app.state.realtime.manager),
            session_factory=SessionLocal,
        )
        scheduler_task = asyncio.create_task(scheduler.run_forever(), name="notify-scheduler")

    logger.info("Vendor Alert service started")

    yield

    # Shutdown
    logger.info("Shutting down Vendor Alert service...")
    if scheduler_task is not None:
        scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler_task

    await background_runner.shutdown()
    await close_db()
    logger.info("Vendor Alert service stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Shopify app that alerts vendors about their ordered products",
    version=settings.app_version,
    lifespan=lifespan,
)

# One channel manager per process; the scheduler and chat routes publish through it
app.state.realtime = RealtimeService(ChannelManager(), SessionLocal)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "https://admin.shopify.com",
        settings.app_url,
    ],
    allow_origin_regex=r"https://[a-zA-Z0-9\-]+\.myshopify\.com",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Mount routes
app.include_router(oauth.router, tags=["OAuth"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(api.router, prefix="/api", tags=["API"])
app.include_router(chat.router, prefix="/chat", tags=["Chat"])
app.include_router(realtime.router, tags=["Realtime"])


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "vendor-alert",
        "version": settings.app_version,
        "status": "running",
    }


# Health check
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "vendor-alert",
        "version": settings.app_version,
        "connections": len(app.state.realtime.manager.registry),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vendor_alert.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
