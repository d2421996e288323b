"""
SMS Forwarder - Main Application Entry Point

Receives SMS messages from SIM gateways and forwards them to Telegram,
webhooks, email and SMS according to configurable rules, using FastAPI,
SQLite and APScheduler.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.ingestion import router as ingestion_router
from app.api.management import router as management_router
from app.api.queries import router as queries_router
from app.config.settings import get_settings
from app.domain.errors import ServiceError
from app.infrastructure.database import init_database
from app.infrastructure.scheduler import start_scheduler, stop_scheduler
from app.usecases.delivery_pipeline import recover_outstanding_work

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting SMS Forwarder...")

    # Initialize database
    logger.info("Initializing database...")
    await init_database()
    logger.info("Database initialized")

    # Start scheduler
    logger.info("Starting scheduler...")
    await start_scheduler()
    logger.info("Scheduler started")

    # Resume retries and messages interrupted by the last shutdown
    await recover_outstanding_work()

    logger.info("Application startup complete!")
    logger.info(f"Dispatch timeout: {settings.dispatch_timeout_seconds}s, max retries: {settings.max_retries}")
    logger.info(f"API token required: {settings.require_api_token}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await stop_scheduler()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="SMS Forwarder",
    description="Rule-based forwarding of inbound SMS to Telegram, webhooks, email and SMS",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Translate service errors into JSON error responses."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Register routers
app.include_router(ingestion_router, tags=["Ingestion"])
app.include_router(management_router, tags=["Management"])
app.include_router(queries_router, tags=["Queries"])


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "SMS Forwarder",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "ingest": "/api/messages/ingest",
            "rules": "/api/rules",
            "channels": "/api/channels",
            "deliveries": "/api/deliveries",
            "health": "/health"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
