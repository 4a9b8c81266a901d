"""
Clinic Calendar Sync - Main Application
Serves the calendar reconciliation endpoint
"""

import os
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables FIRST before importing modules that need them
load_dotenv()

from app.api import calendar_sync  # noqa: E402
from app.middleware.auth import AuthenticationFailed  # noqa: E402

# Configure centralized logging (container-aware: no timestamps in Docker/Fly.io)
from app.utils.logging_config import configure_logging  # noqa: E402
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Clinic Calendar Sync...")

    from app.config import missing_nylas_config
    missing = missing_nylas_config()
    if missing:
        # Don't fail startup; check-config reports the same list
        logger.warning(f"Nylas configuration incomplete: {', '.join(missing)}")

    yield

    logger.info("Shutting down Clinic Calendar Sync...")


app = FastAPI(
    title="Clinic Calendar Sync",
    description="Bidirectional reconciliation between clinic appointments and external calendars",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-internal-call-secret"],
)

app.add_exception_handler(AuthenticationFailed, calendar_sync.authentication_failed_handler)
app.include_router(calendar_sync.router)


@app.get("/health")
async def health_check():
    """Instant health check endpoint"""
    return {"status": "healthy", "service": "clinic-calendar-sync"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=True
    )
