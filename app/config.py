"""
Application Configuration
Centralized configuration for the calendar provider, Redis and sync behaviour
"""
import os
from typing import List

from redis import Redis

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

# Nylas (external calendar provider)
NYLAS_API_URI = os.getenv("NYLAS_API_URI", "https://api.us.nylas.com").rstrip("/")
NYLAS_CLIENT_ID = os.getenv("NYLAS_CLIENT_ID")
NYLAS_CLIENT_SECRET = os.getenv("NYLAS_CLIENT_SECRET")
NYLAS_API_KEY = os.getenv("NYLAS_API_KEY")

# Tokens expiring within this many seconds are refreshed before use
TOKEN_REFRESH_BUFFER_SECONDS = int(os.getenv("TOKEN_REFRESH_BUFFER_SECONDS", "300"))

# Per-connection circuit breaker
CONNECTION_FAILURE_THRESHOLD = int(os.getenv("CONNECTION_FAILURE_THRESHOLD", "3"))
CONNECTION_OPEN_STATE_SECONDS = int(os.getenv("CONNECTION_OPEN_STATE_SECONDS", "300"))

# Per-clinician advisory lock around a full sync pass
SYNC_LOCK_ENABLED = os.getenv("SYNC_LOCK_ENABLED", "false").lower() == "true"
SYNC_LOCK_TTL_MS = int(os.getenv("SYNC_LOCK_TTL_MS", "120000"))

# Request gate
INTERNAL_FUNCTIONS_SECRET = os.getenv("INTERNAL_FUNCTIONS_SECRET")
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "development-secret-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Values written onto appointments created from remote events
EXTERNAL_EVENT_APPOINTMENT_TYPE = "External Event"
DEFAULT_CALENDAR_ID = "primary"


def missing_nylas_config() -> List[str]:
    """Return the names of Nylas environment variables that are not set."""
    missing = []
    if not os.getenv("NYLAS_CLIENT_ID"):
        missing.append("NYLAS_CLIENT_ID")
    if not os.getenv("NYLAS_CLIENT_SECRET"):
        missing.append("NYLAS_CLIENT_SECRET")
    if not os.getenv("NYLAS_API_KEY"):
        missing.append("NYLAS_API_KEY")
    return missing


def get_redis_client() -> Redis:
    """
    Get configured Redis client with optimized settings

    Returns:
        Redis: Configured Redis client instance
    """
    return Redis.from_url(
        REDIS_URL,
        decode_responses=True,  # Automatically decode responses to strings
        socket_connect_timeout=5,  # 5 second connection timeout
        socket_timeout=5,  # 5 second operation timeout
        retry_on_timeout=True,  # Retry operations that timeout
        health_check_interval=30  # Health check every 30 seconds
    )
