"""
Timeout configuration for external service calls.

Separate from DB timeouts (configured in app.database).

Usage:
    from app.services.external_timeouts import CALENDAR_TIMEOUT

    async with httpx.AsyncClient(timeout=CALENDAR_TIMEOUT) as client:
        response = await client.get(url)
"""
import httpx

# Calendar provider (Nylas) - generally responsive, listing can page
CALENDAR_TIMEOUT = httpx.Timeout(20.0, connect=5.0)

# OAuth token endpoint
TOKEN_ENDPOINT_TIMEOUT = httpx.Timeout(15.0, connect=5.0)

# Default for unknown services
DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


def get_timeout_for_service(service_name: str) -> httpx.Timeout:
    """Get appropriate timeout for a service by name."""
    timeouts = {
        "calendar": CALENDAR_TIMEOUT,
        "nylas": CALENDAR_TIMEOUT,
        "token": TOKEN_ENDPOINT_TIMEOUT,
        "oauth": TOKEN_ENDPOINT_TIMEOUT,
    }
    return timeouts.get(service_name.lower(), DEFAULT_TIMEOUT)
