"""
Credential Refresh for Calendar Connections
Guarantees a connection holds a usable access token before any Nylas API call
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from app import config
from app.calendar.models import CalendarConnection
from app.calendar.nylas_client import NylasCalendarClient
from app.exceptions import CredentialRefreshFailed

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialRefresher:
    """
    Acquire-or-fail access to a connection's credentials.

    A token that is still valid for longer than the buffer is returned as is.
    Otherwise the refresh token is exchanged and the new pair is persisted.
    """

    def __init__(
        self,
        store,
        nylas: NylasCalendarClient,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        buffer_seconds: int = None,
        now: Callable[[], datetime] = None
    ):
        self.store = store
        self.nylas = nylas
        self.client_id = client_id if client_id is not None else config.NYLAS_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else config.NYLAS_CLIENT_SECRET
        self.buffer = timedelta(
            seconds=buffer_seconds if buffer_seconds is not None else config.TOKEN_REFRESH_BUFFER_SECONDS
        )
        self.now = now or _utcnow

    def needs_refresh(self, connection: CalendarConnection) -> bool:
        if connection.token_expires_at is None:
            return True
        return connection.token_expires_at <= self.now() + self.buffer

    async def ensure_fresh(self, connection: CalendarConnection) -> CalendarConnection:
        """
        Return a connection whose access token is valid for at least the buffer.

        Args:
            connection: Connection as loaded from the store

        Returns:
            The same connection, or the updated one after a refresh

        Raises:
            CredentialRefreshFailed: If the refresh cannot be completed
        """
        if not self.needs_refresh(connection):
            return connection

        logger.info(f"[CredentialRefresh][Conn:{connection.id}] Token is expiring or expired. Refreshing...")

        if not self.client_id or not self.client_secret:
            raise CredentialRefreshFailed(connection.id, "Nylas client credentials are not configured.")
        if not connection.refresh_token:
            raise CredentialRefreshFailed(connection.id, "Connection has no refresh token.")

        try:
            response = await self.nylas.exchange_refresh_token(
                connection.refresh_token,
                self.client_id,
                self.client_secret
            )
        except httpx.HTTPError as e:
            logger.error(f"[CredentialRefresh][Conn:{connection.id}] Token endpoint unreachable: {e}")
            raise CredentialRefreshFailed(connection.id, f"Token endpoint unreachable: {e}")

        if response.status_code != 200:
            logger.error(
                f"[CredentialRefresh][Conn:{connection.id}] Token refresh rejected: "
                f"HTTP {response.status_code} {response.text}"
            )
            raise CredentialRefreshFailed(connection.id, "Failed to refresh Nylas token.")

        tokens = response.json()
        access_token = tokens.get('access_token')
        if not access_token:
            raise CredentialRefreshFailed(connection.id, "Token response did not include an access token.")

        # Nylas may rotate the refresh token; keep the old one otherwise
        refresh_token = tokens.get('refresh_token') or connection.refresh_token
        expires_at = self.now() + timedelta(seconds=int(tokens.get('expires_in', 3600)))

        try:
            updated = await self.store.update_connection_tokens(
                connection.id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at
            )
        except Exception as e:
            logger.error(f"[CredentialRefresh][Conn:{connection.id}] Failed to persist new token: {e}")
            raise CredentialRefreshFailed(connection.id, f"Failed to persist refreshed token: {e}")

        logger.info(f"[CredentialRefresh][Conn:{connection.id}] Token refreshed and updated successfully.")
        return updated
