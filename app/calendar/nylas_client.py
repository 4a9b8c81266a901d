"""
Nylas Calendar API Client
Thin async wrapper over the Nylas v3 grant/events endpoints used by the sync engine
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from app import config
from app.calendar.models import CalendarConnection, RemoteEvent, to_epoch
from app.exceptions import CalendarApiError, RemoteFetchError
from app.services.external_timeouts import get_timeout_for_service

logger = logging.getLogger(__name__)

# Nylas caps page size at 200 events
EVENTS_PAGE_LIMIT = 200


class NylasCalendarClient:
    """
    Calls the Nylas API on behalf of a single calendar connection.

    Usage:
        async with NylasCalendarClient() as nylas:
            events, ids = await nylas.list_events(connection, start, end)
    """

    def __init__(
        self,
        api_uri: str = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_uri = (api_uri or config.NYLAS_API_URI).rstrip('/')
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=get_timeout_for_service('nylas'))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.http.aclose()

    def _events_url(self, connection: CalendarConnection, event_id: str = None) -> str:
        url = f"{self.api_uri}/v3/grants/{connection.grant_id}/events"
        if event_id:
            url = f"{url}/{event_id}"
        return url

    @staticmethod
    def _headers(connection: CalendarConnection) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {connection.access_token}',
            'Content-Type': 'application/json',
        }

    @staticmethod
    def _calendar_params(connection: CalendarConnection) -> Dict[str, str]:
        return {'calendar_id': connection.primary_calendar_id or config.DEFAULT_CALENDAR_ID}

    async def list_events(
        self,
        connection: CalendarConnection,
        start: datetime,
        end: datetime
    ) -> Tuple[List[RemoteEvent], Set[str]]:
        """
        Fetch every remote event in the window for one connection.

        Args:
            connection: Connection with a valid access token
            start: Window start (inclusive)
            end: Window end (exclusive)

        Returns:
            (parsed events, ids of every live event including unparseable ones)

        Raises:
            RemoteFetchError: On any non-success response or transport failure
        """
        params: Dict[str, Any] = {
            'start': str(to_epoch(start)),
            'end': str(to_epoch(end)),
            'limit': EVENTS_PAGE_LIMIT,
        }
        if connection.primary_calendar_id:
            params['calendar_id'] = connection.primary_calendar_id

        events: List[RemoteEvent] = []
        # Unreadable events still exist remotely and must never read as deletions
        event_ids: Set[str] = set()
        page_token = None
        seen_tokens: Set[str] = set()

        while True:
            if page_token:
                params['page_token'] = page_token
            try:
                response = await self.http.get(
                    self._events_url(connection),
                    params=params,
                    headers=self._headers(connection)
                )
            except httpx.HTTPError as e:
                raise RemoteFetchError(connection.id, f"Failed to fetch Nylas events: {e}")

            if response.status_code >= 400:
                raise RemoteFetchError(
                    connection.id,
                    f"Failed to fetch Nylas events: {response.text}",
                    status_code=response.status_code
                )

            payload = response.json()
            for item in payload.get('data') or []:
                if item.get('status') == 'cancelled':
                    continue
                if item.get('id'):
                    event_ids.add(item['id'])
                try:
                    events.append(RemoteEvent.from_api(item))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable event for connection {connection.id}: {e}")

            page_token = payload.get('next_cursor')
            if not page_token:
                break
            if page_token in seen_tokens:
                logger.warning(
                    f"Nylas returned cursor {page_token} twice for connection {connection.id}; "
                    f"stopping pagination"
                )
                break
            seen_tokens.add(page_token)

        return events, event_ids

    async def create_event(self, connection: CalendarConnection, event_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a remote event and return the created object (with its assigned id)"""
        try:
            response = await self.http.post(
                self._events_url(connection),
                params=self._calendar_params(connection),
                headers=self._headers(connection),
                json=event_data
            )
        except httpx.HTTPError as e:
            raise CalendarApiError('create', None, str(e))

        if response.status_code >= 400:
            raise CalendarApiError('create', response.status_code, response.text)
        return response.json().get('data') or {}

    async def update_event(
        self,
        connection: CalendarConnection,
        event_id: str,
        event_data: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update a remote event and return the updated object"""
        try:
            response = await self.http.put(
                self._events_url(connection, event_id),
                params=self._calendar_params(connection),
                headers=self._headers(connection),
                json=event_data
            )
        except httpx.HTTPError as e:
            raise CalendarApiError('update', None, str(e))

        if response.status_code >= 400:
            raise CalendarApiError('update', response.status_code, response.text)
        return response.json().get('data') or {}

    async def delete_event(self, connection: CalendarConnection, event_id: str) -> bool:
        """
        Delete a remote event.

        Returns:
            True if the event was deleted, False if it was already gone (404)
        """
        try:
            response = await self.http.delete(
                self._events_url(connection, event_id),
                params=self._calendar_params(connection),
                headers={'Authorization': f'Bearer {connection.access_token}'}
            )
        except httpx.HTTPError as e:
            raise CalendarApiError('delete', None, str(e))

        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise CalendarApiError('delete', response.status_code, response.text)
        return True

    async def exchange_refresh_token(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: str
    ) -> httpx.Response:
        """POST a refresh_token grant to the Nylas token endpoint"""
        return await self.http.post(
            f"{self.api_uri}/v3/connect/token",
            json={
                'client_id': client_id,
                'client_secret': client_secret,
                'refresh_token': refresh_token,
                'grant_type': 'refresh_token',
            },
            headers={'Content-Type': 'application/json'},
            timeout=get_timeout_for_service('token')
        )
