"""
Shared pytest fixtures for the calendar sync tests
"""

import pytest

from app.calendar.credential_refresh import CredentialRefresher
from app.services.calendar_sync_service import CalendarSyncService
from app.utils.circuit_breaker import ConnectionCircuitBreaker

from tests.fixtures import FakeCalendarStore, FakeNylasServer


@pytest.fixture
def store():
    """In-memory store with one active connection"""
    fake = FakeCalendarStore()
    fake.add_connection()
    return fake


@pytest.fixture
def nylas_server():
    return FakeNylasServer()


@pytest.fixture
async def nylas(nylas_server):
    client = nylas_server.client()
    yield client
    await client.http.aclose()


@pytest.fixture
def sync_service(store, nylas):
    """Sync service wired to the in-memory store and fake Nylas API"""
    refresher = CredentialRefresher(store, nylas, client_id='client-id', client_secret='client-secret')
    return CalendarSyncService(store, nylas, refresher=refresher, breaker=ConnectionCircuitBreaker(store))
