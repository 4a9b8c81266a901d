"""
Test fixtures for the calendar sync engine

FakeCalendarStore keeps connections, appointments and mappings in memory and
exposes the same coroutine interface as CalendarSyncStore. FakeNylasServer is
an httpx.MockTransport handler that behaves like the Nylas v3 events API.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.calendar.models import (
    APPOINTMENT_STATUS_CANCELLED,
    APPOINTMENT_STATUS_SCHEDULED,
    Appointment,
    CalendarConnection,
    ExternalEventMapping,
    parse_timestamp,
)
from app.calendar.nylas_client import NylasCalendarClient

TEST_CLINICIAN_ID = 'clinician-001'
TEST_CONNECTION_ID = 'grant-001'
TEST_API_URI = 'https://nylas.test'

WINDOW_START = '2025-01-06T00:00:00Z'
WINDOW_END = '2025-01-12T00:00:00Z'


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def epoch(*args) -> int:
    return int(utc(*args).timestamp())


def create_test_connection(**kwargs) -> Dict[str, Any]:
    """Create a nylas_connections row"""
    return {
        'id': kwargs.get('id', TEST_CONNECTION_ID),
        'user_id': kwargs.get('user_id', TEST_CLINICIAN_ID),
        'access_token': kwargs.get('access_token', 'access-token'),
        'refresh_token': kwargs.get('refresh_token', 'refresh-token'),
        'token_expires_at': kwargs.get(
            'token_expires_at',
            (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        ),
        'provider': kwargs.get('provider', 'google'),
        'email': kwargs.get('email', 'dr.smith@clinic.test'),
        'calendar_ids': kwargs.get('calendar_ids', ['primary']),
        'is_active': kwargs.get('is_active', True),
        'consecutive_failures': kwargs.get('consecutive_failures', 0),
        'circuit_breaker_state': kwargs.get('circuit_breaker_state', 'closed'),
        'circuit_last_tripped_at': kwargs.get('circuit_last_tripped_at'),
        'last_error': kwargs.get('last_error'),
    }


def create_test_event(**kwargs) -> Dict[str, Any]:
    """Create a Nylas v3 event object"""
    return {
        'id': kwargs.get('id', f"evt-{uuid.uuid4().hex[:8]}"),
        'object': 'event',
        'calendar_id': kwargs.get('calendar_id', 'primary'),
        'title': kwargs.get('title', 'Team standup'),
        'description': kwargs.get('description'),
        'location': kwargs.get('location'),
        'participants': kwargs.get('participants', []),
        'status': kwargs.get('status', 'confirmed'),
        'when': kwargs.get('when', {
            'object': 'timespan',
            'start_time': kwargs.get('start_time', epoch(2025, 1, 7, 10)),
            'end_time': kwargs.get('end_time', epoch(2025, 1, 7, 11)),
        }),
    }


class FakeCalendarStore:
    """In-memory stand-in for CalendarSyncStore"""

    def __init__(self):
        self.connections: Dict[str, Dict[str, Any]] = {}
        self.appointments: Dict[str, Dict[str, Any]] = {}
        self.mappings: Dict[str, Dict[str, Any]] = {}
        # method name -> exception raised on every call
        self.failures: Dict[str, Exception] = {}
        # external event ids whose create RPC fails
        self.failing_event_ids = set()
        self.calls: List[str] = []

    def _call(self, name: str):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    # -- seeding ---------------------------------------------------------

    def add_connection(self, **kwargs) -> Dict[str, Any]:
        row = create_test_connection(**kwargs)
        self.connections[row['id']] = row
        return row

    def add_appointment(self, **kwargs) -> Dict[str, Any]:
        row = {
            'id': kwargs.get('id', f"appt-{uuid.uuid4().hex[:8]}"),
            'clinician_id': kwargs.get('clinician_id', TEST_CLINICIAN_ID),
            'type': kwargs.get('type', 'Consultation'),
            'status': kwargs.get('status', APPOINTMENT_STATUS_SCHEDULED),
            'start_at': parse_timestamp(kwargs.get('start_at', utc(2025, 1, 8, 9))),
            'end_at': parse_timestamp(kwargs.get('end_at', utc(2025, 1, 8, 10))),
            'notes': kwargs.get('notes'),
            'client_email': kwargs.get('client_email'),
        }
        self.appointments[row['id']] = row
        return row

    def add_mapping(self, **kwargs) -> Dict[str, Any]:
        row = {
            'id': kwargs.get('id', f"map-{uuid.uuid4().hex[:8]}"),
            'appointment_id': kwargs['appointment_id'],
            'external_event_id': kwargs['external_event_id'],
            'connection_id': kwargs.get('connection_id', TEST_CONNECTION_ID),
            'sync_direction': kwargs.get('sync_direction', 'outbound'),
            'last_sync_hash': kwargs.get('last_sync_hash'),
        }
        self.mappings[row['id']] = row
        return row

    # -- inspection ------------------------------------------------------

    def mappings_for(self, appointment_id: str) -> List[Dict[str, Any]]:
        return [m for m in self.mappings.values() if m['appointment_id'] == appointment_id]

    def mapping_by_event(self, external_event_id: str) -> Optional[Dict[str, Any]]:
        for mapping in self.mappings.values():
            if mapping['external_event_id'] == external_event_id:
                return mapping
        return None

    # -- row shaping -----------------------------------------------------

    def _appointment_row(self, appointment: Dict[str, Any], connection_id: str = None) -> Dict[str, Any]:
        mappings = [
            dict(m) for m in self.mappings_for(appointment['id'])
            if connection_id is None or m['connection_id'] == connection_id
        ]
        row = {k: v for k, v in appointment.items() if k != 'client_email'}
        row['clients'] = {'client_email': appointment['client_email']} if appointment['client_email'] else None
        row['external_calendar_mappings'] = mappings
        return row

    # -- CalendarSyncStore interface -------------------------------------

    async def get_active_connections(self, clinician_id: str) -> List[CalendarConnection]:
        self._call('get_active_connections')
        return [
            CalendarConnection.from_row(dict(row))
            for row in self.connections.values()
            if row['user_id'] == clinician_id and row['is_active']
        ]

    async def update_connection_tokens(self, connection_id, access_token, refresh_token, expires_at):
        self._call('update_connection_tokens')
        row = self.connections[connection_id]
        row.update({
            'access_token': access_token,
            'refresh_token': refresh_token,
            'token_expires_at': expires_at.isoformat(),
        })
        return CalendarConnection.from_row(dict(row))

    async def update_connection_health(self, connection_id, updates):
        self._call('update_connection_health')
        self.connections[connection_id].update({
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in updates.items()
        })

    async def get_connection_mappings(self, connection_id: str) -> List[ExternalEventMapping]:
        self._call('get_connection_mappings')
        result = []
        for mapping in self.mappings.values():
            if mapping['connection_id'] != connection_id:
                continue
            row = dict(mapping)
            appointment = self.appointments.get(mapping['appointment_id'])
            row['appointments'] = dict(appointment) if appointment else None
            result.append(ExternalEventMapping.from_row(row))
        return result

    async def get_window_appointments(self, clinician_id, start, end) -> List[Appointment]:
        self._call('get_window_appointments')
        return [
            Appointment.from_row(self._appointment_row(a))
            for a in self.appointments.values()
            if a['clinician_id'] == clinician_id
            and start <= a['start_at'] < end
            and a['status'] != APPOINTMENT_STATUS_CANCELLED
        ]

    async def get_cancelled_mapped_appointments(self, clinician_id, connection_id) -> List[Appointment]:
        self._call('get_cancelled_mapped_appointments')
        return [
            Appointment.from_row(self._appointment_row(a, connection_id))
            for a in self.appointments.values()
            if a['clinician_id'] == clinician_id
            and a['status'] == APPOINTMENT_STATUS_CANCELLED
            and any(m['connection_id'] == connection_id for m in self.mappings_for(a['id']))
        ]

    async def get_appointment(self, appointment_id) -> Optional[Appointment]:
        self._call('get_appointment')
        appointment = self.appointments.get(appointment_id)
        if appointment is None:
            return None
        return Appointment.from_row(self._appointment_row(appointment))

    async def create_appointment_and_mapping(self, clinician_id, appointment_type, status, start_at, end_at,
                                             notes, external_event_id, connection_id, sync_direction,
                                             last_sync_hash):
        self._call('create_appointment_and_mapping')
        if external_event_id in self.failing_event_ids:
            raise RuntimeError(f"insert failed for {external_event_id}")
        appointment = self.add_appointment(
            clinician_id=clinician_id, type=appointment_type, status=status,
            start_at=start_at, end_at=end_at, notes=notes
        )
        self.add_mapping(
            appointment_id=appointment['id'], external_event_id=external_event_id,
            connection_id=connection_id, sync_direction=sync_direction, last_sync_hash=last_sync_hash
        )
        return appointment['id']

    async def update_appointment_and_mapping(self, appointment_id, start_at, end_at, notes, mapping_id,
                                             last_sync_hash):
        self._call('update_appointment_and_mapping')
        self.appointments[appointment_id].update({'start_at': start_at, 'end_at': end_at, 'notes': notes})
        self.mappings[mapping_id]['last_sync_hash'] = last_sync_hash

    async def cancel_appointment_and_delete_mapping(self, appointment_id, mapping_id, notes):
        self._call('cancel_appointment_and_delete_mapping')
        self.appointments[appointment_id].update({'status': APPOINTMENT_STATUS_CANCELLED, 'notes': notes})
        del self.mappings[mapping_id]

    async def insert_mapping(self, appointment_id, external_event_id, connection_id, sync_direction,
                             last_sync_hash):
        self._call('insert_mapping')
        row = self.add_mapping(
            appointment_id=appointment_id, external_event_id=external_event_id,
            connection_id=connection_id, sync_direction=sync_direction, last_sync_hash=last_sync_hash
        )
        return ExternalEventMapping.from_row(dict(row))

    async def update_mapping_hash(self, mapping_id, last_sync_hash):
        self._call('update_mapping_hash')
        self.mappings[mapping_id]['last_sync_hash'] = last_sync_hash

    async def delete_mapping(self, mapping_id):
        self._call('delete_mapping')
        self.mappings.pop(mapping_id, None)


class FakeNylasServer:
    """httpx.MockTransport handler emulating the Nylas v3 events and token endpoints"""

    def __init__(self, page_size: int = 200):
        self.page_size = page_size
        # grant id -> event id -> event object
        self.events: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        # (method, grant id) -> status code returned instead of handling
        self.errors: Dict[tuple, int] = {}
        # event titles whose create call fails
        self.failing_titles = set()
        self.token_status = 200
        self.token_response: Dict[str, Any] = {
            'access_token': 'new-access-token',
            'refresh_token': 'new-refresh-token',
            'expires_in': 3600,
        }
        self._counter = 0

    def add_event(self, grant_id: str = TEST_CONNECTION_ID, **kwargs) -> Dict[str, Any]:
        event = create_test_event(**kwargs)
        self.events.setdefault(grant_id, {})[event['id']] = event
        return event

    def get_event(self, event_id: str, grant_id: str = TEST_CONNECTION_ID) -> Optional[Dict[str, Any]]:
        return self.events.get(grant_id, {}).get(event_id)

    def client(self) -> NylasCalendarClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return NylasCalendarClient(api_uri=TEST_API_URI, http_client=http)

    def requests_for(self, method: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip('/').split('/')

        if parts == ['v3', 'connect', 'token']:
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={'error': 'invalid_grant'})
            return httpx.Response(200, json=self.token_response)

        # v3/grants/{grant}/events[/{id}]
        grant_id = parts[2]
        status = self.errors.get((request.method, grant_id))
        if status:
            return httpx.Response(status, json={'error': {'message': 'forced failure'}})

        events = self.events.setdefault(grant_id, {})
        event_id = parts[4] if len(parts) > 4 else None

        if request.method == 'GET':
            return self._list(request, events)

        if request.method == 'POST':
            body = json.loads(request.content)
            if body.get('title') in self.failing_titles:
                return httpx.Response(500, json={'error': {'message': 'create failed'}})
            self._counter += 1
            event = {
                'id': f"created-{self._counter}",
                'object': 'event',
                'calendar_id': request.url.params.get('calendar_id'),
                'status': 'confirmed',
                **body,
            }
            events[event['id']] = event
            return httpx.Response(200, json={'request_id': 'req', 'data': event})

        if event_id not in events:
            return httpx.Response(404, json={'error': {'type': 'not_found'}})

        if request.method == 'PUT':
            events[event_id].update(json.loads(request.content))
            return httpx.Response(200, json={'request_id': 'req', 'data': events[event_id]})

        if request.method == 'DELETE':
            del events[event_id]
            return httpx.Response(200, json={'request_id': 'req'})

        return httpx.Response(405)

    def _list(self, request: httpx.Request, events: Dict[str, Dict[str, Any]]) -> httpx.Response:
        start = int(request.url.params['start'])
        end = int(request.url.params['end'])
        matching = [
            event for event in events.values()
            if 'start_time' not in event['when'] or start <= event['when']['start_time'] < end
        ]
        offset = int(request.url.params.get('page_token', 0))
        page = matching[offset:offset + self.page_size]
        payload: Dict[str, Any] = {'request_id': 'req', 'data': page}
        if offset + self.page_size < len(matching):
            payload['next_cursor'] = str(offset + self.page_size)
        return httpx.Response(200, json=payload)
