"""
Calendar Sync Store
Supabase access for connections, event mappings and appointments.

Mutations that touch both an appointment and its mapping go through the
atomic RPCs defined in migrations/calendar_sync_rpc_functions.sql so the
two rows can never disagree after an interrupted pass.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from app.calendar.models import (
    APPOINTMENT_STATUS_CANCELLED,
    Appointment,
    CalendarConnection,
    ExternalEventMapping,
)

logger = logging.getLogger(__name__)

CONNECTIONS_TABLE = 'nylas_connections'
MAPPINGS_TABLE = 'external_calendar_mappings'
APPOINTMENTS_TABLE = 'appointments'

MAPPING_COLUMNS = 'id, appointment_id, external_event_id, connection_id, sync_direction, last_sync_hash'


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


class CalendarSyncStore:
    """Reads and atomic writes the reconciliation engine needs from Supabase"""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def get_active_connections(self, clinician_id: str) -> List[CalendarConnection]:
        result = self.supabase.table(CONNECTIONS_TABLE).select('*').eq(
            'user_id', clinician_id
        ).eq('is_active', True).execute()
        return [CalendarConnection.from_row(row) for row in result.data or []]

    async def update_connection_tokens(
        self,
        connection_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime
    ) -> CalendarConnection:
        result = self.supabase.table(CONNECTIONS_TABLE).update({
            'access_token': access_token,
            'refresh_token': refresh_token,
            'token_expires_at': _iso(expires_at),
        }).eq('id', connection_id).execute()

        if not result.data:
            raise ValueError(f"Connection not found: {connection_id}")
        return CalendarConnection.from_row(result.data[0])

    async def update_connection_health(self, connection_id: str, updates: Dict[str, Any]) -> None:
        """Persist circuit breaker fields (consecutive_failures, state, last_error...)"""
        payload = {
            key: _iso(value) if isinstance(value, datetime) else value
            for key, value in updates.items()
        }
        self.supabase.table(CONNECTIONS_TABLE).update(payload).eq('id', connection_id).execute()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_connection_mappings(self, connection_id: str) -> List[ExternalEventMapping]:
        """All mappings on a connection, each joined with its appointment"""
        result = self.supabase.table(MAPPINGS_TABLE).select(
            '*, appointments(id, clinician_id, type, status, start_at, end_at, notes)'
        ).eq('connection_id', connection_id).execute()
        return [ExternalEventMapping.from_row(row) for row in result.data or []]

    async def get_window_appointments(
        self,
        clinician_id: str,
        start: datetime,
        end: datetime
    ) -> List[Appointment]:
        """Non-cancelled appointments starting in [start, end), with every mapping they have"""
        result = self.supabase.table(APPOINTMENTS_TABLE).select(
            f'*, clients(client_email), {MAPPINGS_TABLE}({MAPPING_COLUMNS})'
        ).eq('clinician_id', clinician_id).gte(
            'start_at', _iso(start)
        ).lt('start_at', _iso(end)).neq('status', APPOINTMENT_STATUS_CANCELLED).execute()
        return [Appointment.from_row(row) for row in result.data or []]

    async def get_cancelled_mapped_appointments(
        self,
        clinician_id: str,
        connection_id: str
    ) -> List[Appointment]:
        """Cancelled appointments that still carry a mapping on this connection"""
        result = self.supabase.table(APPOINTMENTS_TABLE).select(
            f'id, clinician_id, type, status, start_at, end_at, notes, {MAPPINGS_TABLE}!inner({MAPPING_COLUMNS})'
        ).eq('clinician_id', clinician_id).eq(
            'status', APPOINTMENT_STATUS_CANCELLED
        ).eq(f'{MAPPINGS_TABLE}.connection_id', connection_id).execute()
        return [Appointment.from_row(row) for row in result.data or []]

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        result = self.supabase.table(APPOINTMENTS_TABLE).select(
            f'*, clients(client_first_name, client_last_name, client_email), {MAPPINGS_TABLE}({MAPPING_COLUMNS})'
        ).eq('id', appointment_id).limit(1).execute()
        if not result.data:
            return None
        return Appointment.from_row(result.data[0])

    # ------------------------------------------------------------------
    # Atomic appointment + mapping procedures
    # ------------------------------------------------------------------

    async def create_appointment_and_mapping(
        self,
        clinician_id: str,
        appointment_type: str,
        status: str,
        start_at: datetime,
        end_at: datetime,
        notes: str,
        external_event_id: str,
        connection_id: str,
        sync_direction: str,
        last_sync_hash: str
    ) -> Optional[str]:
        """Create a local appointment and its mapping in one transaction. Returns the appointment id."""
        result = self.supabase.rpc('create_appointment_and_mapping', {
            'p_clinician_id': clinician_id,
            'p_type': appointment_type,
            'p_status': status,
            'p_start_at': _iso(start_at),
            'p_end_at': _iso(end_at),
            'p_notes': notes,
            'p_external_event_id': external_event_id,
            'p_connection_id': connection_id,
            'p_sync_direction': sync_direction,
            'p_last_sync_hash': last_sync_hash
        }).execute()
        return result.data

    async def update_appointment_and_mapping(
        self,
        appointment_id: str,
        start_at: datetime,
        end_at: datetime,
        notes: str,
        mapping_id: str,
        last_sync_hash: str
    ) -> None:
        self.supabase.rpc('update_appointment_and_mapping', {
            'p_appointment_id': appointment_id,
            'p_start_at': _iso(start_at),
            'p_end_at': _iso(end_at),
            'p_notes': notes,
            'p_mapping_id': mapping_id,
            'p_last_sync_hash': last_sync_hash
        }).execute()

    async def cancel_appointment_and_delete_mapping(
        self,
        appointment_id: str,
        mapping_id: str,
        notes: str
    ) -> None:
        self.supabase.rpc('cancel_appointment_and_delete_mapping', {
            'p_appointment_id': appointment_id,
            'p_mapping_id': mapping_id,
            'p_notes': notes
        }).execute()

    # ------------------------------------------------------------------
    # Mapping-only writes (outbound direction)
    # ------------------------------------------------------------------

    async def insert_mapping(
        self,
        appointment_id: str,
        external_event_id: str,
        connection_id: str,
        sync_direction: str,
        last_sync_hash: Optional[str]
    ) -> ExternalEventMapping:
        result = self.supabase.table(MAPPINGS_TABLE).insert({
            'appointment_id': appointment_id,
            'external_event_id': external_event_id,
            'connection_id': connection_id,
            'sync_direction': sync_direction,
            'last_sync_hash': last_sync_hash,
        }).execute()
        return ExternalEventMapping.from_row(result.data[0])

    async def update_mapping_hash(self, mapping_id: str, last_sync_hash: str) -> None:
        self.supabase.table(MAPPINGS_TABLE).update({
            'last_sync_hash': last_sync_hash,
            'updated_at': _iso(datetime.now(timezone.utc)),
        }).eq('id', mapping_id).execute()

    async def delete_mapping(self, mapping_id: str) -> None:
        self.supabase.table(MAPPINGS_TABLE).delete().eq('id', mapping_id).execute()
