"""
Calendar Sync Service
Bidirectional reconciliation between local appointments and external calendars.

For each active connection of a clinician, sequentially:
    circuit check -> credential refresh -> remote fetch
    -> remote->local -> local->remote -> aggregate

A connection-level failure is recorded and the loop moves on to the next
connection; event-level failures are recorded by the reconcilers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from app import config
from app.calendar.credential_refresh import CredentialRefresher
from app.calendar.event_hash import compute_event_hash
from app.calendar.models import (
    MAPPING_DIRECTION_OUTBOUND,
    CalendarConnection,
    RemoteEvent,
    SyncDirection,
    SyncSummary,
    parse_timestamp,
)
from app.calendar.nylas_client import NylasCalendarClient
from app.exceptions import (
    AppointmentNotFoundError,
    CalendarApiError,
    CalendarSyncError,
    InvalidSyncWindowError,
    MissingSyncParametersError,
    NoActiveConnectionError,
)
from app.services.reconcile_local_to_remote import build_outbound_event, reconcile_local_to_remote
from app.services.reconcile_remote_to_local import reconcile_remote_to_local
from app.utils.circuit_breaker import ConnectionCircuitBreaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncWindow:
    """Half-open [start, end) range being synchronized"""
    start: datetime
    end: datetime

    @classmethod
    def parse(cls, start_date: str, end_date: str) -> "SyncWindow":
        try:
            start = parse_timestamp(start_date)
            end = parse_timestamp(end_date)
        except (TypeError, ValueError) as e:
            raise InvalidSyncWindowError(f"Invalid sync window: {e}")
        if start is None or end is None:
            raise InvalidSyncWindowError("Sync window requires both startDate and endDate")
        if end <= start:
            raise InvalidSyncWindowError(
                f"endDate ({end.isoformat()}) must be after startDate ({start.isoformat()})"
            )
        return cls(start=start, end=end)


class CalendarSyncService:
    """Orchestrates reconciliation passes for one clinician's connections"""

    def __init__(
        self,
        store,
        nylas: NylasCalendarClient,
        refresher: Optional[CredentialRefresher] = None,
        breaker: Optional[ConnectionCircuitBreaker] = None,
        lock=None
    ):
        self.store = store
        self.nylas = nylas
        self.refresher = refresher or CredentialRefresher(store, nylas)
        self.breaker = breaker or ConnectionCircuitBreaker(store)
        self.lock = lock

    async def close(self):
        await self.nylas.close()

    async def fetch_remote_events(
        self,
        connection: CalendarConnection,
        window: SyncWindow
    ) -> Tuple[List[RemoteEvent], Set[str]]:
        """Pull all external events in the window for one connection"""
        return await self.nylas.list_events(connection, window.start, window.end)

    async def sync_bidirectional(
        self,
        clinician_id: str,
        start_date: str,
        end_date: str,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    ) -> Dict[str, Any]:
        """
        Reconcile a clinician's appointments with all active calendar connections.

        Args:
            clinician_id: Clinician whose connections are synced
            start_date: ISO-8601 window start
            end_date: ISO-8601 window end (exclusive)
            direction: Which passes to run

        Returns:
            Response dict with success, message, stats and (optionally) errors

        Raises:
            MissingSyncParametersError: If a required parameter is missing
            InvalidSyncWindowError: If the window is unparseable or empty
            SyncInProgressError: If the clinician's sync lock is held
        """
        missing = [
            name for name, value in (
                ('clinicianId', clinician_id), ('startDate', start_date), ('endDate', end_date)
            ) if not value
        ]
        if missing:
            raise MissingSyncParametersError(missing)

        window = SyncWindow.parse(start_date, end_date)

        if self.lock is None:
            summary = await self._sync_clinician(clinician_id, window, direction)
        else:
            async with self.lock.acquire(clinician_id):
                summary = await self._sync_clinician(clinician_id, window, direction)

        return summary.to_response()

    async def _sync_clinician(
        self,
        clinician_id: str,
        window: SyncWindow,
        direction: SyncDirection
    ) -> SyncSummary:
        log_prefix = f"[SyncService][Clinician:{clinician_id}]"
        logger.info(
            f"{log_prefix} Sync ({direction.value}) triggered for period: "
            f"{window.start.isoformat()} to {window.end.isoformat()}"
        )

        summary = SyncSummary()

        connections = await self.store.get_active_connections(clinician_id)
        if not connections:
            logger.info(f"{log_prefix} No active connections to sync.")
            summary.message = "No active connections to sync."
            return summary
        logger.info(f"{log_prefix} Found {len(connections)} active connections.")

        for connection in connections:
            conn_prefix = f"{log_prefix}[Conn:{connection.id}]"

            if not await self.breaker.allow(connection):
                summary.skipped_connections.append(connection.id)
                continue

            try:
                await self._sync_connection(connection, clinician_id, window, direction, summary)
            except CalendarSyncError as e:
                logger.error(f"{conn_prefix} Unrecoverable error processing connection: {e}")
                summary.errors.append({
                    'connection_id': connection.id,
                    'error': str(e),
                    'details': 'This connection was skipped.',
                })
                await self.breaker.record_failure(connection, e)
                continue
            except Exception as e:
                logger.error(f"{conn_prefix} Unexpected error processing connection: {e}", exc_info=True)
                summary.errors.append({
                    'connection_id': connection.id,
                    'error': 'Connection processing error',
                    'details': str(e),
                })
                await self.breaker.record_failure(connection, e)
                continue

            await self.breaker.record_success(connection)
            logger.info(f"{conn_prefix} Finished processing connection.")

        logger.info(f"{log_prefix} {summary.describe()}")
        if summary.errors:
            logger.warning(f"{log_prefix} Sync completed with {len(summary.errors)} errors. See response for details.")

        return summary

    async def _sync_connection(
        self,
        connection: CalendarConnection,
        clinician_id: str,
        window: SyncWindow,
        direction: SyncDirection,
        summary: SyncSummary
    ) -> None:
        connection = await self.refresher.ensure_fresh(connection)

        remote_events, remote_ids = await self.fetch_remote_events(connection, window)
        logger.info(f"[SyncService][Conn:{connection.id}] Found {len(remote_events)} events in external calendar.")

        if direction in (SyncDirection.TO_LOCAL, SyncDirection.BIDIRECTIONAL):
            local_result = await reconcile_remote_to_local(
                self.store, connection, remote_events, remote_ids,
                clinician_id, window.start, window.end
            )
            summary.local.add(local_result)
            summary.errors.extend(
                {**error, 'connection_id': connection.id, 'direction': 'remote->local'}
                for error in local_result.errors
            )

        if direction in (SyncDirection.TO_REMOTE, SyncDirection.BIDIRECTIONAL):
            remote_result = await reconcile_local_to_remote(
                self.store, self.nylas, connection, remote_ids,
                clinician_id, window.start, window.end,
                remote_events={event.id: event for event in remote_events}
            )
            summary.remote.add(remote_result)
            summary.errors.extend(
                {**error, 'connection_id': connection.id, 'direction': 'local->remote'}
                for error in remote_result.errors
            )

    async def sync_appointment_to_calendar(self, appointment_id: str) -> Dict[str, Any]:
        """
        Push a single appointment to its clinician's first active connection.

        An appointment already mapped on that connection is not pushed again.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist
            NoActiveConnectionError: If the clinician has no active connection
            CredentialRefreshFailed: If the connection's token cannot be refreshed
            CalendarApiError: If the create call fails
        """
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)

        connections = await self.store.get_active_connections(appointment.clinician_id)
        if not connections:
            raise NoActiveConnectionError(appointment.clinician_id)

        connection = await self.refresher.ensure_fresh(connections[0])

        existing = appointment.mapping_for(connection.id)
        if existing is not None:
            logger.info(f"[syncToCalendar] Appointment {appointment_id} already mapped to {existing.external_event_id}")
            return {
                'success': True,
                'external_event_id': existing.external_event_id,
                'already_synced': True,
            }

        participants = []
        if connection.email:
            participants.append({'email': connection.email, 'status': 'yes'})
        if appointment.client_email:
            participants.append({'email': appointment.client_email, 'status': 'noreply'})

        logger.info(f"[syncToCalendar] Creating calendar event for appointment: {appointment_id}")
        created_event = await self.nylas.create_event(
            connection,
            build_outbound_event(
                appointment,
                calendar_id=connection.primary_calendar_id or config.DEFAULT_CALENDAR_ID,
                participants=participants
            )
        )
        event_id = created_event.get('id')
        if not event_id:
            raise CalendarApiError('create', None, "Create response did not include an event id")
        logger.info(f"[syncToCalendar] Calendar event created successfully: {event_id}")

        await self.store.insert_mapping(
            appointment_id=appointment.id,
            external_event_id=event_id,
            connection_id=connection.id,
            sync_direction=MAPPING_DIRECTION_OUTBOUND,
            last_sync_hash=compute_event_hash(created_event)
        )

        return {'success': True, 'external_event_id': event_id}


def create_calendar_sync_service(nylas: NylasCalendarClient = None) -> CalendarSyncService:
    """Build the service wired to Supabase, Nylas and (optionally) the Redis sync lock"""
    from app.database import get_main_client
    from app.services.calendar_store import CalendarSyncStore

    store = CalendarSyncStore(get_main_client())
    nylas = nylas or NylasCalendarClient()

    lock = None
    if config.SYNC_LOCK_ENABLED:
        from app.services.locks import ClinicianSyncLock
        lock = ClinicianSyncLock(config.get_redis_client())

    return CalendarSyncService(store, nylas, lock=lock)
