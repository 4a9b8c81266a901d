"""
Local -> Remote reconciliation.

Pushes local appointment changes onto a connection's external calendar in
three independent phases: updates, deletions (cancellations) and creations.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from app import config
from app.calendar.event_hash import compute_event_hash
from app.calendar.models import (
    MAPPING_DIRECTION_INBOUND,
    MAPPING_DIRECTION_OUTBOUND,
    Appointment,
    CalendarConnection,
    ExternalEventMapping,
    ReconcileResult,
    RemoteEvent,
    to_epoch,
)

logger = logging.getLogger(__name__)


def build_outbound_event(
    appointment: Appointment,
    calendar_id: Optional[str] = None,
    participants: Optional[List[Dict[str, str]]] = None
) -> Dict[str, Any]:
    """Nylas event payload for a local appointment"""
    event_data: Dict[str, Any] = {
        'title': f"Appointment: {appointment.type}",
        'description': appointment.notes or '',
        'when': {
            'start_time': to_epoch(appointment.start_at),
            'end_time': to_epoch(appointment.end_at),
        },
    }
    if calendar_id:
        event_data['calendar_id'] = calendar_id
    if participants:
        event_data['participants'] = participants
    return event_data


def project_local_event(
    appointment: Appointment,
    mapping: ExternalEventMapping,
    remote_event: Optional[RemoteEvent] = None
) -> RemoteEvent:
    """
    Local appointment expressed in the same hash basis as its remote event.

    Fields the appointment does not model (location, participants) and, for
    events that originated remotely, the title and description are taken from
    the last fetched remote event. The time window always comes from the
    appointment.
    """
    local = RemoteEvent(
        id=mapping.external_event_id,
        title=f"Appointment: {appointment.type}",
        description=appointment.notes or '',
        start_time=to_epoch(appointment.start_at),
        end_time=to_epoch(appointment.end_at),
    )
    if remote_event is None:
        return local

    if mapping.sync_direction == MAPPING_DIRECTION_INBOUND:
        return replace(remote_event, start_time=local.start_time, end_time=local.end_time)

    return replace(
        local,
        location=remote_event.location,
        participants=list(remote_event.participants),
        timezone=remote_event.timezone,
        calendar_id=remote_event.calendar_id,
    )


async def _push_updates(store, nylas, connection, remote_ids, remote_events_by_id, unreadable_ids, clinician_id,
                        start, end, result: ReconcileResult, log_prefix: str) -> None:
    try:
        appointments = await store.get_window_appointments(clinician_id, start, end)
    except Exception as e:
        logger.error(f"{log_prefix} Error fetching mapped appointments for update check: {e}")
        result.errors.append({'type': 'local_update_fetch', 'error': 'Failed to fetch appointments', 'details': str(e)})
        return

    for appointment in appointments:
        mapping = appointment.mapping_for(connection.id)
        if mapping is None or appointment.is_cancelled:
            continue
        if mapping.external_event_id not in remote_ids:
            continue
        if mapping.external_event_id in unreadable_ids:
            logger.warning(
                f"{log_prefix} Remote event {mapping.external_event_id} could not be read. "
                f"Leaving it untouched."
            )
            continue

        try:
            projected = project_local_event(
                appointment, mapping, remote_events_by_id.get(mapping.external_event_id)
            )
            if compute_event_hash(projected) == mapping.last_sync_hash:
                continue

            logger.info(
                f"{log_prefix} Local change detected for appointment {appointment.id}. "
                f"Syncing to remote event {mapping.external_event_id}."
            )
            updated_event = await nylas.update_event(connection, mapping.external_event_id, {
                'title': projected.title,
                'description': projected.description or '',
                'when': {
                    'start_time': projected.start_time,
                    'end_time': projected.end_time,
                },
            })
            # Hash the response, not the local object, to stay in the inbound hash basis
            await store.update_mapping_hash(mapping.id, compute_event_hash(updated_event))
            result.updated += 1
        except Exception as e:
            logger.error(f"{log_prefix} Failed to update remote event {mapping.external_event_id}: {e}")
            result.errors.append({
                'id': appointment.id,
                'error': 'Failed to update remote event',
                'details': str(e)
            })


async def _push_deletions(store, nylas, connection, clinician_id, result: ReconcileResult, log_prefix: str) -> None:
    try:
        cancelled = await store.get_cancelled_mapped_appointments(clinician_id, connection.id)
    except Exception as e:
        logger.error(f"{log_prefix} Error fetching cancelled appointments: {e}")
        result.errors.append({'type': 'local_delete_fetch', 'error': 'Failed to fetch appointments', 'details': str(e)})
        return

    for appointment in cancelled:
        mapping = appointment.mapping_for(connection.id)
        if mapping is None:
            continue

        try:
            logger.info(
                f"{log_prefix} Deleting remote event {mapping.external_event_id} "
                f"for cancelled appointment {appointment.id}."
            )
            existed = await nylas.delete_event(connection, mapping.external_event_id)
            if not existed:
                logger.info(f"{log_prefix} Remote event {mapping.external_event_id} was already gone.")
            await store.delete_mapping(mapping.id)
            result.deleted += 1
        except Exception as e:
            logger.error(f"{log_prefix} Failed to delete remote event {mapping.external_event_id}: {e}")
            result.errors.append({
                'id': appointment.id,
                'error': 'Failed to delete remote event',
                'details': str(e)
            })


async def _push_creations(store, nylas, connection, clinician_id, start, end,
                          result: ReconcileResult, log_prefix: str) -> None:
    try:
        appointments = await store.get_window_appointments(clinician_id, start, end)
    except Exception as e:
        logger.error(f"{log_prefix} Error fetching new local appointments: {e}")
        result.errors.append({'type': 'local_create_fetch', 'error': 'Failed to fetch appointments', 'details': str(e)})
        return

    calendar_id = connection.primary_calendar_id or config.DEFAULT_CALENDAR_ID

    for appointment in appointments:
        # Only appointments unknown to every connection are pushed
        if appointment.mappings or appointment.is_cancelled:
            continue

        try:
            logger.info(f"{log_prefix} Found new local appointment {appointment.id}. Creating remote event.")
            created_event = await nylas.create_event(
                connection, build_outbound_event(appointment, calendar_id=calendar_id)
            )
            event_id = created_event.get('id')
            if not event_id:
                raise ValueError("Create response did not include an event id")

            await store.insert_mapping(
                appointment_id=appointment.id,
                external_event_id=event_id,
                connection_id=connection.id,
                sync_direction=MAPPING_DIRECTION_OUTBOUND,
                last_sync_hash=compute_event_hash(created_event)
            )
            result.created += 1
        except Exception as e:
            logger.error(f"{log_prefix} Failed to create remote event for appointment {appointment.id}: {e}")
            result.errors.append({
                'id': appointment.id,
                'error': 'Failed to create remote event',
                'details': str(e)
            })


async def reconcile_local_to_remote(
    store,
    nylas,
    connection: CalendarConnection,
    remote_ids,
    clinician_id: str,
    start: datetime,
    end: datetime,
    remote_events: Optional[Mapping[str, RemoteEvent]] = None
) -> ReconcileResult:
    """
    Push local changes to the connection's external calendar.

    Args:
        store: CalendarSyncStore (or compatible)
        nylas: NylasCalendarClient (or compatible)
        connection: Connection with a fresh access token
        remote_ids: Ids of the remote events fetched for the window
        clinician_id: Owner of the appointments
        start: Window start (inclusive)
        end: Window end (exclusive)
        remote_events: Fetched remote events by id, used to build the local hash basis

    Returns:
        ReconcileResult with remote created/updated/deleted counts
    """
    log_prefix = f"[Local->Remote][Conn:{connection.id}]"
    logger.info(f"{log_prefix} Starting reconciliation.")

    result = ReconcileResult()
    remote_events_by_id = dict(remote_events or {})
    # Fetched but unparseable events have an id and no body
    unreadable_ids = set(remote_ids) - set(remote_events_by_id) if remote_events is not None else set()

    await _push_updates(store, nylas, connection, remote_ids, remote_events_by_id, unreadable_ids, clinician_id,
                        start, end, result, log_prefix)
    await _push_deletions(store, nylas, connection, clinician_id, result, log_prefix)
    await _push_creations(store, nylas, connection, clinician_id, start, end, result, log_prefix)

    logger.info(
        f"{log_prefix} Reconciliation complete. Remote: {result.created} created, "
        f"{result.updated} updated, {result.deleted} deleted."
    )
    if result.errors:
        logger.warning(f"{log_prefix} Reconciliation finished with {len(result.errors)} errors.")

    return result
