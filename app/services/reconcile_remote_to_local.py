"""
Remote -> Local reconciliation.

Applies changes from a connection's external calendar onto local
appointments and their mappings. Every local mutation is a single atomic
RPC, and each remote event is processed independently so one failure never
blocks the rest of the pass.
"""

import logging
from datetime import datetime
from typing import Dict, List

from app import config
from app.calendar.event_hash import compute_event_hash
from app.calendar.models import (
    APPOINTMENT_STATUS_SCHEDULED,
    MAPPING_DIRECTION_INBOUND,
    MAPPING_DIRECTION_OUTBOUND,
    CalendarConnection,
    ExternalEventMapping,
    ReconcileResult,
    RemoteEvent,
)

logger = logging.getLogger(__name__)

CANCELLED_NOTE = 'Cancelled: Event deleted from external calendar.'


def _in_window(value: datetime, start: datetime, end: datetime) -> bool:
    return value is not None and start <= value < end


def _synced_note(connection: CalendarConnection, event: RemoteEvent, updated: bool = False) -> str:
    prefix = '(Updated) ' if updated else ''
    return f"{prefix}Synced from {connection.provider}: {event.title or '(no title)'}"


async def reconcile_remote_to_local(
    store,
    connection: CalendarConnection,
    remote_events: List[RemoteEvent],
    remote_ids,
    clinician_id: str,
    start: datetime,
    end: datetime
) -> ReconcileResult:
    """
    Reconcile fetched remote events onto local appointments.

    Args:
        store: CalendarSyncStore (or compatible)
        connection: Connection the events were fetched from
        remote_events: Events fetched for the window
        remote_ids: Ids of remote_events
        clinician_id: Owner of the appointments created here
        start: Window start (inclusive)
        end: Window end (exclusive)

    Returns:
        ReconcileResult with local created/updated/deleted counts
    """
    log_prefix = f"[Remote->Local][Conn:{connection.id}]"
    logger.info(f"{log_prefix} Starting reconciliation for {len(remote_events)} remote events.")

    result = ReconcileResult()

    try:
        mappings = await store.get_connection_mappings(connection.id)
    except Exception as e:
        logger.error(f"{log_prefix} DB error fetching mappings: {e}")
        result.errors.append({'type': 'db_fetch_mappings', 'error': 'Failed to fetch mappings', 'details': str(e)})
        return result

    mappings_by_event_id: Dict[str, ExternalEventMapping] = {m.external_event_id: m for m in mappings}
    logger.info(f"{log_prefix} Found {len(mappings)} existing mappings.")

    # Creations and updates
    for event in remote_events:
        try:
            event_hash = compute_event_hash(event)
            mapping = mappings_by_event_id.get(event.id)

            if mapping is None:
                logger.info(f"{log_prefix} New remote event {event.id} found. Creating local appointment.")
                await store.create_appointment_and_mapping(
                    clinician_id=clinician_id,
                    appointment_type=config.EXTERNAL_EVENT_APPOINTMENT_TYPE,
                    status=APPOINTMENT_STATUS_SCHEDULED,
                    start_at=event.start_at,
                    end_at=event.end_at,
                    notes=_synced_note(connection, event),
                    external_event_id=event.id,
                    connection_id=connection.id,
                    sync_direction=MAPPING_DIRECTION_INBOUND,
                    last_sync_hash=event_hash
                )
                result.created += 1
                continue

            if mapping.appointment is not None and mapping.appointment.is_cancelled:
                # Cancelled is terminal; the outbound pass propagates the deletion
                continue

            if mapping.last_sync_hash == event_hash:
                continue

            logger.info(
                f"{log_prefix} Remote change detected for event {event.id}. "
                f"Syncing to local appointment {mapping.appointment_id}."
            )
            if mapping.sync_direction == MAPPING_DIRECTION_OUTBOUND and mapping.appointment is not None:
                # Clinic-owned appointment: keep the clinician's notes
                notes = mapping.appointment.notes
            else:
                notes = _synced_note(connection, event, updated=True)

            await store.update_appointment_and_mapping(
                appointment_id=mapping.appointment_id,
                start_at=event.start_at,
                end_at=event.end_at,
                notes=notes,
                mapping_id=mapping.id,
                last_sync_hash=event_hash
            )
            result.updated += 1

        except Exception as e:
            logger.error(f"{log_prefix} Failed to reconcile remote event {event.id}: {e}")
            action = 'update' if event.id in mappings_by_event_id else 'create'
            result.errors.append({'id': event.id, 'error': f'Failed to {action} appointment', 'details': str(e)})

    # Deletions: mapped events that vanished from the remote window
    for mapping in mappings:
        appointment = mapping.appointment
        if appointment is None:
            # Orphaned mapping
            continue
        if mapping.external_event_id in remote_ids:
            continue
        if appointment.is_cancelled or not _in_window(appointment.start_at, start, end):
            continue

        try:
            logger.info(
                f"{log_prefix} Remote event {mapping.external_event_id} appears deleted. "
                f"Cancelling local appointment {mapping.appointment_id}."
            )
            await store.cancel_appointment_and_delete_mapping(
                appointment_id=mapping.appointment_id,
                mapping_id=mapping.id,
                notes=CANCELLED_NOTE
            )
            result.deleted += 1
        except Exception as e:
            logger.error(f"{log_prefix} Transactional cancellation failed for appointment {mapping.appointment_id}: {e}")
            result.errors.append({
                'id': mapping.appointment_id,
                'error': 'Failed to cancel appointment',
                'details': str(e)
            })

    logger.info(
        f"{log_prefix} Reconciliation complete. Local: {result.created} created, "
        f"{result.updated} updated, {result.deleted} deleted."
    )
    if result.errors:
        logger.warning(f"{log_prefix} Reconciliation finished with {len(result.errors)} errors.")

    return result
