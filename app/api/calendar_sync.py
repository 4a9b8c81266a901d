"""
Calendar Sync API
Single action-dispatch endpoint for reconciling appointments with external calendars
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app import config
from app.exceptions import (
    AppointmentNotFoundError,
    CalendarApiError,
    CredentialRefreshFailed,
    InvalidSyncWindowError,
    MissingSyncParametersError,
    NoActiveConnectionError,
    SyncInProgressError,
)
from app.calendar.models import SyncDirection
from app.middleware.auth import AuthenticationFailed, CallerIdentity, authorize_request
from app.services.calendar_sync_service import create_calendar_sync_service

router = APIRouter(prefix="/api/calendar", tags=["calendar-sync"])
logger = logging.getLogger(__name__)


class NylasSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    clinician_id: Optional[str] = Field(None, alias="clinicianId")
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")
    appointment_id: Optional[str] = Field(None, alias="appointmentId")
    sync_direction: Optional[str] = Field(None, alias="syncDirection")


def error_response(status_code: int, error: str, code: str, details: Any = None, **extra) -> JSONResponse:
    content: Dict[str, Any] = {'error': error, 'code': code}
    if details is not None:
        content['details'] = details
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def authentication_failed_handler(request: Request, exc: AuthenticationFailed) -> JSONResponse:
    return error_response(401, 'Authentication failed', exc.code, exc.details)


def _ping(caller: CallerIdentity) -> Dict[str, Any]:
    return {
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'user_id': caller.user_id,
    }


def _check_config():
    missing = config.missing_nylas_config()
    if missing:
        return error_response(
            400,
            'Nylas configuration missing',
            'CONFIG_MISSING',
            f"Missing environment variables: {', '.join(missing)}",
            missing=missing
        )
    return {
        'status': 'ok',
        'message': 'Nylas configuration is valid',
        'config': {'hasClientId': True, 'hasClientSecret': True, 'hasApiKey': True},
    }


async def _run_sync_action(request: NylasSyncRequest, direction: SyncDirection):
    service = create_calendar_sync_service()
    try:
        if request.action == 'sync_appointment_to_calendar':
            if not request.appointment_id:
                return error_response(400, 'Appointment ID is required', 'MISSING_APPOINTMENT_ID')
            return await service.sync_appointment_to_calendar(request.appointment_id)

        if request.action == 'sync_calendar_to_appointments':
            direction = SyncDirection.TO_LOCAL

        return await service.sync_bidirectional(
            request.clinician_id,
            request.start_date,
            request.end_date,
            direction=direction
        )
    finally:
        await service.close()


SYNC_ACTIONS = ('sync_bidirectional', 'sync_calendar_to_appointments', 'sync_appointment_to_calendar')


@router.post("/nylas-sync")
async def nylas_sync(
    request: NylasSyncRequest,
    caller: CallerIdentity = Depends(authorize_request)
):
    """
    Dispatch a calendar sync action

    Actions:
        sync_bidirectional: reconcile a clinician's window in both directions
        sync_calendar_to_appointments: remote -> local only
        sync_appointment_to_calendar: push one appointment
        ping / check-config: diagnostics
    """
    logger.info(f"[nylas-sync] Action: {request.action} (caller: {caller})")

    if request.action == 'ping':
        return _ping(caller)
    if request.action == 'check-config':
        return _check_config()
    if request.action not in SYNC_ACTIONS:
        return error_response(
            400,
            'Invalid action specified',
            'INVALID_ACTION',
            f"Supported actions: {', '.join(SYNC_ACTIONS + ('ping', 'check-config'))}"
        )

    try:
        direction = SyncDirection(request.sync_direction or SyncDirection.BIDIRECTIONAL.value)
    except ValueError:
        return error_response(
            400,
            'Invalid sync direction',
            'INVALID_PARAMS',
            f"syncDirection must be one of: {', '.join(d.value for d in SyncDirection)}"
        )

    try:
        return await _run_sync_action(request, direction)

    except MissingSyncParametersError as e:
        return error_response(400, 'Missing required parameters', 'MISSING_PARAMS', str(e), missing=e.missing)

    except InvalidSyncWindowError as e:
        return error_response(400, 'Invalid sync window', 'INVALID_WINDOW', str(e))

    except SyncInProgressError as e:
        return error_response(409, 'Sync already in progress', 'SYNC_IN_PROGRESS', str(e))

    except AppointmentNotFoundError as e:
        return error_response(404, 'Appointment not found', 'APPOINTMENT_NOT_FOUND', str(e))

    except NoActiveConnectionError as e:
        return error_response(400, 'No active calendar connection', 'NO_ACTIVE_CONNECTION', str(e))

    except CredentialRefreshFailed as e:
        return error_response(400, 'Calendar credentials could not be refreshed', 'TOKEN_REFRESH_FAILED', str(e))

    except CalendarApiError as e:
        return error_response(400, 'Calendar API request failed', 'API_ERROR', str(e))

    except Exception as e:
        logger.error(f"[nylas-sync] Unexpected error: {e}", exc_info=True)
        return error_response(500, 'Internal server error', 'SERVER_ERROR', str(e))
