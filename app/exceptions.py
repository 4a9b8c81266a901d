"""
Custom exceptions for the calendar sync backend.
"""
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar reconciliation errors."""


class CredentialRefreshFailed(CalendarSyncError):
    """Raised when a connection's access token cannot be refreshed.

    Kept distinct from API failures so monitoring can separate
    authentication problems from transient provider errors.
    """

    def __init__(self, connection_id: str, message: str = None):
        self.connection_id = connection_id
        self.message = message or f"Failed to refresh token for connection {connection_id}"
        super().__init__(self.message)


class RemoteFetchError(CalendarSyncError):
    """Raised when remote events for a connection cannot be listed."""

    def __init__(self, connection_id: str, message: str, status_code: Optional[int] = None):
        self.connection_id = connection_id
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class CalendarApiError(CalendarSyncError):
    """Raised when a single create/update/delete call to the calendar API fails."""

    def __init__(self, operation: str, status_code: Optional[int], body: str = ""):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        if status_code is None:
            message = f"Calendar API {operation} failed: {body}"
        else:
            message = f"Calendar API {operation} failed with HTTP {status_code}: {body}"
        super().__init__(message)


class MissingSyncParametersError(CalendarSyncError):
    """Raised when a sync request lacks clinicianId, startDate or endDate."""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Missing required parameters: {', '.join(self.missing)}")


class InvalidSyncWindowError(CalendarSyncError):
    """Raised when the sync window cannot be parsed or is empty."""

    def __init__(self, message: str):
        super().__init__(message)


class SyncInProgressError(CalendarSyncError):
    """Raised when another sync already holds the clinician's lock."""

    def __init__(self, clinician_id: str):
        self.clinician_id = clinician_id
        super().__init__(f"A calendar sync is already running for clinician {clinician_id}")


class AppointmentNotFoundError(CalendarSyncError):
    """Raised when an appointment to push does not exist."""

    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class NoActiveConnectionError(CalendarSyncError):
    """Raised when a clinician has no active calendar connection."""

    def __init__(self, clinician_id: str):
        self.clinician_id = clinician_id
        super().__init__(f"Clinician {clinician_id} does not have an active calendar connection")
