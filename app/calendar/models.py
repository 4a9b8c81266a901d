"""
Calendar Sync Data Model
Typed views over the Supabase rows and Nylas payloads the sync engine works with
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncDirection(Enum):
    """Which reconciliation passes a sync runs"""
    TO_LOCAL = "inbound"
    TO_REMOTE = "outbound"
    BIDIRECTIONAL = "both"


class CircuitState(Enum):
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Connection skipped
    HALF_OPEN = "half-open" # Next pass is a trial


APPOINTMENT_STATUS_SCHEDULED = "scheduled"
APPOINTMENT_STATUS_CANCELLED = "cancelled"

MAPPING_DIRECTION_INBOUND = "inbound"
MAPPING_DIRECTION_OUTBOUND = "outbound"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_epoch(value: datetime) -> int:
    return int(value.timestamp())


def from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _date_epoch(value: str) -> int:
    day = date.fromisoformat(value)
    return to_epoch(datetime(day.year, day.month, day.day, tzinfo=timezone.utc))


@dataclass
class CalendarConnection:
    """One authorized link between a clinician and an external calendar account"""
    id: str
    user_id: str
    access_token: str
    refresh_token: Optional[str]
    token_expires_at: Optional[datetime]
    provider: str
    email: Optional[str] = None
    calendar_ids: List[str] = field(default_factory=list)
    is_active: bool = True
    consecutive_failures: int = 0
    circuit_breaker_state: CircuitState = CircuitState.CLOSED
    circuit_last_tripped_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def grant_id(self) -> str:
        # Connections are keyed by their Nylas grant id
        return self.id

    @property
    def primary_calendar_id(self) -> Optional[str]:
        return self.calendar_ids[0] if self.calendar_ids else None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CalendarConnection":
        state = row.get('circuit_breaker_state') or CircuitState.CLOSED.value
        return cls(
            id=row['id'],
            user_id=row.get('user_id'),
            access_token=row.get('access_token'),
            refresh_token=row.get('refresh_token'),
            token_expires_at=parse_timestamp(row.get('token_expires_at')),
            provider=row.get('provider') or 'calendar',
            email=row.get('email'),
            calendar_ids=list(row.get('calendar_ids') or []),
            is_active=row.get('is_active', True),
            consecutive_failures=row.get('consecutive_failures') or 0,
            circuit_breaker_state=CircuitState(state),
            circuit_last_tripped_at=parse_timestamp(row.get('circuit_last_tripped_at')),
            last_error=row.get('last_error'),
        )


@dataclass
class Appointment:
    """The subset of a local appointment the sync engine reads or writes"""
    id: str
    clinician_id: Optional[str]
    type: Optional[str]
    status: str
    start_at: datetime
    end_at: datetime
    notes: Optional[str] = None
    client_id: Optional[str] = None
    client_email: Optional[str] = None
    time_zone: Optional[str] = None
    mappings: List["ExternalEventMapping"] = field(default_factory=list)

    @property
    def is_cancelled(self) -> bool:
        return self.status == APPOINTMENT_STATUS_CANCELLED

    def mapping_for(self, connection_id: str) -> Optional["ExternalEventMapping"]:
        for mapping in self.mappings:
            if mapping.connection_id == connection_id:
                return mapping
        return None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Appointment":
        client = row.get('clients') or {}
        embedded = row.get('external_calendar_mappings') or []
        if isinstance(embedded, dict):
            embedded = [embedded]
        appointment = cls(
            id=row['id'],
            clinician_id=row.get('clinician_id'),
            type=row.get('type'),
            status=row.get('status') or APPOINTMENT_STATUS_SCHEDULED,
            start_at=parse_timestamp(row.get('start_at')),
            end_at=parse_timestamp(row.get('end_at')),
            notes=row.get('notes'),
            client_id=row.get('client_id'),
            client_email=client.get('client_email'),
            time_zone=row.get('appointment_timezone') or row.get('time_zone'),
        )
        appointment.mappings = [
            ExternalEventMapping.from_row({'appointment_id': row['id'], **mapping})
            for mapping in embedded
        ]
        return appointment


@dataclass
class ExternalEventMapping:
    """Join record correlating one local appointment to one remote event"""
    id: str
    appointment_id: str
    external_event_id: str
    connection_id: str
    sync_direction: Optional[str] = None
    last_sync_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    appointment: Optional[Appointment] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ExternalEventMapping":
        joined = row.get('appointments')
        appointment = None
        if joined:
            appointment = Appointment.from_row({'id': row.get('appointment_id'), **joined})
        return cls(
            id=row['id'],
            appointment_id=row.get('appointment_id'),
            external_event_id=row.get('external_event_id'),
            connection_id=row.get('connection_id'),
            sync_direction=row.get('sync_direction'),
            last_sync_hash=row.get('last_sync_hash'),
            created_at=parse_timestamp(row.get('created_at')),
            updated_at=parse_timestamp(row.get('updated_at')),
            appointment=appointment,
        )


@dataclass
class RemoteEvent:
    """External calendar event, alive only for one reconciliation pass"""
    id: str
    title: Optional[str]
    start_time: int
    end_time: int
    description: Optional[str] = None
    location: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    timezone: Optional[str] = None
    calendar_id: Optional[str] = None
    status: Optional[str] = None

    @property
    def start_at(self) -> datetime:
        return from_epoch(self.start_time)

    @property
    def end_at(self) -> datetime:
        return from_epoch(self.end_time)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RemoteEvent":
        """Build from a Nylas v3 event object"""
        when = payload.get('when') or {}
        if 'start_time' in when:
            start_time = int(when['start_time'])
            end_time = int(when.get('end_time', when['start_time']))
        elif 'time' in when:
            # Point in time, zero length
            start_time = end_time = int(when['time'])
        elif 'date' in when:
            # All-day event, one day long
            start_time = _date_epoch(when['date'])
            end_time = start_time + 86400
        elif 'start_date' in when:
            start_time = _date_epoch(when['start_date'])
            end_time = _date_epoch(when.get('end_date', when['start_date'])) + 86400
        else:
            raise ValueError(f"Event {payload.get('id')} has no usable 'when' block")

        participants = []
        for participant in payload.get('participants') or []:
            email = participant.get('email') if isinstance(participant, dict) else participant
            if email:
                participants.append(email)

        return cls(
            id=payload.get('id'),
            title=payload.get('title'),
            start_time=start_time,
            end_time=end_time,
            description=payload.get('description'),
            location=payload.get('location'),
            participants=participants,
            timezone=when.get('start_timezone') or when.get('timezone'),
            calendar_id=payload.get('calendar_id'),
            status=payload.get('status'),
        )


@dataclass
class ReconcileResult:
    """Counts and per-item errors for one reconciliation direction"""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, other: "ReconcileResult") -> None:
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted

    def counts(self) -> Dict[str, int]:
        return {'created': self.created, 'updated': self.updated, 'deleted': self.deleted}


@dataclass
class SyncSummary:
    """Aggregate result of one sync invocation across all connections"""
    local: ReconcileResult = field(default_factory=ReconcileResult)
    remote: ReconcileResult = field(default_factory=ReconcileResult)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_connections: List[str] = field(default_factory=list)
    message: Optional[str] = None

    def describe(self) -> str:
        return (
            f"Sync complete. Local: {self.local.created} created, {self.local.updated} updated, "
            f"{self.local.deleted} deleted. Remote: {self.remote.created} created, "
            f"{self.remote.updated} updated, {self.remote.deleted} deleted."
        )

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            'success': True,
            'message': self.message or self.describe(),
            'stats': {
                'local': self.local.counts(),
                'remote': self.remote.counts(),
            },
        }
        if self.errors:
            response['errors'] = self.errors
        if self.skipped_connections:
            response['skipped_connections'] = self.skipped_connections
        return response
