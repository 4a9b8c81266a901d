"""
Canonical event hashing for change detection.

Both reconciliation directions compare a stored hash against a freshly
computed one, so every caller must go through compute_event_hash().
"""

import hashlib
import json
from typing import Any, Dict, Union

from app.calendar.models import RemoteEvent

EventLike = Union[RemoteEvent, Dict[str, Any]]


def canonical_event(event: EventLike) -> Dict[str, Any]:
    """
    Reduce an event to the fields that matter for change detection.

    Args:
        event: RemoteEvent or a raw Nylas event payload

    Returns:
        Dictionary with title, start, end, description, location and the
        sorted participant emails
    """
    if not isinstance(event, RemoteEvent):
        event = RemoteEvent.from_api(event)

    return {
        'title': event.title or '',
        'start': int(event.start_time),
        'end': int(event.end_time),
        'description': event.description or '',
        'location': event.location or '',
        'participants': sorted(event.participants or []),
    }


def compute_event_hash(event: EventLike) -> str:
    """Deterministic SHA-256 fingerprint of an event's canonical form"""
    serialized = json.dumps(canonical_event(event), sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()
