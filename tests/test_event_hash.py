"""
Tests for canonical event hashing
"""

from app.calendar.event_hash import canonical_event, compute_event_hash
from app.calendar.models import RemoteEvent

from tests.fixtures import create_test_event, epoch


class TestCanonicalEvent:

    def test_reduces_payload_to_change_detection_fields(self):
        payload = create_test_event(
            id='evt-1',
            title='Lunch',
            description='Bring laptop',
            location='Room 4',
            participants=[{'email': 'b@test', 'status': 'yes'}, {'email': 'a@test'}],
        )

        assert canonical_event(payload) == {
            'title': 'Lunch',
            'start': epoch(2025, 1, 7, 10),
            'end': epoch(2025, 1, 7, 11),
            'description': 'Bring laptop',
            'location': 'Room 4',
            'participants': ['a@test', 'b@test'],
        }

    def test_missing_fields_normalize_to_empty(self):
        event = RemoteEvent(id='evt-1', title=None, start_time=1, end_time=2)

        canonical = canonical_event(event)

        assert canonical['title'] == ''
        assert canonical['description'] == ''
        assert canonical['location'] == ''
        assert canonical['participants'] == []


class TestComputeEventHash:

    def test_participant_order_does_not_change_hash(self):
        first = create_test_event(participants=[{'email': 'a@test'}, {'email': 'b@test'}, {'email': 'c@test'}])
        second = dict(first, participants=[{'email': 'c@test'}, {'email': 'a@test'}, {'email': 'b@test'}])

        assert compute_event_hash(first) == compute_event_hash(second)

    def test_payload_and_parsed_event_hash_identically(self):
        payload = create_test_event(title='Dentist', location='Main St')

        assert compute_event_hash(payload) == compute_event_hash(RemoteEvent.from_api(payload))

    def test_ignores_fields_outside_canonical_form(self):
        payload = create_test_event()
        noisy = dict(payload, calendar_id='other', status='tentative', object='event')

        assert compute_event_hash(payload) == compute_event_hash(noisy)

    def test_time_change_changes_hash(self):
        payload = create_test_event()
        moved = create_test_event(id=payload['id'], start_time=epoch(2025, 1, 7, 12), end_time=epoch(2025, 1, 7, 13))

        assert compute_event_hash(payload) != compute_event_hash(moved)

    def test_none_and_empty_description_hash_the_same(self):
        assert compute_event_hash(create_test_event(description=None)) == \
            compute_event_hash(create_test_event(description=''))

    def test_hash_is_sha256_hex(self):
        digest = compute_event_hash(create_test_event())

        assert len(digest) == 64
        int(digest, 16)
