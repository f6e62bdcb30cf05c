# =============================================================================
# tests/unit/test_pending_queue.py
# Unit Tests for PendingActionQueue
# =============================================================================

from unittest.mock import MagicMock

import pytest

from sync_core.errors import LocalStoreError, PayloadDecodeError, QueueDurabilityError
from sync_core.offline.local_store import PENDING_ACTIONS_TABLE
from sync_core.offline.models import (
    GenericPayload,
    GeoLocation,
    JobApplicationPayload,
    PendingActionKind,
    TimeTrackingAction,
    TimeTrackingPayload,
)
from sync_core.offline.pending_queue import PendingActionQueue


class TestEnqueue:
    """Test durable enqueue"""

    def test_enqueue_returns_id_and_persists(self, queue, store):
        action_id = queue.enqueue_job_application("J1", "guard-7", {"note": "available"})

        fresh = PendingActionQueue(store)
        action = fresh.get(action_id)
        assert action.kind == "job_application"
        assert action.payload == JobApplicationPayload("J1", "guard-7", {"note": "available"})

    def test_enqueue_time_tracking_with_location_dict(self, queue, clock):
        action_id = queue.enqueue_time_tracking(
            "S1", "guard-7", "clock_in",
            location={"latitude": 51.5, "longitude": -0.12, "accuracy": 8.0},
        )

        payload = queue.get(action_id).payload
        assert isinstance(payload, TimeTrackingPayload)
        assert payload.action is TimeTrackingAction.CLOCK_IN
        assert payload.timestamp == clock.now
        assert payload.location == GeoLocation(51.5, -0.12, 8.0)

    def test_enqueue_accepts_payload_dict(self, queue):
        action_id = queue.enqueue(
            PendingActionKind.TIME_TRACKING,
            {"job_id": "S1", "guard_id": "g", "action": "clock_out", "timestamp": 10.0},
        )

        assert queue.get(action_id).payload.action is TimeTrackingAction.CLOCK_OUT

    def test_unknown_kind_uses_generic_payload(self, queue):
        action_id = queue.enqueue("certificate_upload", {"file": "sia.pdf"})

        action = queue.get(action_id)
        assert action.payload == GenericPayload({"file": "sia.pdf"})
        assert not action.is_known_kind

    def test_schema_mismatch_rejected_before_write(self, queue):
        with pytest.raises(PayloadDecodeError):
            queue.enqueue(PendingActionKind.JOB_APPLICATION, {"guard_id": "g"})

        assert queue.count() == 0

    def test_store_failure_raises_durability_error(self, clock):
        broken = MagicMock()
        broken.transaction.side_effect = LocalStoreError("database is locked")
        failing_queue = PendingActionQueue(broken, clock=clock)

        with pytest.raises(QueueDurabilityError) as excinfo:
            failing_queue.enqueue_job_application("J1", "g")

        assert excinfo.value.code == "QUEUE_001"
        assert excinfo.value.details["kind"] == "job_application"

    def test_ids_are_unique(self, queue):
        ids = {queue.enqueue_job_application(f"J{i}", "g") for i in range(25)}

        assert len(ids) == 25


class TestOrdering:
    """FIFO by insertion order"""

    def test_peek_all_is_fifo(self, queue, clock):
        first = queue.enqueue_job_application("J1", "g")
        second = queue.enqueue_time_tracking("S1", "g", TimeTrackingAction.CLOCK_IN)
        third = queue.enqueue_job_application("J2", "g")

        assert [a.id for a in queue.peek_all()] == [first, second, third]

    def test_fifo_survives_identical_timestamps(self, queue):
        # Fake clock does not move between these calls
        ids = [queue.enqueue_job_application(f"J{i}", "g") for i in range(5)]

        assert [a.id for a in queue.peek_all()] == ids

    def test_remove_keeps_order_of_rest(self, queue):
        a = queue.enqueue_job_application("J1", "g")
        b = queue.enqueue_job_application("J2", "g")
        c = queue.enqueue_job_application("J3", "g")

        assert queue.remove(b) is True
        assert [x.id for x in queue.peek_all()] == [a, c]
        assert queue.remove(b) is False


class TestFailureTracking:
    """Attempts and dead letters"""

    def test_record_failure_increments_attempts(self, queue):
        action_id = queue.enqueue_job_application("J1", "g")

        assert queue.record_failure(action_id, "timeout") == 1
        assert queue.record_failure(action_id, "timeout") == 2
        assert queue.count() == 1

    def test_unbounded_retry_by_default(self, queue):
        action_id = queue.enqueue_job_application("J1", "g")
        for _ in range(50):
            queue.record_failure(action_id, "500")

        assert [a.id for a in queue.peek_all()] == [action_id]

    def test_dead_letter_after_max_attempts(self, store, clock):
        limited = PendingActionQueue(store, max_attempts=3, clock=clock)
        action_id = limited.enqueue_job_application("J1", "g")

        for _ in range(3):
            limited.record_failure(action_id, "rejected")

        assert limited.is_empty()
        assert [a.id for a in limited.dead_letters()] == [action_id]

    def test_requeue_dead_letters(self, store, clock):
        limited = PendingActionQueue(store, max_attempts=1, clock=clock)
        action_id = limited.enqueue_job_application("J1", "g")
        limited.record_failure(action_id, "rejected")

        assert limited.requeue_dead_letters() == 1
        assert limited.attempts(action_id) == 0
        assert [a.id for a in limited.peek_all()] == [action_id]

    def test_invalid_max_attempts(self, store):
        with pytest.raises(ValueError):
            PendingActionQueue(store, max_attempts=0)


class TestCorruptRows:
    """Undecodable rows do not block the queue"""

    def test_corrupt_row_dead_lettered(self, queue, store):
        good = queue.enqueue_job_application("J1", "g")
        store.execute(
            f"INSERT INTO {PENDING_ACTIONS_TABLE} (id, kind, payload_json, created_at) VALUES (?, ?, ?, ?)",
            ["bad-1", "job_application", "{broken", 0.0],
        )

        assert [a.id for a in queue.peek_all()] == [good]
        assert queue.count() == 1

    def test_clear(self, queue):
        queue.enqueue_job_application("J1", "g")
        queue.enqueue_job_application("J2", "g")

        assert queue.clear() == 2
        assert queue.is_empty()
