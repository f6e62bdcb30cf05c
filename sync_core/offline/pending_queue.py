# =============================================================================
# sync_core/offline/pending_queue.py
# Durable FIFO Queue of User Mutations
# =============================================================================
"""
PendingActionQueue - durable, ordered list of user-initiated mutations
(job applications, time-tracking events, ...) awaiting remote submission.

``enqueue`` returns only after the SQLite commit, so an accepted action
survives a crash. Submission bookkeeping (attempt count, last error) lives
next to the action in the queue table; the action itself is immutable.
"""

from __future__ import annotations
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from sync_core.errors import LocalStoreError, PayloadDecodeError, QueueDurabilityError
from sync_core.offline.codec import coerce_action_payload, decode_action_payload, encode_action_payload
from sync_core.offline.local_store import LocalStore, PENDING_ACTIONS_TABLE
from sync_core.offline.models import (
    ActionPayload,
    GeoLocation,
    JobApplicationPayload,
    PendingAction,
    PendingActionKind,
    TimeTrackingAction,
    TimeTrackingPayload,
    kind_name,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_DEAD_LETTER = "dead_letter"


class PendingActionQueue:
    """
    FIFO queue persisted in the ``pending_job_actions`` table.

    Usage:
        queue = PendingActionQueue(store)
        action_id = queue.enqueue_time_tracking("S1", "guard-7", "clock_in")
        for action in queue.peek_all():
            ...
            queue.remove(action.id)
    """

    def __init__(
        self,
        store: LocalStore,
        max_attempts: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Initialized local store
            max_attempts: Failed submissions before an action is dead-lettered;
                None keeps retrying forever
            clock: Time source (epoch seconds)
        """
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")
        self.store = store
        self.max_attempts = max_attempts
        self._clock = clock

    def _new_id(self, now: float) -> str:
        return f"{int(now * 1000):013d}-{uuid.uuid4().hex[:8]}"

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue(
        self,
        kind: Union[PendingActionKind, str],
        payload: Union[ActionPayload, Dict[str, Any]],
    ) -> str:
        """
        Append a mutation to the durable queue.

        Returns:
            The new action id

        Raises:
            PayloadDecodeError: payload does not match the kind's schema
            QueueDurabilityError: the action could not be persisted
        """
        name = kind_name(kind)
        typed = coerce_action_payload(name, payload)
        now = self._clock()
        action_id = self._new_id(now)

        try:
            with self.store.transaction() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {PENDING_ACTIONS_TABLE} (id, kind, payload_json, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [action_id, name, encode_action_payload(name, typed), now],
                )
        except (LocalStoreError, TypeError, ValueError) as e:
            logger.error(f"Failed to queue {name} action: {e}")
            raise QueueDurabilityError(
                f"Could not durably queue {name} action: {e}",
                kind=name,
            ) from e

        logger.info(f"Queued {name} action {action_id} for offline submission")
        return action_id

    def enqueue_job_application(
        self,
        job_id: str,
        guard_id: str,
        application_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Queue a job application."""
        return self.enqueue(
            PendingActionKind.JOB_APPLICATION,
            JobApplicationPayload(job_id=job_id, guard_id=guard_id, data=application_data or {}),
        )

    def enqueue_time_tracking(
        self,
        job_id: str,
        guard_id: str,
        action: Union[TimeTrackingAction, str],
        timestamp: Optional[float] = None,
        location: Optional[Union[GeoLocation, Dict[str, Any]]] = None,
    ) -> str:
        """Queue a clock-in or clock-out event."""
        if isinstance(location, dict):
            location = GeoLocation.from_dict(location)
        return self.enqueue(
            PendingActionKind.TIME_TRACKING,
            TimeTrackingPayload(
                job_id=job_id,
                guard_id=guard_id,
                action=TimeTrackingAction(action),
                timestamp=self._clock() if timestamp is None else timestamp,
                location=location,
            ),
        )

    # =========================================================================
    # READ
    # =========================================================================

    def peek_all(self) -> List[PendingAction]:
        """
        Ordered snapshot of pending actions (oldest first).

        Rows that can no longer be decoded are dead-lettered so they do not
        block every drain.
        """
        rows = self.store.query(
            f"""
            SELECT * FROM {PENDING_ACTIONS_TABLE}
            WHERE status = ?
            ORDER BY seq ASC
            """,
            [STATUS_PENDING],
        )

        actions = []
        for row in rows:
            try:
                actions.append(self._to_action(row))
            except PayloadDecodeError as e:
                logger.error(f"Dead-lettering undecodable action {row['id']}: {e}")
                self._set_status(row["id"], STATUS_DEAD_LETTER, str(e))
        return actions

    def get(self, action_id: str) -> Optional[PendingAction]:
        rows = self.store.query(
            f"SELECT * FROM {PENDING_ACTIONS_TABLE} WHERE id = ?",
            [action_id],
        )
        if not rows:
            return None
        return self._to_action(rows[0])

    def count(self) -> int:
        """Number of actions waiting for submission."""
        result = self.store.query(
            f"SELECT COUNT(*) AS count FROM {PENDING_ACTIONS_TABLE} WHERE status = ?",
            [STATUS_PENDING],
        )
        return result[0]["count"] if result else 0

    def is_empty(self) -> bool:
        return self.count() == 0

    def attempts(self, action_id: str) -> int:
        rows = self.store.query(
            f"SELECT attempts FROM {PENDING_ACTIONS_TABLE} WHERE id = ?",
            [action_id],
        )
        return rows[0]["attempts"] if rows else 0

    # =========================================================================
    # MUTATION
    # =========================================================================

    def remove(self, action_id: str) -> bool:
        """Delete an action after confirmed remote submission."""
        removed = self.store.execute(
            f"DELETE FROM {PENDING_ACTIONS_TABLE} WHERE id = ?",
            [action_id],
        ) > 0
        if removed:
            logger.debug(f"Removed submitted action {action_id}")
        return removed

    def record_failure(self, action_id: str, error: str) -> int:
        """
        Record a failed submission attempt.

        When ``max_attempts`` is configured and reached, the action moves to
        the dead-letter state and stops being returned by ``peek_all``.

        Returns:
            The attempt count after this failure
        """
        self.store.execute(
            f"""
            UPDATE {PENDING_ACTIONS_TABLE}
            SET attempts = attempts + 1, last_attempt = ?, error_message = ?
            WHERE id = ?
            """,
            [self._clock(), error, action_id],
        )
        attempts = self.attempts(action_id)

        if self.max_attempts is not None and attempts >= self.max_attempts:
            self._set_status(action_id, STATUS_DEAD_LETTER, error)
            logger.warning(f"Action {action_id} dead-lettered after {attempts} attempts")

        return attempts

    def dead_letters(self) -> List[PendingAction]:
        """Actions that exhausted ``max_attempts`` or could not be decoded."""
        rows = self.store.query(
            f"SELECT * FROM {PENDING_ACTIONS_TABLE} WHERE status = ? ORDER BY seq ASC",
            [STATUS_DEAD_LETTER],
        )
        letters = []
        for row in rows:
            try:
                letters.append(self._to_action(row))
            except PayloadDecodeError:
                continue
        return letters

    def requeue_dead_letters(self) -> int:
        """Move dead-lettered actions back to pending with a fresh attempt count."""
        count = self.store.execute(
            f"""
            UPDATE {PENDING_ACTIONS_TABLE}
            SET status = ?, attempts = 0, error_message = NULL
            WHERE status = ?
            """,
            [STATUS_PENDING, STATUS_DEAD_LETTER],
        )
        if count:
            logger.info(f"Requeued {count} dead-lettered actions")
        return count

    def clear(self) -> int:
        """Drop every queued action, dead letters included."""
        return self.store.execute(f"DELETE FROM {PENDING_ACTIONS_TABLE}")

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _set_status(self, action_id: str, status: str, error: Optional[str] = None) -> None:
        self.store.execute(
            f"UPDATE {PENDING_ACTIONS_TABLE} SET status = ?, error_message = ? WHERE id = ?",
            [status, error, action_id],
        )

    @staticmethod
    def _to_action(row) -> PendingAction:
        return PendingAction(
            id=row["id"],
            kind=row["kind"],
            payload=decode_action_payload(row["kind"], row["payload_json"]),
            created_at=row["created_at"],
        )
