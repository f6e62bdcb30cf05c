# =============================================================================
# tests/unit/test_synchronizer.py
# Unit Tests for Synchronizer
# =============================================================================

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pandas as pd
import pytest

from sync_core.errors import RemoteSourceError, UnknownCategoryError
from sync_core.offline.connection_manager import ConnectionManager
from sync_core.offline.models import PendingActionKind
from sync_core.offline.synchronizer import (
    LAST_SYNC_SETTING,
    CategorySpec,
    DrainState,
    RefreshState,
    Synchronizer,
)


def job_ids(actions):
    return [action.payload.job_id for action in actions]


class FakeNotifications:
    """ChangeNotificationSource double fed through ``notify``."""

    def __init__(self):
        self.queues = {}

    def _queue(self, category):
        return self.queues.setdefault(category, asyncio.Queue())

    def notify(self, category, event="changed"):
        self._queue(category).put_nowait(event)

    async def watch(self, category):
        queue = self._queue(category)
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event


# =============================================================================
# REFRESH
# =============================================================================

class TestRefresh:
    """Cache-first refresh"""

    @pytest.mark.asyncio
    async def test_fresh_cache_skips_remote(self, synchronizer, cache, remote):
        cache.write("dashboard_data", {"count": 5}, ttl=600)

        value = await synchronizer.refresh("dashboard")

        assert value == {"count": 5}
        assert remote.fetch.await_count == 0

    @pytest.mark.asyncio
    async def test_stale_cache_fetches(self, synchronizer, cache, remote, clock):
        cache.write("dashboard_data", {"count": 5}, ttl=600)
        clock.advance(timedelta(minutes=10))
        remote.set("dashboard", {"count": 7})

        value = await synchronizer.refresh("dashboard")

        assert value == {"count": 7}
        assert cache.read("dashboard_data").value == {"count": 7}
        remote.fetch.assert_awaited_once_with("dashboard", None)

    @pytest.mark.asyncio
    async def test_force_bypasses_fresh_cache(self, synchronizer, cache, remote):
        cache.write("dashboard_data", {"count": 5}, ttl=600)
        remote.set("dashboard", {"count": 6})

        assert await synchronizer.refresh("dashboard", force=True) == {"count": 6}
        assert remote.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_cached_value(self, synchronizer, cache, remote, clock):
        cache.write("dashboard_data", {"count": 5}, ttl=600)
        clock.advance(601)
        remote.offline = True

        assert await synchronizer.refresh("dashboard") is None

        assert cache.read("dashboard_data").value == {"count": 5}
        assert synchronizer.refresh_state("dashboard") is RefreshState.REFRESH_FAILED

    @pytest.mark.asyncio
    async def test_success_after_failure_resets_state(self, synchronizer, remote):
        remote.offline = True
        await synchronizer.refresh("dashboard")
        remote.offline = False
        remote.set("dashboard", {"count": 1})

        await synchronizer.refresh("dashboard")

        assert synchronizer.refresh_state("dashboard") is RefreshState.IDLE

    @pytest.mark.asyncio
    async def test_refresh_publishes(self, synchronizer, broadcaster, remote):
        subscription = broadcaster.subscribe("jobs")
        remote.set("jobs", [{"id": "J1", "status": "open"}])

        await synchronizer.refresh("jobs")

        assert subscription.pending() == [[{"id": "J1", "status": "open"}]]

    @pytest.mark.asyncio
    async def test_scoped_key(self, synchronizer, cache, remote):
        remote.set("jobs", [{"id": "J9", "status": "open"}], scope="guard-7")

        await synchronizer.refresh("jobs", scope="guard-7")

        assert cache.read("offline_jobs_guard-7") is not None
        assert cache.read("offline_jobs_all") is None

    @pytest.mark.asyncio
    async def test_unknown_category(self, synchronizer):
        with pytest.raises(UnknownCategoryError):
            await synchronizer.refresh("weather")

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self, synchronizer, remote, settle):
        gate = asyncio.Event()

        async def slow_fetch(category, scope):
            await gate.wait()
            return {"count": 9}

        remote.fetch.side_effect = slow_fetch
        first = asyncio.ensure_future(synchronizer.refresh("dashboard", force=True))
        second = asyncio.ensure_future(synchronizer.refresh("dashboard", force=True))
        await settle()

        assert synchronizer.refresh_state("dashboard") is RefreshState.REFRESHING
        gate.set()

        assert await asyncio.gather(first, second) == [{"count": 9}, {"count": 9}]
        assert remote.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_refresh_all_reports_per_key(self, synchronizer, remote):
        remote.set("dashboard", {"count": 1})

        results = await synchronizer.refresh_all()

        assert results == {"dashboard_data": True, "offline_jobs_all": False}

    @pytest.mark.asyncio
    async def test_fetched_and_cached_value_delivered_once(self, synchronizer, broadcaster, remote):
        synchronizer.register(CategorySpec.create("profile_completion", ttl=3600, interval=1800))
        subscription = broadcaster.subscribe("profile_completion")
        remote.set(
            "profile_completion",
            {"percent": 80, "missing": ("bsn", "photo"), "checked": datetime(2026, 1, 1)},
        )

        fetched = await synchronizer.refresh("profile_completion")
        cached = await synchronizer.refresh("profile_completion")

        assert remote.fetch.await_count == 1
        assert fetched == cached == {"percent": 80, "missing": ["bsn", "photo"], "checked": "2026-01-01T00:00:00"}
        assert len(subscription.pending()) == 1

    @pytest.mark.asyncio
    async def test_max_items_caps_cached_listing(self, synchronizer, cache, remote):
        synchronizer.register(CategorySpec.create("jobs", ttl=3600, interval=300, max_items=2))
        remote.set("jobs", [{"id": "J1"}, {"id": "J2"}, {"id": "J3"}])

        value = await synchronizer.refresh("jobs")

        assert value == [{"id": "J1"}, {"id": "J2"}]
        assert cache.read("offline_jobs_all").value == [{"id": "J1"}, {"id": "J2"}]


class TestGet:
    """Stale-serves-then-refreshes reads"""

    @pytest.mark.asyncio
    async def test_stale_served_then_refreshed(self, synchronizer, cache, remote, clock, settle):
        cache.write("dashboard_data", {"count": 5}, ttl=600)
        clock.advance(700)
        remote.set("dashboard", {"count": 7})

        read = await synchronizer.get("dashboard")

        assert read.value == {"count": 5}
        assert not read.is_fresh

        await settle(10)
        assert cache.read("dashboard_data").value == {"count": 7}

    @pytest.mark.asyncio
    async def test_fresh_hit_does_not_fetch(self, synchronizer, cache, remote, settle):
        cache.write("dashboard_data", {"count": 5}, ttl=600)

        read = await synchronizer.get("dashboard")
        await settle()

        assert read.is_fresh
        assert remote.fetch.await_count == 0

    @pytest.mark.asyncio
    async def test_miss_fetches_in_foreground(self, synchronizer, remote):
        remote.set("dashboard", {"count": 3})

        read = await synchronizer.get("dashboard")

        assert read.value == {"count": 3}
        assert read.is_fresh

    @pytest.mark.asyncio
    async def test_miss_returns_stored_shape(self, synchronizer, cache, remote):
        remote.set("dashboard", {"shift": ("S1", "S2"), "start": datetime(2026, 3, 2, 8, 30)})

        read = await synchronizer.get("dashboard")

        assert read.value == {"shift": ["S1", "S2"], "start": "2026-03-02T08:30:00"}
        assert read.value == cache.read("dashboard_data").value

    @pytest.mark.asyncio
    async def test_miss_failure_propagates(self, synchronizer):
        with pytest.raises(RemoteSourceError) as excinfo:
            await synchronizer.get("dashboard")

        assert excinfo.value.details["category"] == "dashboard"


class TestLastSync:
    """Last successful sync timestamps"""

    @pytest.mark.asyncio
    async def test_recorded_on_refresh(self, synchronizer, store, remote, clock):
        remote.set("dashboard", {"count": 1})

        await synchronizer.refresh("dashboard")

        assert store.get_setting(LAST_SYNC_SETTING) == clock.now
        assert synchronizer.last_sync() == datetime.fromtimestamp(clock.now)
        assert synchronizer.last_sync("dashboard") == datetime.fromtimestamp(clock.now)
        assert synchronizer.last_sync("jobs") is None

    @pytest.mark.asyncio
    async def test_not_recorded_on_failure(self, synchronizer):
        await synchronizer.refresh("dashboard")

        assert synchronizer.last_sync() is None


# =============================================================================
# DRAIN
# =============================================================================

class TestDrain:
    """FIFO submission of pending actions"""

    @pytest.mark.asyncio
    async def test_drains_in_fifo_order(self, synchronizer, queue, remote):
        queue.enqueue_job_application("J1", "g")
        queue.enqueue_time_tracking("S1", "g", "clock_in")
        queue.enqueue_job_application("J2", "g")

        result = await synchronizer.drain()

        assert job_ids(remote.submitted) == ["J1", "S1", "J2"]
        assert result.submitted == 3
        assert queue.is_empty()

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_failed_action(self, synchronizer, queue, remote):
        queue.enqueue_job_application("J1", "g")
        rejected = queue.enqueue_job_application("J2", "g")
        queue.enqueue_job_application("J3", "g")
        remote.reject_job_ids.add("J2")

        result = await synchronizer.drain()

        assert job_ids(remote.submitted) == ["J1", "J3"]
        assert (result.attempted, result.submitted, result.failed, result.remaining) == (3, 2, 1, 1)
        assert [a.id for a in queue.peek_all()] == [rejected]
        assert queue.attempts(rejected) == 1

    @pytest.mark.asyncio
    async def test_submit_exception_counts_as_failure(self, synchronizer, queue, remote):
        queue.enqueue_job_application("J1", "g")
        queue.enqueue_job_application("J2", "g")
        remote.raise_job_ids.add("J1")

        result = await synchronizer.drain()

        assert result.failed == 1
        assert job_ids(remote.submitted) == ["J2"]

    @pytest.mark.asyncio
    async def test_empty_queue_is_noop(self, synchronizer, remote):
        result = await synchronizer.drain()

        assert result.skipped
        assert remote.submit.await_count == 0

    @pytest.mark.asyncio
    async def test_offline_defers(self, synchronizer, queue, remote):
        synchronizer.connection = ConnectionManager()
        synchronizer.connection.force_offline()
        queue.enqueue_job_application("J1", "g")

        result = await synchronizer.drain()

        assert result.skipped
        assert result.remaining == 1
        assert remote.submit.await_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_drain_skipped(self, synchronizer, queue, remote, settle):
        gate = asyncio.Event()
        original = remote.submit.side_effect

        async def slow_submit(action):
            await gate.wait()
            return await original(action)

        remote.submit.side_effect = slow_submit
        queue.enqueue_job_application("J1", "g")

        first = asyncio.ensure_future(synchronizer.drain())
        await settle()
        assert synchronizer.drain_state is DrainState.DRAINING

        second = await synchronizer.drain()
        gate.set()
        first_result = await first

        assert second.skipped
        assert first_result.submitted == 1
        assert remote.submit.await_count == 1
        assert synchronizer.drain_state is DrainState.IDLE

    @pytest.mark.asyncio
    async def test_drain_records_sync_time(self, synchronizer, queue, clock):
        queue.enqueue_job_application("J1", "g")

        await synchronizer.drain()

        assert synchronizer.last_sync() == datetime.fromtimestamp(clock.now)


class TestSubmitNow:
    """Queue-then-submit"""

    @pytest.mark.asyncio
    async def test_submits_immediately_when_queue_empty(self, synchronizer, queue, remote):
        action_id, submitted = await synchronizer.submit_now(
            PendingActionKind.JOB_APPLICATION, {"job_id": "J1", "guard_id": "g"}
        )

        assert submitted
        assert queue.get(action_id) is None
        assert job_ids(remote.submitted) == ["J1"]

    @pytest.mark.asyncio
    async def test_older_actions_go_first(self, synchronizer, queue, remote):
        queue.enqueue_time_tracking("S1", "g", "clock_in")

        _, submitted = await synchronizer.submit_now(
            "job_application", {"job_id": "J1", "guard_id": "g"}
        )

        assert submitted
        assert job_ids(remote.submitted) == ["S1", "J1"]

    @pytest.mark.asyncio
    async def test_offline_leaves_action_queued(self, synchronizer, queue, remote):
        synchronizer.connection = ConnectionManager()
        synchronizer.connection.force_offline()

        action_id, submitted = await synchronizer.submit_now(
            "job_application", {"job_id": "J1", "guard_id": "g"}
        )

        assert not submitted
        assert queue.get(action_id) is not None
        assert remote.submit.await_count == 0

    @pytest.mark.asyncio
    async def test_rejection_leaves_action_queued(self, synchronizer, queue, remote):
        remote.reject_job_ids.add("J1")

        action_id, submitted = await synchronizer.submit_now(
            "job_application", {"job_id": "J1", "guard_id": "g"}
        )

        assert not submitted
        assert queue.attempts(action_id) == 1


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycle:
    """Background tasks"""

    @pytest.mark.asyncio
    async def test_start_refreshes_every_key(self, synchronizer, cache, remote, settle):
        remote.set("dashboard", {"count": 1})
        remote.set("jobs", [])

        synchronizer.start()
        synchronizer.start()
        await settle(10)

        assert synchronizer.is_running
        assert cache.read("dashboard_data").value == {"count": 1}
        assert cache.read("offline_jobs_all") is not None

        await synchronizer.stop()
        await synchronizer.stop()
        assert not synchronizer.is_running

    @pytest.mark.asyncio
    async def test_background_failure_does_not_stop_loop(self, synchronizer, settle):
        synchronizer.start()
        await settle(10)

        assert synchronizer.refresh_state("dashboard") is RefreshState.REFRESH_FAILED
        assert synchronizer.is_running

        await synchronizer.stop()

    @pytest.mark.asyncio
    async def test_drain_timer(self, store, cache, queue, broadcaster, remote, clock):
        sync = Synchronizer(store, cache, queue, broadcaster, remote, drain_interval=0.01, clock=clock)
        queue.enqueue_job_application("J1", "g")

        sync.start()
        await asyncio.sleep(0.1)
        await sync.stop()

        assert queue.is_empty()

    @pytest.mark.asyncio
    async def test_change_notification_forces_refresh(
        self, store, cache, queue, broadcaster, remote, clock, settle
    ):
        notifications = FakeNotifications()
        sync = Synchronizer(store, cache, queue, broadcaster, remote, notifications=notifications, clock=clock)
        sync.register(CategorySpec.create("dashboard", ttl=600, interval=600))
        cache.write("dashboard_data", {"count": 5}, ttl=600)

        sync.start()
        await settle()
        assert remote.fetch.await_count == 0

        remote.set("dashboard", {"count": 8})
        notifications.notify("dashboard")
        await settle(10)
        await sync.stop()

        assert cache.read("dashboard_data").value == {"count": 8}
        assert remote.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_connection_restored_triggers_drain(
        self, store, cache, queue, broadcaster, remote, clock, settle
    ):
        probe = AsyncMock(return_value=False)
        connection = ConnectionManager(probe=probe)
        sync = Synchronizer(store, cache, queue, broadcaster, remote, connection=connection, clock=clock)
        sync.start()

        await connection.check_connection()
        queue.enqueue_time_tracking("S1", "guard-7", "clock_in")
        await settle()
        assert remote.submit.await_count == 0

        probe.return_value = True
        await connection.check_connection()
        await settle(10)
        await sync.stop()

        assert job_ids(remote.submitted) == ["S1"]
        assert queue.is_empty()

    @pytest.mark.asyncio
    async def test_status_snapshot(self, synchronizer, remote):
        remote.set("dashboard", {"count": 1})
        await synchronizer.refresh("dashboard")

        status = synchronizer.status()

        assert status["running"] is False
        assert status["pending_actions"] == 0
        assert status["categories"]["dashboard"]["keys"]["dashboard_data"]["state"] == "idle"
        assert status["categories"]["jobs"]["priority"] == "normal"
        assert status["totals"]["fetches"] == 1


class TestCategorySpec:
    """Category registration values"""

    def test_keys(self):
        jobs = CategorySpec.create("jobs", ttl=60, interval=60, scopes=[None, "guard-7"])

        assert jobs.key_for() == "offline_jobs_all"
        assert jobs.key_for("guard-7") == "offline_jobs_guard-7"
        assert CategorySpec.create("payment_status", 60, 60).key_for("p1") == "payment_status:p1"

    def test_custom_prefix(self):
        spec = CategorySpec.create("rota", ttl=60, interval=60, key_prefix="weekly_rota")

        assert spec.key_for() == "weekly_rota"

    def test_durations_accept_timedelta(self):
        spec = CategorySpec.create("dashboard", ttl=timedelta(minutes=10), interval=timedelta(hours=1))

        assert (spec.ttl, spec.interval) == (600.0, 3600.0)

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            CategorySpec.create("dashboard", ttl=60, interval=0)

    def test_cap_keeps_leading_rows(self):
        spec = CategorySpec.create("jobs", ttl=60, interval=60, max_items=2)
        frame = pd.DataFrame({"id": ["J1", "J2", "J3"]})

        assert spec.cap([1, 2, 3]) == [1, 2]
        assert list(spec.cap(frame)["id"]) == ["J1", "J2"]
        assert spec.cap({"count": 3}) == {"count": 3}
        assert CategorySpec.create("jobs", 60, 60).cap([1, 2, 3]) == [1, 2, 3]

    def test_invalid_max_items(self):
        with pytest.raises(ValueError):
            CategorySpec.create("jobs", ttl=60, interval=60, max_items=0)
