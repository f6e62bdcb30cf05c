# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import asyncio
import random
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from sync_core.config import EngineConfig
from sync_core.offline.broadcaster import LiveUpdateBroadcaster
from sync_core.offline.cache_manager import CacheEntryManager
from sync_core.offline.local_store import LocalStore
from sync_core.offline.pending_queue import PendingActionQueue
from sync_core.offline.synchronizer import CategorySpec, Synchronizer


# =============================================================================
# TEST DOUBLES
# =============================================================================

class FakeClock:
    """Controllable epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, delta) -> float:
        if isinstance(delta, timedelta):
            delta = delta.total_seconds()
        self.now += delta
        return self.now


class FakeRemote:
    """
    RemoteDataSource double.

    ``fetch`` serves values from ``data`` keyed by (category, scope) and
    raises ConnectionError while ``offline`` is set or the key is unknown.
    ``submit`` records actions and rejects those whose job id is listed in
    ``reject_job_ids`` (or raises for ``raise_job_ids``).
    """

    def __init__(self):
        self.data: Dict[Tuple[str, Optional[str]], Any] = {}
        self.offline = False
        self.reject_job_ids: Set[str] = set()
        self.raise_job_ids: Set[str] = set()
        self.submitted: List[Any] = []
        self.fetch = AsyncMock(side_effect=self._fetch)
        self.submit = AsyncMock(side_effect=self._submit)

    def set(self, category: str, value: Any, scope: Optional[str] = None) -> None:
        self.data[(category, scope)] = value

    async def _fetch(self, category, scope):
        if self.offline:
            raise ConnectionError("network unreachable")
        try:
            return self.data[(category, scope)]
        except KeyError:
            raise ConnectionError(f"no remote data for {category}/{scope}")

    async def _submit(self, action):
        if self.offline:
            raise ConnectionError("network unreachable")
        job_id = getattr(action.payload, "job_id", None)
        if job_id in self.raise_job_ids:
            raise RuntimeError(f"server error for {job_id}")
        if job_id in self.reject_job_ids:
            return False
        self.submitted.append(action)
        return True


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and short tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================

@pytest.fixture(name="settle")
def settle_fixture():
    return settle


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "sync_core.db"


@pytest.fixture
def store(db_path):
    """Initialized LocalStore on a temporary database"""
    local_store = LocalStore(db_path)
    local_store.initialize()
    yield local_store
    local_store.close()


@pytest.fixture
def cache(store, clock):
    """Cache manager with deterministic (disabled) probabilistic sweeps"""
    return CacheEntryManager(store, sweep_probability=0.0, clock=clock, rng=random.Random(7))


@pytest.fixture
def queue(store, clock):
    return PendingActionQueue(store, clock=clock)


@pytest.fixture
def broadcaster():
    hub = LiveUpdateBroadcaster()
    yield hub
    hub.close_all()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def synchronizer(store, cache, queue, broadcaster, remote, clock):
    """Synchronizer with dashboard (10 min) and jobs (24 h) registered, not started"""
    sync = Synchronizer(store, cache, queue, broadcaster, remote, clock=clock)
    sync.register(CategorySpec.create("dashboard", ttl=timedelta(minutes=10), interval=timedelta(minutes=10)))
    sync.register(CategorySpec.create("jobs", ttl=timedelta(hours=24), interval=timedelta(minutes=5)))
    return sync


@pytest.fixture
def engine_config(db_path):
    """Engine config on a temp database without live connectivity probing"""
    return EngineConfig(
        db_path=str(db_path),
        sweep_probability=0.0,
        monitor_connectivity=False,
    )


@pytest_asyncio.fixture
async def engine(engine_config, remote, clock):
    """Built (not started) engine; shut down after the test"""
    from sync_core.offline.engine import create_engine

    built = create_engine(engine_config, remote=remote, clock=clock)
    yield built
    await built.shutdown()
