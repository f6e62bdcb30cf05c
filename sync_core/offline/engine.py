# =============================================================================
# sync_core/offline/engine.py
# OfflineEngine - Single API for Cached Reads, Live Updates and Mutations
# =============================================================================
"""
OfflineEngine - the one object an application holds.

It wires the local store, cache manager, pending queue, broadcaster,
connection monitor and synchronizer together and owns their lifecycle.
Build it with ``create_engine`` and pass it to whatever needs it.

Usage:
------
from sync_core.offline import create_engine

async with create_engine(remote=api) as engine:
    hit = await engine.get("dashboard", scope="guard-7")
    async for dashboard in engine.subscribe("dashboard"):
        render(dashboard)

    action_id, sent = await engine.track_time("S1", "guard-7", "clock_in")
"""

from __future__ import annotations
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging

import pandas as pd

from sync_core.config import EngineConfig, load_config
from sync_core.errors import EngineClosedError, safe_execute
from sync_core.logging import setup_logging
from sync_core.offline.broadcaster import LiveUpdateBroadcaster, Subscription
from sync_core.offline.cache_manager import CacheEntryManager
from sync_core.offline.connection_manager import ConnectionManager, ProbeFn
from sync_core.offline.equality import EqualityFn
from sync_core.offline.local_store import LocalStore
from sync_core.offline.models import (
    ActionPayload,
    CATEGORY_KEY_PREFIX,
    CacheRead,
    Category,
    GeoLocation,
    JobApplicationPayload,
    PendingAction,
    PendingActionKind,
    TimeTrackingAction,
    TimeTrackingPayload,
)
from sync_core.offline.pending_queue import PendingActionQueue
from sync_core.offline.remote import ChangeNotificationSource, RemoteDataSource
from sync_core.offline.synchronizer import CategorySpec, DrainResult, Synchronizer

logger = logging.getLogger(__name__)

CategoryLike = Union[Category, str]


class OfflineEngine:
    """
    Offline-first facade over the sync components.

    Reads never block on the network when a cached value exists. Mutations
    are persisted before any network attempt. After ``shutdown`` every
    foreground call raises EngineClosedError.
    """

    def __init__(
        self,
        store: LocalStore,
        cache: CacheEntryManager,
        queue: PendingActionQueue,
        broadcaster: LiveUpdateBroadcaster,
        synchronizer: Synchronizer,
        connection: Optional[ConnectionManager] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store
        self.cache = cache
        self.queue = queue
        self.broadcaster = broadcaster
        self.synchronizer = synchronizer
        self.connection = connection
        self.config = config or EngineConfig()
        self._started = False
        self._closed = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_online(self) -> bool:
        """True when connected, or when no connection monitor is configured."""
        return self.connection is None or self.connection.is_online

    async def start(self) -> OfflineEngine:
        """Start background refresh, drain and connectivity monitoring."""
        self._ensure_open("start")
        if self._started:
            return self

        # Synchronizer first so the initial "online" transition drains the queue
        self.synchronizer.start()
        if self.connection is not None:
            await self.connection.initialize(start_monitoring=self.config.monitor_connectivity)

        self._started = True
        logger.info(
            f"Offline engine started: {len(self.synchronizer.categories)} categories, "
            f"{self.pending_count} pending actions"
        )
        return self

    async def shutdown(self) -> None:
        """Stop tasks, end subscriber streams, close the store. Idempotent."""
        if self._closed:
            return
        self._closed = True

        await self.synchronizer.stop()
        self.broadcaster.close_all()
        if self.connection is not None:
            await self.connection.stop_monitoring()
        self.store.close()
        self._started = False
        logger.info("Offline engine shut down")

    async def __aenter__(self) -> OfflineEngine:
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.shutdown()
        return False

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise EngineClosedError(operation)

    # =========================================================================
    # READS
    # =========================================================================

    def read(self, category: CategoryLike, scope: Optional[str] = None) -> Optional[CacheRead]:
        """Cache-only lookup; never touches the network."""
        self._ensure_open("read")
        spec = self.synchronizer.spec_for(category)
        return self.cache.read(spec.key_for(scope), ttl_override=spec.ttl)

    async def get(self, category: CategoryLike, scope: Optional[str] = None) -> Optional[CacheRead]:
        """Stale-serves-then-refreshes read; misses fetch in the foreground."""
        self._ensure_open("get")
        return await self.synchronizer.get(category, scope)

    async def refresh(self, category: CategoryLike, scope: Optional[str] = None, force: bool = False) -> Any:
        self._ensure_open("refresh")
        return await self.synchronizer.refresh(category, scope, force=force)

    async def refresh_all(self, force: bool = False) -> Dict[str, bool]:
        self._ensure_open("refresh_all")
        return await self.synchronizer.refresh_all(force=force)

    def subscribe(self, category: CategoryLike, replay_latest: bool = True) -> Subscription:
        """Live updates for a category; the latest value is replayed first."""
        self._ensure_open("subscribe")
        return self.broadcaster.subscribe(category, replay_latest=replay_latest)

    def register_equality(self, category: CategoryLike, equality: EqualityFn) -> None:
        self.broadcaster.register_equality(category, equality)

    def invalidate(self, category: CategoryLike, scope: Optional[str] = None) -> bool:
        """Drop one cached key so the next read misses."""
        self._ensure_open("invalidate")
        return self.cache.invalidate(self.synchronizer.spec_for(category).key_for(scope))

    def clear_cache(self, category: Optional[CategoryLike] = None) -> int:
        """Clear every cached key of one category, or the whole cache."""
        self._ensure_open("clear_cache")
        if category is None:
            return self.cache.clear_all()

        spec = self.synchronizer.spec_for(category)
        base = spec.key_prefix or CATEGORY_KEY_PREFIX.get(spec.category, spec.category)
        keys = {spec.key_for(scope) for scope in spec.scopes}
        if base.endswith("_"):
            keys.update(self.store.list_keys(base))
        else:
            keys.update(self.store.list_keys(f"{base}:"))
        return self.store.delete_many(sorted(keys))

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def queue_action(
        self,
        kind: Union[PendingActionKind, str],
        payload: Union[ActionPayload, Dict[str, Any]],
    ) -> str:
        """Persist an action for the next drain without an immediate attempt."""
        self._ensure_open("queue_action")
        return self.queue.enqueue(kind, payload)

    async def submit_action(
        self,
        kind: Union[PendingActionKind, str],
        payload: Union[ActionPayload, Dict[str, Any]],
    ) -> Tuple[str, bool]:
        """Persist an action, then try to submit it right away."""
        self._ensure_open("submit_action")
        return await self.synchronizer.submit_now(kind, payload)

    async def apply_for_job(
        self,
        job_id: str,
        guard_id: str,
        application_data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, bool]:
        return await self.submit_action(
            PendingActionKind.JOB_APPLICATION,
            JobApplicationPayload(job_id=job_id, guard_id=guard_id, data=application_data or {}),
        )

    async def track_time(
        self,
        job_id: str,
        guard_id: str,
        action: Union[TimeTrackingAction, str],
        timestamp: Optional[float] = None,
        location: Optional[Union[GeoLocation, Dict[str, Any]]] = None,
    ) -> Tuple[str, bool]:
        """Clock in or out of a shift."""
        if isinstance(location, dict):
            location = GeoLocation.from_dict(location)
        return await self.submit_action(
            PendingActionKind.TIME_TRACKING,
            TimeTrackingPayload(
                job_id=job_id,
                guard_id=guard_id,
                action=TimeTrackingAction(action),
                timestamp=self.cache.now() if timestamp is None else timestamp,
                location=location,
            ),
        )

    async def drain(self) -> DrainResult:
        self._ensure_open("drain")
        return await self.synchronizer.drain()

    @property
    def pending_count(self) -> int:
        if self._closed:
            return 0
        return safe_execute(self.queue.count, default=0, error_message="Could not count pending actions")

    def pending_actions(self) -> List[PendingAction]:
        self._ensure_open("pending_actions")
        return self.queue.peek_all()

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    def last_sync(self, category: Optional[CategoryLike] = None):
        """datetime of the last successful sync, or None."""
        self._ensure_open("last_sync")
        return self.synchronizer.last_sync(category)

    def status_report(self) -> Dict[str, Any]:
        """Connection, sync and cache summary."""
        if self._closed:
            return {"closed": True}

        stats = safe_execute(self.cache.stats, default=None, error_message="Could not read cache stats")
        return {
            "closed": False,
            "started": self._started,
            "online": self.is_online,
            "connection": self.connection.get_status_display() if self.connection else None,
            "sync": self.synchronizer.status(),
            "cache": {
                "total_items": stats.total_items,
                "fresh_items": stats.fresh_items,
                "stale_items": stats.stale_items,
                "total_bytes": stats.total_bytes,
                "by_priority": stats.by_priority,
            } if stats else None,
            "topics": [vars(t) for t in self.broadcaster.stats()],
        }

    def cache_report(self) -> pd.DataFrame:
        """One row per cached key with age and freshness."""
        self._ensure_open("cache_report")
        frame = self.store.to_dataframe()
        if frame.empty:
            return frame

        now = pd.to_datetime(self.cache.now(), unit="s")
        frame["age_seconds"] = (now - frame["written_at"]).dt.total_seconds()
        frame["is_fresh"] = frame["age_seconds"] < frame["ttl"]
        return frame


def category_specs(config: EngineConfig) -> List[CategorySpec]:
    """CategorySpec per enabled category in ``config``."""
    return [
        CategorySpec.create(
            name,
            ttl=category.ttl,
            interval=category.interval,
            priority=category.priority,
            scopes=category.scopes,
            key_prefix=category.key_prefix,
            max_items=category.max_items,
        )
        for name, category in config.enabled_categories().items()
    ]


def create_engine(
    config: Optional[EngineConfig] = None,
    remote: Optional[RemoteDataSource] = None,
    notifications: Optional[ChangeNotificationSource] = None,
    connection: Optional[ConnectionManager] = None,
    probe: Optional[ProbeFn] = None,
    equality_overrides: Optional[Dict[str, EqualityFn]] = None,
    clock: Callable[[], float] = time.time,
    configure_logging: bool = False,
) -> OfflineEngine:
    """
    Build an OfflineEngine from configuration.

    Args:
        config: Engine configuration (``load_config()`` when None)
        remote: Remote data source (required)
        notifications: Optional change notification source
        connection: Pre-built connection manager; one is created from the
            config when ``monitor_connectivity`` is set
        probe: Custom connectivity probe for the created connection manager
        equality_overrides: Per-topic dedup equality functions
        clock: Time source (epoch seconds)
        configure_logging: Apply the config's log level and file settings

    Returns:
        An initialized, not yet started OfflineEngine
    """
    if remote is None:
        raise ValueError("create_engine requires a remote data source")

    config = config or load_config()
    if configure_logging:
        setup_logging(config.log_level, log_to_file=config.log_to_file)

    store = LocalStore(config.db_path)
    store.initialize()

    cache = CacheEntryManager(
        store,
        sweep_multiplier=config.sweep_multiplier,
        sweep_probability=config.sweep_probability,
        max_entries=config.max_cache_entries,
        default_ttl=config.default_ttl,
        clock=clock,
    )
    queue = PendingActionQueue(store, max_attempts=config.max_attempts, clock=clock)
    broadcaster = LiveUpdateBroadcaster(equality_overrides)

    if connection is None and (config.monitor_connectivity or probe is not None):
        connection = ConnectionManager(
            hosts=config.connectivity_hosts,
            timeout=config.connectivity_timeout,
            interval_online=config.check_interval_online,
            interval_offline=config.check_interval_offline,
            probe=probe,
        )

    synchronizer = Synchronizer(
        store,
        cache,
        queue,
        broadcaster,
        remote,
        notifications=notifications,
        connection=connection,
        drain_interval=config.drain_interval,
        clock=clock,
    )
    for spec in category_specs(config):
        synchronizer.register(spec)

    return OfflineEngine(store, cache, queue, broadcaster, synchronizer, connection, config)
