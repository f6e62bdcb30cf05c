# =============================================================================
# sync_core/offline/synchronizer.py
# Periodic Refresh and Pending Action Drain
# =============================================================================
"""
Synchronizer - keeps cached categories fresh and drains queued mutations.

Features:
- One asyncio task per (category, scope) refresh timer
- Cache-first refresh: a fresh entry never triggers a remote fetch
- Stale-serves-then-refreshes reads
- Single-flight refresh per cache key and single-flight drain
- FIFO drain with partial-failure tolerance
- Drain on "connectivity restored" and on its own timer
- Force refresh on remote change notifications
- Background failures are logged, never raised
"""

from __future__ import annotations
import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
import logging

import pandas as pd

from sync_core.errors import (
    LocalStoreError,
    PayloadDecodeError,
    RemoteSourceError,
    UnknownCategoryError,
    error_boundary,
    safe_execute,
)
from sync_core.logging import LogContext
from sync_core.offline.broadcaster import LiveUpdateBroadcaster
from sync_core.offline.cache_manager import CacheEntryManager, Duration, to_seconds
from sync_core.offline.codec import decode_value
from sync_core.offline.connection_manager import ConnectionManager, ConnectionState
from sync_core.offline.local_store import LocalStore
from sync_core.offline.models import (
    ActionPayload,
    CachePriority,
    CacheRead,
    Category,
    PendingActionKind,
    cache_key_for,
    category_name,
)
from sync_core.offline.pending_queue import PendingActionQueue
from sync_core.offline.remote import ChangeNotificationSource, RemoteDataSource

logger = logging.getLogger(__name__)

LAST_SYNC_SETTING = "last_job_sync"
CATEGORY_SYNC_SETTING = "last_sync:{category}"


class RefreshState(Enum):
    """Refresh state per cache key."""
    IDLE = "idle"
    REFRESHING = "refreshing"
    REFRESH_FAILED = "refresh_failed"


class DrainState(Enum):
    """Drain cycle state."""
    IDLE = "idle"
    DRAINING = "draining"


@dataclass(frozen=True)
class CategorySpec:
    """How one category is cached and refreshed."""
    category: str
    ttl: float
    interval: float
    priority: CachePriority = CachePriority.NORMAL
    scopes: Tuple[Optional[str], ...] = (None,)
    key_prefix: Optional[str] = None
    max_items: Optional[int] = None

    @classmethod
    def create(
        cls,
        category: Union[Category, str],
        ttl: Duration,
        interval: Duration,
        priority: Union[CachePriority, int, str] = CachePriority.NORMAL,
        scopes: Optional[Iterable[Optional[str]]] = None,
        key_prefix: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> CategorySpec:
        ttl_seconds = to_seconds(ttl)
        interval_seconds = to_seconds(interval)
        if ttl_seconds < 0:
            raise ValueError("ttl must not be negative")
        if interval_seconds <= 0:
            raise ValueError("interval must be positive")
        if max_items is not None and max_items < 1:
            raise ValueError("max_items must be positive")
        return cls(
            category=category_name(category),
            ttl=ttl_seconds,
            interval=interval_seconds,
            priority=CachePriority.parse(priority),
            scopes=tuple(scopes) if scopes else (None,),
            key_prefix=key_prefix,
            max_items=max_items,
        )

    def key_for(self, scope: Optional[str] = None) -> str:
        return cache_key_for(self.category, scope, prefix=self.key_prefix)

    def cap(self, value: Any) -> Any:
        """Keep the first ``max_items`` rows of a listing; other values pass through."""
        if self.max_items is None:
            return value
        if isinstance(value, pd.DataFrame):
            return value.head(self.max_items)
        if isinstance(value, (list, tuple)) and len(value) > self.max_items:
            logger.debug(f"Capping {self.category} at {self.max_items} of {len(value)} items")
            return value[: self.max_items]
        return value


@dataclass
class DrainResult:
    """Outcome of one drain cycle."""
    attempted: int = 0
    submitted: int = 0
    failed: int = 0
    remaining: int = 0
    skipped: bool = False


@dataclass
class SyncState:
    """Running totals for diagnostics."""
    refreshes: int = 0
    fetches: int = 0
    failed_refreshes: int = 0
    drains: int = 0
    submitted: int = 0
    failed_submissions: int = 0
    last_drain: Optional[datetime] = None
    last_drain_result: Optional[DrainResult] = None


@dataclass
class _KeyStatus:
    state: RefreshState = RefreshState.IDLE
    last_success: Optional[float] = None
    last_error: Optional[str] = None


class Synchronizer:
    """
    Orchestrates refresh and drain cycles for registered categories.

    Usage:
        sync = Synchronizer(store, cache, queue, broadcaster, remote)
        sync.register(CategorySpec.create("dashboard", ttl=600, interval=600))
        sync.start()
        ...
        await sync.stop()
    """

    DRAIN_INTERVAL = 300            # Seconds between drain cycles
    WATCH_RETRY_DELAY = 30          # Seconds before re-opening a closed notification stream

    def __init__(
        self,
        store: LocalStore,
        cache: CacheEntryManager,
        queue: PendingActionQueue,
        broadcaster: LiveUpdateBroadcaster,
        remote: RemoteDataSource,
        notifications: Optional[ChangeNotificationSource] = None,
        connection: Optional[ConnectionManager] = None,
        drain_interval: Duration = DRAIN_INTERVAL,
        watch_retry_delay: Duration = WATCH_RETRY_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cache = cache
        self.queue = queue
        self.broadcaster = broadcaster
        self.remote = remote
        self.notifications = notifications
        self.connection = connection
        self.drain_interval = to_seconds(drain_interval)
        self.watch_retry_delay = to_seconds(watch_retry_delay)
        self._clock = clock

        self._specs: Dict[str, CategorySpec] = {}
        self._keys: Dict[str, _KeyStatus] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._submitting: Set[str] = set()
        self._drain_state = DrainState.IDLE
        self._state = SyncState()

        self._tasks: Set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, spec: CategorySpec) -> None:
        """Register (or replace) a category."""
        self._specs[spec.category] = spec
        for scope in spec.scopes:
            self._keys.setdefault(spec.key_for(scope), _KeyStatus())
        logger.debug(
            f"Registered category '{spec.category}' "
            f"(ttl {spec.ttl:.0f}s, every {spec.interval:.0f}s, scopes {list(spec.scopes)})"
        )

    def spec_for(self, category: Union[Category, str]) -> CategorySpec:
        name = category_name(category)
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownCategoryError(name)
        return spec

    @property
    def categories(self) -> List[str]:
        return list(self._specs)

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def drain_state(self) -> DrainState:
        return self._drain_state

    @property
    def is_running(self) -> bool:
        return self._running

    def refresh_state(self, category: Union[Category, str], scope: Optional[str] = None) -> RefreshState:
        key = self.spec_for(category).key_for(scope)
        return self._keys.get(key, _KeyStatus()).state

    # =========================================================================
    # REFRESH
    # =========================================================================

    async def refresh(
        self,
        category: Union[Category, str],
        scope: Optional[str] = None,
        force: bool = False,
    ) -> Optional[Any]:
        """
        Refresh one cache key.

        Unless forced, a fresh cached value is published and returned without
        contacting the remote source. Remote failures are logged, leave the
        cache untouched, and return None.

        Raises:
            UnknownCategoryError: category was never registered
        """
        spec = self.spec_for(category)
        key = spec.key_for(scope)
        self._state.refreshes += 1

        if not force:
            hit = self.cache.read(key, ttl_override=spec.ttl)
            if hit is not None and hit.is_fresh:
                logger.debug(f"'{key}' is fresh, skipping remote fetch")
                self.broadcaster.publish(spec.category, hit.value)
                return hit.value

        try:
            return await self._single_flight(spec, scope)
        except RemoteSourceError:
            return None

    async def get(
        self,
        category: Union[Category, str],
        scope: Optional[str] = None,
    ) -> Optional[CacheRead]:
        """
        Read a category, serving stale data while a refresh runs.

        Fresh hits return immediately. Stale hits return immediately and
        schedule a background refresh. Misses fetch in the foreground.

        Raises:
            UnknownCategoryError: category was never registered
            RemoteSourceError: a miss could not be fetched
        """
        spec = self.spec_for(category)
        key = spec.key_for(scope)

        hit = self.cache.read(key, ttl_override=spec.ttl)
        if hit is not None:
            if not hit.is_fresh:
                logger.debug(f"Serving stale '{key}' ({hit.age:.0f}s old), refreshing in background")
                self._schedule_refresh(spec, scope)
            return hit

        value = await self._single_flight(spec, scope)
        return CacheRead(key=key, value=value, is_fresh=True, written_at=self._clock(), age=0.0)

    async def _single_flight(self, spec: CategorySpec, scope: Optional[str]) -> Any:
        key = spec.key_for(scope)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._fetch_and_store(spec, scope, key),
                name=f"fetch:{key}",
            )
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_inflight(k, t))
        else:
            logger.debug(f"Joining in-flight refresh of '{key}'")
        return await asyncio.shield(task)

    def _forget_inflight(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the outcome as retrieved even if every awaiter went away
            task.exception()

    async def _fetch_and_store(self, spec: CategorySpec, scope: Optional[str], key: str) -> Any:
        status = self._keys.setdefault(key, _KeyStatus())
        status.state = RefreshState.REFRESHING
        self._state.fetches += 1

        try:
            value = await self.remote.fetch(spec.category, scope)
        except asyncio.CancelledError:
            status.state = RefreshState.IDLE
            raise
        except Exception as e:
            status.state = RefreshState.REFRESH_FAILED
            status.last_error = str(e)
            self._state.failed_refreshes += 1
            logger.warning(f"Refresh of '{key}' failed, keeping cached data: {e}")
            raise RemoteSourceError(
                f"Fetching {spec.category} failed: {e}",
                category=spec.category,
                scope=scope,
            ) from e

        value = spec.cap(value)
        try:
            entry = self.cache.write(key, value, ttl=spec.ttl, priority=spec.priority)
            # Publish the stored shape so later cache hits compare equal
            value = decode_value(entry.payload)
        except (LocalStoreError, PayloadDecodeError, TypeError, ValueError) as e:
            logger.error(f"Could not cache '{key}', publishing uncached value: {e}")

        self.broadcaster.publish(spec.category, value)

        now = self._clock()
        status.state = RefreshState.IDLE
        status.last_success = now
        status.last_error = None
        self._record_sync(now, spec.category)
        logger.debug(f"Refreshed '{key}'")
        return value

    def _schedule_refresh(self, spec: CategorySpec, scope: Optional[str]) -> None:
        if spec.key_for(scope) in self._inflight:
            return
        self._spawn(self._background_refresh(spec.category, scope), f"stale:{spec.key_for(scope)}")

    @error_boundary(error_message="Background refresh failed")
    async def _background_refresh(self, category: str, scope: Optional[str], force: bool = False) -> None:
        await self.refresh(category, scope, force=force)

    async def refresh_all(self, force: bool = False) -> Dict[str, bool]:
        """Refresh every registered key; returns success per cache key."""
        results = {}
        for spec in list(self._specs.values()):
            for scope in spec.scopes:
                await self._background_refresh(spec.category, scope, force=force)
                results[spec.key_for(scope)] = (
                    self._keys[spec.key_for(scope)].state != RefreshState.REFRESH_FAILED
                )
        return results

    def _record_sync(self, now: float, category: str) -> None:
        try:
            self.store.set_setting(LAST_SYNC_SETTING, now)
            self.store.set_setting(CATEGORY_SYNC_SETTING.format(category=category), now)
        except LocalStoreError as e:
            logger.warning(f"Could not record last sync time: {e}")

    def last_sync(self, category: Optional[Union[Category, str]] = None) -> Optional[datetime]:
        """Time of the last successful sync, overall or for one category."""
        key = (
            LAST_SYNC_SETTING if category is None
            else CATEGORY_SYNC_SETTING.format(category=category_name(category))
        )
        value = safe_execute(self.store.get_setting, key, default=None,
                             error_message="Could not read last sync time")
        if value is None:
            return None
        try:
            return datetime.fromtimestamp(float(value))
        except (TypeError, ValueError):
            return None

    # =========================================================================
    # DRAIN
    # =========================================================================

    async def drain(self) -> DrainResult:
        """
        Submit every pending action in FIFO order.

        Successful submissions are removed; failures stay queued with their
        failure recorded and the cycle continues with the next action.
        A drain already in progress, an empty queue, or a known-offline
        connection makes this a no-op.
        """
        if self._drain_state is DrainState.DRAINING:
            logger.debug("Drain already in progress")
            return DrainResult(remaining=self.queue.count(), skipped=True)

        if self.queue.is_empty():
            return DrainResult(skipped=True)

        if self.connection is not None and not self.connection.is_online:
            remaining = self.queue.count()
            logger.debug(f"Offline, deferring {remaining} pending actions")
            return DrainResult(remaining=remaining, skipped=True)

        self._drain_state = DrainState.DRAINING
        result = DrainResult()
        try:
            with LogContext(logger, "Drain cycle"):
                for action in self.queue.peek_all():
                    if action.id in self._submitting:
                        continue
                    result.attempted += 1
                    if await self._submit(action):
                        result.submitted += 1
                    else:
                        result.failed += 1
                result.remaining = self.queue.count()
        finally:
            self._drain_state = DrainState.IDLE
            self._state.drains += 1
            self._state.submitted += result.submitted
            self._state.failed_submissions += result.failed
            self._state.last_drain = datetime.now()
            self._state.last_drain_result = result

        if result.submitted:
            self._record_sync(self._clock(), "pending_actions")
        logger.info(
            f"Drain complete: {result.submitted} submitted, "
            f"{result.failed} failed, {result.remaining} remaining"
        )
        return result

    async def _submit(self, action) -> bool:
        self._submitting.add(action.id)
        try:
            accepted = bool(await self.remote.submit(action))
            error = None if accepted else "rejected by remote source"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            accepted = False
            error = str(e)
        finally:
            self._submitting.discard(action.id)

        if accepted:
            self.queue.remove(action.id)
            logger.debug(f"Submitted {action.kind} action {action.id}")
        else:
            attempts = self.queue.record_failure(action.id, error)
            logger.warning(f"Submitting {action.kind} action {action.id} failed (attempt {attempts}): {error}")
        return accepted

    async def submit_now(
        self,
        kind: Union[PendingActionKind, str],
        payload: Union[ActionPayload, Dict[str, Any]],
    ) -> Tuple[str, bool]:
        """
        Queue an action durably, then try to submit it right away.

        When older actions are still queued the attempt runs as a drain so
        FIFO order holds.

        Returns:
            (action_id, submitted)

        Raises:
            QueueDurabilityError: the action could not be persisted
            PayloadDecodeError: payload does not match the kind's schema
        """
        action_id = self.queue.enqueue(kind, payload)

        if self.connection is not None and not self.connection.is_online:
            return action_id, False
        if self._drain_state is DrainState.DRAINING:
            return action_id, False

        try:
            if self.queue.count() > 1:
                await self.drain()
                return action_id, self.queue.get(action_id) is None

            action = self.queue.get(action_id)
            if action is None:
                return action_id, True
            return action_id, await self._submit(action)
        except LocalStoreError as e:
            logger.warning(f"Immediate submission of {action_id} skipped: {e}")
            return action_id, False

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def start(self) -> None:
        """Start the refresh, drain and notification tasks on the running loop."""
        if self._running:
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        for spec in self._specs.values():
            for scope in spec.scopes:
                self._spawn(self._refresh_loop(spec, scope), f"refresh:{spec.key_for(scope)}")
            if self.notifications is not None:
                self._spawn(self._watch_loop(spec), f"watch:{spec.category}")

        self._spawn(self._drain_loop(), "drain")

        if self.connection is not None:
            self.connection.register_callback(self._on_connection_change)

        logger.info(f"Synchronizer started ({len(self._tasks)} tasks)")

    async def stop(self) -> None:
        """Cancel every background task. Safe to call more than once."""
        if not self._running:
            return

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self.connection is not None:
            self.connection.unregister_callback(self._on_connection_change)

        tasks = list(self._tasks) + list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Synchronizer stopped")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _wait_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout``; True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _refresh_loop(self, spec: CategorySpec, scope: Optional[str]) -> None:
        while not self._stop_event.is_set():
            await self._background_refresh(spec.category, scope)
            if await self._wait_stop(spec.interval):
                break

    async def _drain_loop(self) -> None:
        while not self._stop_event.is_set():
            if await self._wait_stop(self.drain_interval):
                break
            await self._drain_tick()

    @error_boundary(error_message="Background drain failed")
    async def _drain_tick(self) -> Optional[DrainResult]:
        return await self.drain()

    async def _watch_loop(self, spec: CategorySpec) -> None:
        while not self._stop_event.is_set():
            try:
                async for _ in self.notifications.watch(spec.category):
                    logger.debug(f"Change notification for '{spec.category}'")
                    for scope in spec.scopes:
                        await self._background_refresh(spec.category, scope, force=True)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Change notification stream for '{spec.category}' failed: {e}")

            if await self._wait_stop(self.watch_retry_delay):
                break

    def _on_connection_change(self, state: ConnectionState) -> None:
        if not (state.restored and self._running):
            return
        logger.info("Connection restored, triggering drain")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._spawn(self._drain_tick(), "drain:reconnect")
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(lambda: self._spawn(self._drain_tick(), "drain:reconnect"))

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        """Snapshot of states, timestamps and totals."""
        categories = {}
        for spec in self._specs.values():
            keys = {}
            for scope in spec.scopes:
                key = spec.key_for(scope)
                key_status = self._keys.get(key, _KeyStatus())
                keys[key] = {
                    "state": key_status.state.value,
                    "last_success": (
                        datetime.fromtimestamp(key_status.last_success).isoformat()
                        if key_status.last_success else None
                    ),
                    "last_error": key_status.last_error,
                }
            categories[spec.category] = {
                "ttl": str(timedelta(seconds=spec.ttl)),
                "interval": str(timedelta(seconds=spec.interval)),
                "priority": spec.priority.name.lower(),
                "keys": keys,
            }

        last_sync = self.last_sync()
        totals = asdict(self._state)
        totals["last_drain"] = self._state.last_drain.isoformat() if self._state.last_drain else None

        return {
            "running": self._running,
            "drain_state": self._drain_state.value,
            "pending_actions": safe_execute(self.queue.count, default=None),
            "dead_letters": len(safe_execute(self.queue.dead_letters, default=[]) or []),
            "last_sync": last_sync.isoformat() if last_sync else None,
            "categories": categories,
            "totals": totals,
        }
