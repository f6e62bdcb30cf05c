# =============================================================================
# sync_core/offline/cache_manager.py
# TTL Cache Manager on top of the Local Store
# =============================================================================
"""
CacheEntryManager - TTL policy, priority tagging and expiration sweeping for
records kept in the LocalStore.

Features:
- Fresh/stale classification (stale entries stay readable)
- Force-stale reads via ``ttl_override=0``
- Probabilistic expiration sweep on writes
- Priority-aware eviction when ``max_entries`` is exceeded
- Decode failures evict the entry instead of failing every read
"""

from __future__ import annotations
import random
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from sync_core.errors import LocalStoreError, PayloadDecodeError
from sync_core.offline.codec import decode_value, encode_value
from sync_core.offline.local_store import LocalStore, StoredRecord
from sync_core.offline.models import CacheEntry, CachePriority, CacheRead, CacheStats

logger = logging.getLogger(__name__)

Duration = Union[timedelta, float, int]


def to_seconds(value: Duration) -> float:
    """Accept timedelta or a number of seconds."""
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class CacheEntryManager:
    """
    Wraps the LocalStore with TTL semantics.

    Usage:
        cache = CacheEntryManager(store)
        cache.write("dashboard_data:g1", data, ttl=timedelta(minutes=10))
        hit = cache.read("dashboard_data:g1")
        if hit and hit.is_fresh:
            ...
    """

    DEFAULT_TTL = timedelta(hours=24)
    SWEEP_MULTIPLIER = 4.0      # Entries older than ttl * K are deleted
    SWEEP_PROBABILITY = 0.1     # Fraction of writes that trigger a sweep
    MAX_ENTRIES = 500
    EVICTION_TARGET = 0.8       # Evict down to 80% of max_entries

    def __init__(
        self,
        store: LocalStore,
        sweep_multiplier: float = SWEEP_MULTIPLIER,
        sweep_probability: float = SWEEP_PROBABILITY,
        max_entries: Optional[int] = MAX_ENTRIES,
        default_ttl: Duration = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        if sweep_multiplier < 1:
            raise ValueError("sweep_multiplier must be >= 1")
        if not 0.0 <= sweep_probability <= 1.0:
            raise ValueError("sweep_probability must be within [0, 1]")

        self.store = store
        self.sweep_multiplier = sweep_multiplier
        self.sweep_probability = sweep_probability
        self.max_entries = max_entries
        self.default_ttl = to_seconds(default_ttl)
        self._clock = clock
        self._rng = rng or random.Random()

    def now(self) -> float:
        return self._clock()

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def read(self, key: str, ttl_override: Optional[Duration] = None) -> Optional[CacheRead]:
        """
        Look up ``key`` without touching the network.

        Args:
            key: Cache key
            ttl_override: TTL to judge freshness with; 0 means always stale

        Returns:
            CacheRead flagged fresh or stale, or None on miss. Local store
            failures and undecodable payloads are reported as a miss.
        """
        try:
            record = self.store.get(key)
        except LocalStoreError as e:
            logger.warning(f"Cache read failed for '{key}', treating as miss: {e}")
            return None

        if record is None:
            return None

        try:
            value = decode_value(record.payload)
        except PayloadDecodeError as e:
            logger.warning(f"Evicting undecodable cache entry '{key}': {e}")
            self._safe_delete(key)
            return None

        entry = self._to_entry(record)
        now = self.now()
        ttl = None if ttl_override is None else to_seconds(ttl_override)
        return CacheRead(
            key=key,
            value=value,
            is_fresh=entry.is_fresh(now, ttl),
            written_at=entry.written_at,
            age=entry.age(now),
        )

    def write(
        self,
        key: str,
        value: Any,
        ttl: Optional[Duration] = None,
        priority: CachePriority = CachePriority.NORMAL,
    ) -> CacheEntry:
        """
        Store ``value`` stamped with the current time.

        Raises:
            LocalStoreError: if the write could not be persisted
        """
        ttl_seconds = self.default_ttl if ttl is None else to_seconds(ttl)
        payload = encode_value(value)
        entry = CacheEntry(
            key=key,
            payload=payload,
            written_at=self.now(),
            ttl=ttl_seconds,
            priority=CachePriority.parse(priority),
        )

        self.store.put(entry.key, entry.payload, entry.written_at, entry.ttl, entry.priority)
        logger.debug(f"Cached '{key}' ({entry.size_bytes} bytes, ttl {ttl_seconds:.0f}s)")

        if self.sweep_probability > 0 and self._rng.random() < self.sweep_probability:
            self._maintenance(keep=key)
        elif self.max_entries is not None:
            self._maintenance(sweep=False, keep=key)

        return entry

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Raw entry metadata, or None."""
        try:
            record = self.store.get(key)
        except LocalStoreError:
            return None
        return self._to_entry(record) if record else None

    def invalidate(self, key: str) -> bool:
        """Force the next read of ``key`` to miss."""
        removed = self.store.delete(key)
        if removed:
            logger.debug(f"Invalidated cache entry '{key}'")
        return removed

    def clear_all(self, prefix: Optional[str] = None) -> int:
        """Delete all entries, or only those under ``prefix``."""
        keys = self.store.list_keys(prefix or "")
        removed = self.store.delete_many(keys)
        logger.info(f"Cleared {removed} cache entries (prefix: {prefix or '*'})")
        return removed

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def sweep_expired(self) -> int:
        """
        Remove entries far past their TTL.

        An entry is swept when ``now - written_at > ttl * sweep_multiplier``;
        stale-but-usable entries younger than that are kept.

        Returns:
            Number of entries removed
        """
        now = self.now()
        doomed: List[str] = []

        for record in self.store.list_records():
            entry = self._to_entry(record)
            if entry.is_sweepable(now, self.sweep_multiplier):
                doomed.append(entry.key)

        removed = self.store.delete_many(doomed)
        if removed:
            logger.info(f"Swept {removed} expired cache entries")
        return removed

    def evict_to_capacity(self, keep: Optional[str] = None) -> int:
        """
        Evict entries when more than ``max_entries`` are stored.

        Lowest priority goes first, then the oldest write. ``keep`` names
        the entry that was just written; it is never evicted.
        """
        if self.max_entries is None or self.store.count() <= self.max_entries:
            return 0

        records = self.store.list_records()
        target = int(self.max_entries * self.EVICTION_TARGET)
        candidates = [r for r in records if r.key != keep]
        ordered = sorted(candidates, key=lambda r: (int(r.priority), r.written_at))
        doomed = [r.key for r in ordered[: len(records) - target]]

        removed = self.store.delete_many(doomed)
        logger.info(f"Evicted {removed} cache entries to stay under {self.max_entries}")
        return removed

    def _maintenance(self, sweep: bool = True, keep: Optional[str] = None) -> None:
        # Maintenance never fails the write that triggered it
        try:
            if sweep:
                self.sweep_expired()
            self.evict_to_capacity(keep=keep)
        except LocalStoreError as e:
            logger.warning(f"Cache maintenance skipped: {e}")

    def stats(self) -> CacheStats:
        """Get cache statistics."""
        now = self.now()
        fresh = 0
        total_bytes = 0
        by_priority: Dict[str, int] = {p.name.lower(): 0 for p in CachePriority}

        records = self.store.list_records()
        for record in records:
            entry = self._to_entry(record)
            total_bytes += entry.size_bytes
            by_priority[entry.priority.name.lower()] += 1
            if entry.is_fresh(now):
                fresh += 1

        return CacheStats(
            total_items=len(records),
            fresh_items=fresh,
            stale_items=len(records) - fresh,
            total_bytes=total_bytes,
            by_priority=by_priority,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _to_entry(self, record: StoredRecord) -> CacheEntry:
        return CacheEntry(
            key=record.key,
            payload=record.payload,
            written_at=record.written_at,
            ttl=self.default_ttl if record.ttl is None else record.ttl,
            priority=record.priority,
        )

    def _safe_delete(self, key: str) -> None:
        try:
            self.store.delete(key)
        except LocalStoreError as e:
            logger.warning(f"Could not delete cache entry '{key}': {e}")
