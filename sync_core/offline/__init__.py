# =============================================================================
# sync_core/offline/__init__.py
# Offline-First Caching and Synchronization Engine
# =============================================================================
"""
Offline-First Engine Module

Keeps a field worker's app usable without connectivity: cached categories
are served instantly (even when stale), user mutations are queued durably
and replayed FIFO when the network returns, and live update streams skip
values that did not change.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                     OFFLINE-FIRST ENGINE                         │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                    OfflineEngine                          │  │
│   │            (Single API - apps use this only)              │  │
│   └──────────────────────────────────────────────────────────┘  │
│                            │                                     │
│              ┌─────────────┴─────────────┐                      │
│              ▼                           ▼                      │
│   ┌──────────────────┐        ┌──────────────────┐             │
│   │   Synchronizer   │───────►│   Broadcaster    │             │
│   │ (refresh/drain)  │publish │ (dedup topics)   │             │
│   └──────────────────┘        └──────────────────┘             │
│      │        │       ▲                                          │
│      ▼        ▼       │ restored                                 │
│ ┌────────┐ ┌────────┐ ┌──────────────────┐                      │
│ │ Cache  │ │Pending │ │  ConnectionMgr   │                      │
│ │Manager │ │ Queue  │ │ (Online/Offline) │                      │
│ └────────┘ └────────┘ └──────────────────┘                      │
│      │        │                                                  │
│      ▼        ▼                                                  │
│   ┌──────────────────┐        ┌──────────────────┐             │
│   │   LocalStore     │        │ RemoteDataSource │             │
│   │    (SQLite)      │        │   (injected)     │             │
│   └──────────────────┘        └──────────────────┘             │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from sync_core.offline import create_engine

engine = create_engine(remote=api)
await engine.start()

hit = await engine.get("jobs")            # cached, stale or fetched
updates = engine.subscribe("dashboard")   # async iterator of changes
await engine.track_time("S1", "guard-7", "clock_in")

print(engine.pending_count)               # queued mutations
await engine.shutdown()
"""

from sync_core.offline.models import (
    Category,
    CachePriority,
    CacheEntry,
    CacheRead,
    CacheStats,
    PendingAction,
    PendingActionKind,
    TimeTrackingAction,
    GeoLocation,
    JobApplicationPayload,
    TimeTrackingPayload,
    GenericPayload,
    cache_key_for,
)

from sync_core.offline.local_store import LocalStore

from sync_core.offline.cache_manager import CacheEntryManager

from sync_core.offline.pending_queue import PendingActionQueue

from sync_core.offline.broadcaster import (
    LiveUpdateBroadcaster,
    Subscription,
)

from sync_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
)

from sync_core.offline.remote import (
    RemoteDataSource,
    ChangeNotificationSource,
)

from sync_core.offline.synchronizer import (
    Synchronizer,
    CategorySpec,
    DrainResult,
    DrainState,
    RefreshState,
)

from sync_core.offline.engine import (
    OfflineEngine,
    create_engine,
)

__all__ = [
    # Data model
    "Category",
    "CachePriority",
    "CacheEntry",
    "CacheRead",
    "CacheStats",
    "PendingAction",
    "PendingActionKind",
    "TimeTrackingAction",
    "GeoLocation",
    "JobApplicationPayload",
    "TimeTrackingPayload",
    "GenericPayload",
    "cache_key_for",
    # Storage
    "LocalStore",
    "CacheEntryManager",
    "PendingActionQueue",
    # Live updates
    "LiveUpdateBroadcaster",
    "Subscription",
    # Connectivity
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    # Remote contracts
    "RemoteDataSource",
    "ChangeNotificationSource",
    # Synchronization
    "Synchronizer",
    "CategorySpec",
    "DrainResult",
    "DrainState",
    "RefreshState",
    # Engine (Main API)
    "OfflineEngine",
    "create_engine",
]
