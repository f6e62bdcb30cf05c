# =============================================================================
# sync_core/offline/models.py
# Data Model for Cached Records and Pending Actions
# =============================================================================
"""
Value types shared by the offline components.

CacheEntry freshness is a pure function of ``written_at`` and ``ttl``.
Pending action payloads are a tagged union keyed by ``PendingActionKind``;
kinds outside the enum travel as ``GenericPayload``.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union


class Category(str, Enum):
    """Data categories kept in cache and broadcast on their own topic."""
    JOBS = "jobs"
    DASHBOARD = "dashboard"
    PAYMENT_STATUS = "payment_status"
    PROFILE_COMPLETION = "profile_completion"
    CERTIFICATE_ALERTS = "certificate_alerts"


# Storage prefix per category (persisted layout)
CATEGORY_KEY_PREFIX: Dict[str, str] = {
    Category.JOBS.value: "offline_jobs_",
    Category.DASHBOARD.value: "dashboard_data",
    Category.PAYMENT_STATUS.value: "payment_status",
    Category.PROFILE_COMPLETION.value: "profile_completion",
    Category.CERTIFICATE_ALERTS.value: "certificate_alerts",
}


def category_name(category: Union[Category, str]) -> str:
    """Normalize a Category or plain string to its identifier."""
    return category.value if isinstance(category, Category) else str(category)


def cache_key_for(
    category: Union[Category, str],
    scope: Optional[str] = None,
    prefix: Optional[str] = None,
) -> str:
    """
    Build the cache key for a category and optional scope.

    Jobs use the ``offline_jobs_<scope>`` form (``offline_jobs_all`` when
    unscoped); every other category uses ``<prefix>`` or ``<prefix>:<scope>``.
    """
    name = category_name(category)
    if prefix is None:
        prefix = CATEGORY_KEY_PREFIX.get(name, name)
    if prefix.endswith("_"):
        return f"{prefix}{scope or 'all'}"
    return f"{prefix}:{scope}" if scope else prefix


class CachePriority(IntEnum):
    """Advisory priority; lower values are evicted first."""
    LOW = 0
    NORMAL = 1
    HIGH = 2

    @classmethod
    def parse(cls, value: Union[CachePriority, int, str]) -> CachePriority:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls[value.strip().upper()]
        return cls(int(value))


@dataclass(frozen=True)
class CacheEntry:
    """A cached record as persisted by the local store."""
    key: str
    payload: str
    written_at: float
    ttl: float
    priority: CachePriority = CachePriority.NORMAL

    def age(self, now: float) -> float:
        return now - self.written_at

    def is_fresh(self, now: float, ttl: Optional[float] = None) -> bool:
        """Fresh iff ``now - written_at < ttl``."""
        effective = self.ttl if ttl is None else ttl
        return self.age(now) < effective

    def is_sweepable(self, now: float, multiplier: float) -> bool:
        """Far past TTL: ``now - written_at > ttl * multiplier``."""
        return self.age(now) > self.ttl * multiplier

    @property
    def size_bytes(self) -> int:
        return len(self.payload.encode("utf-8"))


@dataclass(frozen=True)
class CacheRead:
    """Result of a cache lookup."""
    key: str
    value: Any
    is_fresh: bool
    written_at: float
    age: float


@dataclass(frozen=True)
class CacheStats:
    """Cache statistics snapshot."""
    total_items: int = 0
    fresh_items: int = 0
    stale_items: int = 0
    total_bytes: int = 0
    by_priority: Dict[str, int] = field(default_factory=dict)


# =============================================================================
# PENDING ACTIONS
# =============================================================================

class PendingActionKind(str, Enum):
    """Known mutation kinds. The queue also accepts other kind strings."""
    JOB_APPLICATION = "job_application"
    TIME_TRACKING = "time_tracking"


class TimeTrackingAction(str, Enum):
    CLOCK_IN = "clock_in"
    CLOCK_OUT = "clock_out"


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float
    accuracy: float = 0.0
    is_mocked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "is_mocked": self.is_mocked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GeoLocation:
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy=float(data.get("accuracy", 0.0)),
            is_mocked=bool(data.get("is_mocked", False)),
        )


@dataclass(frozen=True)
class JobApplicationPayload:
    job_id: str
    guard_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "guard_id": self.guard_id, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobApplicationPayload:
        return cls(
            job_id=str(data["job_id"]),
            guard_id=str(data["guard_id"]),
            data=dict(data.get("data") or {}),
        )


@dataclass(frozen=True)
class TimeTrackingPayload:
    job_id: str
    guard_id: str
    action: TimeTrackingAction
    timestamp: float
    location: Optional[GeoLocation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "guard_id": self.guard_id,
            "action": self.action.value,
            "timestamp": self.timestamp,
            "location": self.location.to_dict() if self.location else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TimeTrackingPayload:
        location = data.get("location")
        return cls(
            job_id=str(data["job_id"]),
            guard_id=str(data["guard_id"]),
            action=TimeTrackingAction(data["action"]),
            timestamp=float(data["timestamp"]),
            location=GeoLocation.from_dict(location) if location else None,
        )


@dataclass(frozen=True)
class GenericPayload:
    """Payload for kinds the engine has no explicit schema for."""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GenericPayload:
        return cls(data=dict(data))


ActionPayload = Union[JobApplicationPayload, TimeTrackingPayload, GenericPayload]

# Schema registry for the tagged union
PAYLOAD_TYPES = {
    PendingActionKind.JOB_APPLICATION.value: JobApplicationPayload,
    PendingActionKind.TIME_TRACKING.value: TimeTrackingPayload,
}


def kind_name(kind: Union[PendingActionKind, str]) -> str:
    return kind.value if isinstance(kind, PendingActionKind) else str(kind)


@dataclass(frozen=True)
class PendingAction:
    """A user mutation waiting for confirmed remote submission."""
    id: str
    kind: str
    payload: ActionPayload
    created_at: float

    @property
    def is_known_kind(self) -> bool:
        return self.kind in PAYLOAD_TYPES
