# =============================================================================
# sync_core/offline/equality.py
# Pluggable Equality Functions for Live Update Deduplication
# =============================================================================
"""
Equality functions used by the broadcaster to suppress redundant updates.

Cheap partial comparisons are deliberate: comparing a handful of fields that
drive what users see avoids re-rendering on every unchanged remote snapshot,
at the cost of missing a change in a field that is not compared.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, Optional, Union

import pandas as pd

from sync_core.offline.models import Category

EqualityFn = Callable[[Any, Any], bool]
Extractor = Union[str, Callable[[Any], Any]]

_MISSING = object()


def get_path(obj: Any, path: str) -> Any:
    """Resolve a dotted path through mappings and attributes."""
    current = obj
    for part in path.split("."):
        if current is None:
            return _MISSING
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return _MISSING
    return current


def deep_equal(a: Any, b: Any) -> bool:
    """Full structural equality. DataFrames compare with ``DataFrame.equals``."""
    if isinstance(a, pd.DataFrame) or isinstance(b, pd.DataFrame):
        return isinstance(a, pd.DataFrame) and isinstance(b, pd.DataFrame) and a.equals(b)
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False


def _extract(obj: Any, extractor: Extractor) -> Any:
    if callable(extractor):
        return extractor(obj)
    return get_path(obj, extractor)


def projection_equality(*extractors: Extractor) -> EqualityFn:
    """
    Equal when every projected field is equal.

    Extractors are dotted paths (``"earnings.formatted"``) or callables.
    """
    if not extractors:
        raise ValueError("projection_equality needs at least one extractor")

    def equal(a: Any, b: Any) -> bool:
        return all(deep_equal(_extract(a, e), _extract(b, e)) for e in extractors)

    return equal


def keyed_sequence_equality(*fields: str) -> EqualityFn:
    """
    Equal when two sequences carry the same items, compared on ``fields``.

    Useful for job listings where only identity and status matter.
    """
    def project(items: Any) -> Any:
        if items is None:
            return None
        if isinstance(items, dict):
            items = items.get("items", items.get("shifts", []))
        if not isinstance(items, Iterable) or isinstance(items, (str, bytes)):
            return _MISSING
        return [tuple(_present(get_path(item, f)) for f in fields) for item in items]

    def equal(a: Any, b: Any) -> bool:
        return project(a) == project(b)

    return equal


def _present(value: Any) -> Any:
    return None if value is _MISSING else value


def _count(path: str) -> Callable[[Any], Any]:
    def count(obj: Any) -> Any:
        value = get_path(obj, path)
        if value is _MISSING or value is None:
            return 0
        return len(value)
    count.__name__ = f"count_{path.replace('.', '_')}"
    return count


# Dashboard aggregate: formatted earnings string, number of shifts, temperature
dashboard_equality = projection_equality(
    "earnings.formatted",
    _count("shifts"),
    "weather.temperature",
)

jobs_equality = keyed_sequence_equality("id", "status")

payment_status_equality = projection_equality("status", "amount", "updated_at")


DEFAULT_EQUALITY: Dict[str, EqualityFn] = {
    Category.DASHBOARD.value: dashboard_equality,
    Category.JOBS.value: jobs_equality,
    Category.PAYMENT_STATUS.value: payment_status_equality,
}


def equality_for(topic: str, overrides: Optional[Dict[str, EqualityFn]] = None) -> EqualityFn:
    """Pick the equality function for a topic (override, default, or deep)."""
    if overrides and topic in overrides:
        return overrides[topic]
    return DEFAULT_EQUALITY.get(topic, deep_equal)
