# =============================================================================
# sync_core/offline/remote.py
# Remote Data Source Contracts
# =============================================================================
"""
Contracts the engine expects from the injected network layer.

The engine never implements transport itself; an application passes an
object satisfying ``RemoteDataSource`` (and optionally
``ChangeNotificationSource``) to ``create_engine``.
"""

from __future__ import annotations
from typing import Any, AsyncIterator, Optional, Protocol, runtime_checkable

from sync_core.offline.models import PendingAction


@runtime_checkable
class RemoteDataSource(Protocol):
    """Fetches category data and accepts queued mutations."""

    async def fetch(self, category: str, scope: Optional[str]) -> Any:
        """Return the current remote value for ``category``/``scope``."""
        ...

    async def submit(self, action: PendingAction) -> bool:
        """Submit one pending action. Truthy means accepted."""
        ...


@runtime_checkable
class ChangeNotificationSource(Protocol):
    """Optional push channel announcing that remote data changed."""

    def watch(self, category: str) -> AsyncIterator[Any]:
        """Yield one item per change; the item content is ignored."""
        ...
