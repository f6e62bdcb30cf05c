# =============================================================================
# sync_core/errors/__init__.py
# Centralized Error Handling for the Offline Sync Engine
# =============================================================================

from .exceptions import (
    SyncCoreError,
    LocalStoreError,
    QueueDurabilityError,
    PayloadDecodeError,
    RemoteSourceError,
    UnknownCategoryError,
    EngineClosedError,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    safe_execute,
    ErrorContext,
    error_boundary,
)

__all__ = [
    # Exceptions
    "SyncCoreError",
    "LocalStoreError",
    "QueueDurabilityError",
    "PayloadDecodeError",
    "RemoteSourceError",
    "UnknownCategoryError",
    "EngineClosedError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "safe_execute",
    "ErrorContext",
    "error_boundary",
]
