# =============================================================================
# sync_core/errors/exceptions.py
# Custom Exception Hierarchy for the Offline Sync Engine
# =============================================================================

from typing import Optional, Dict, Any


class SyncCoreError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "STORE_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SC_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# PERSISTENCE EXCEPTIONS
# =============================================================================

class LocalStoreError(SyncCoreError):
    """Raised when the local SQLite store cannot read or write"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            **kwargs,
        )


class QueueDurabilityError(SyncCoreError):
    """Raised when a pending action could not be durably queued"""

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if kind:
            details["kind"] = kind

        super().__init__(
            message=message,
            code="QUEUE_001",
            details=details,
            **kwargs,
        )


class PayloadDecodeError(SyncCoreError):
    """Raised when a stored payload is corrupt or does not match its schema"""

    def __init__(
        self,
        message: str,
        tag: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if tag:
            details["tag"] = tag

        super().__init__(
            message=message,
            code="CODEC_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# SYNCHRONIZATION EXCEPTIONS
# =============================================================================

class RemoteSourceError(SyncCoreError):
    """Raised when the remote data source fails during a foreground read"""

    def __init__(
        self,
        message: str,
        category: Optional[str] = None,
        scope: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if category:
            details["category"] = category
        if scope:
            details["scope"] = scope

        super().__init__(
            message=message,
            code="REMOTE_001",
            details=details,
            **kwargs,
        )


class UnknownCategoryError(SyncCoreError):
    """Raised when an operation names a category that was never registered"""

    def __init__(self, category: str, **kwargs):
        super().__init__(
            message=f"Category '{category}' is not registered",
            code="SYNC_001",
            details={"category": category},
            **kwargs,
        )


class EngineClosedError(SyncCoreError):
    """Raised when a foreground operation is attempted after shutdown"""

    def __init__(self, operation: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation

        super().__init__(
            message="Engine has been shut down",
            code="ENGINE_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(SyncCoreError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
