# =============================================================================
# sync_core/errors/handlers.py
# Error Handling Utilities for the Offline Sync Engine
# =============================================================================

from __future__ import annotations
import asyncio
import functools
import inspect
import logging
import traceback
from typing import Optional, Callable, TypeVar, Any

from sync_core.logging import get_logger
from .exceptions import SyncCoreError

logger = get_logger(__name__)

T = TypeVar("T")


def handle_error(
    error: Exception,
    log_error: bool = True,
    user_message: Optional[str] = None,
    level: int = logging.ERROR,
) -> dict:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        user_message: Custom message (uses error message if None)
        level: Logging level for the record

    Returns:
        Dictionary describing the error, suitable for status reports
    """
    if isinstance(error, SyncCoreError):
        message = user_message or error.message
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        logger.log(
            level,
            f"[{code}] {message}",
            extra={"details": details},
            exc_info=level >= logging.ERROR,
        )

    return {
        "code": code,
        "message": message,
        "details": details,
        "recoverable": recoverable,
    }


def safe_execute(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    error_message: Optional[str] = None,
    reraise: bool = False,
    **kwargs,
) -> Optional[T]:
    """
    Execute a function with automatic error handling.

    Args:
        func: Function to execute
        *args: Positional arguments to pass to func
        default: Default value to return on error
        error_message: Custom error message to log
        reraise: Whether to reraise the exception after handling
        **kwargs: Keyword arguments to pass to func

    Returns:
        Function result or default value on error

    Usage:
        count = safe_execute(queue.count, default=0)
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        handle_error(e, user_message=error_message)
        if reraise:
            raise
        return default


class ErrorContext:
    """
    Context manager for error handling with automatic logging.

    Usage:
        with ErrorContext("Sweeping expired cache entries"):
            cache.sweep_expired()

        # On error, logs "Error during: Sweeping expired cache entries"
        # and suppresses the exception when recoverable.
    """

    def __init__(
        self,
        operation: str,
        recoverable: bool = True,
        level: int = logging.ERROR,
    ):
        self.operation = operation
        self.recoverable = recoverable
        self.level = level
        self.error: Optional[BaseException] = None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            # Never swallow task cancellation
            if issubclass(exc_type, asyncio.CancelledError):
                return False

            self.error = exc_val
            if isinstance(exc_val, SyncCoreError):
                handle_error(exc_val, level=self.level)
            else:
                handle_error(
                    exc_val,
                    user_message=f"Error during: {self.operation}: {exc_val}",
                    level=self.level,
                )
            return self.recoverable

        logger.debug(f"Completed: {self.operation}")
        return False


def error_boundary(
    default_return: Any = None,
    error_message: Optional[str] = None,
    log: bool = True,
):
    """
    Decorator to wrap functions with error handling.

    Works for plain and coroutine functions. Cancellation of a coroutine
    is always propagated.

    Args:
        default_return: Value to return if function fails
        error_message: Custom error message
        log: Whether to log errors

    Usage:
        @error_boundary(default_return=False, error_message="Refresh tick failed")
        async def _tick(self) -> bool:
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        def _report(e: Exception) -> None:
            if log:
                prefix = error_message or f"Error in {func.__name__}"
                logger.error(f"{prefix}: {e}", exc_info=True)

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    _report(e)
                    return default_return

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _report(e)
                return default_return

        return wrapper

    return decorator
