# =============================================================================
# sync_core/offline/connection_manager.py
# Connection Status Detection and Management
# =============================================================================
"""
ConnectionManager - Detects and monitors connectivity to the outside world.

Features:
- TCP connect probe against configurable hosts (public DNS by default)
- Periodic health checks on an asyncio task
- Callbacks on status changes ("connectivity restored" drives the drain)
- Manual offline override
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple
import logging

logger = logging.getLogger(__name__)

Host = Tuple[str, int]
ProbeFn = Callable[[], Awaitable[bool]]


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # At least one probe host reachable
    OFFLINE = "offline"         # No probe host reachable, or forced
    CHECKING = "checking"       # Currently checking status
    UNKNOWN = "unknown"         # Initial state


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    previous_status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None

    @property
    def restored(self) -> bool:
        """True when this state is a transition into ONLINE."""
        return (
            self.status == ConnectionStatus.ONLINE
            and self.previous_status != ConnectionStatus.ONLINE
        )


class ConnectionManager:
    """
    Connectivity monitor owned by one engine.

    Usage:
        manager = ConnectionManager()
        await manager.initialize()
        if manager.is_online:
            # Talk to the remote source
        else:
            # Serve from cache, queue mutations
    """

    # Configuration
    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5          # Timeout for each probe connection
    DEFAULT_HOSTS: Tuple[Host, ...] = (
        ("8.8.8.8", 53),            # Google DNS
        ("1.1.1.1", 53),            # Cloudflare DNS
        ("208.67.222.222", 53),     # OpenDNS
    )

    def __init__(
        self,
        hosts: Optional[Sequence[Host]] = None,
        timeout: float = CONNECTION_TIMEOUT,
        interval_online: float = CHECK_INTERVAL_ONLINE,
        interval_offline: float = CHECK_INTERVAL_OFFLINE,
        probe: Optional[ProbeFn] = None,
    ):
        """
        Args:
            hosts: (host, port) pairs tried in order until one connects
            timeout: Seconds allowed per connection attempt
            interval_online: Seconds between checks while online
            interval_offline: Seconds between checks while offline
            probe: Replacement connectivity check (tests, custom health checks)
        """
        self.hosts: List[Host] = [tuple(h) for h in (hosts or self.DEFAULT_HOSTS)]
        self.timeout = timeout
        self.interval_online = interval_online
        self.interval_offline = interval_offline
        self._probe = probe or self._check_internet
        self._state = ConnectionState()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._monitor_task: Optional[asyncio.Task] = None
        self._stop_monitoring: Optional[asyncio.Event] = None
        self._forced_offline = False
        self._initialized = False

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        """Get current status."""
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def initialize(self, start_monitoring: bool = True) -> None:
        """
        Run the first check and optionally start background monitoring.

        Args:
            start_monitoring: Whether to start the monitoring task
        """
        if self._initialized:
            return

        await self.check_connection()

        if start_monitoring:
            self.start_monitoring()

        self._initialized = True
        logger.info(f"ConnectionManager initialized. Status: {self._state.status.value}")

    async def check_connection(self) -> ConnectionState:
        """
        Perform a connection check and update state.

        Returns:
            Updated ConnectionState
        """
        old_status = self._state.status
        self._state.status = ConnectionStatus.CHECKING
        self._state.last_check = datetime.now()

        if self._forced_offline:
            reachable = False
        else:
            try:
                reachable = await self._probe()
            except asyncio.CancelledError:
                self._state.status = old_status
                raise
            except Exception as e:
                self._state.error_message = str(e)
                logger.debug(f"Connectivity probe failed: {e}")
                reachable = False

        if reachable:
            self._state.status = ConnectionStatus.ONLINE
            self._state.last_online = datetime.now()
            self._state.consecutive_failures = 0
            self._state.error_message = None
        else:
            self._state.status = ConnectionStatus.OFFLINE
            self._state.consecutive_failures += 1

        self._state.previous_status = old_status
        if old_status != self._state.status:
            logger.info(f"Connection status changed: {old_status.value} -> {self._state.status.value}")
            self._notify_callbacks()

        return self._state

    async def _check_internet(self) -> bool:
        """
        Check connectivity by opening a TCP connection to the probe hosts.

        Returns:
            True if any host accepted the connection
        """
        for host, port in self.hosts:
            if await self._probe_host(host, port):
                return True
        return False

    async def _probe_host(self, host: str, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, OSError):
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    # =========================================================================
    # MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start background connection monitoring on the running loop."""
        if self.is_monitoring:
            return

        self._stop_monitoring = asyncio.Event()
        self._monitor_task = asyncio.get_running_loop().create_task(
            self._monitoring_loop(),
            name="ConnectionMonitor",
        )
        logger.debug("Connection monitoring started")

    async def stop_monitoring(self) -> None:
        """Stop background connection monitoring."""
        if self._stop_monitoring is not None:
            self._stop_monitoring.set()

        task, self._monitor_task = self._monitor_task, None
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=self.timeout + 1)
            except asyncio.TimeoutError:
                task.cancel()
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        logger.debug("Connection monitoring stopped")

    async def _monitoring_loop(self) -> None:
        """Background monitoring loop."""
        stop = self._stop_monitoring
        while not stop.is_set():
            interval = self.interval_online if self.is_online else self.interval_offline

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.check_connection()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function called with ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    # =========================================================================
    # OVERRIDES
    # =========================================================================

    def force_offline(self) -> None:
        """Force offline mode until ``set_online`` is called."""
        self._forced_offline = True
        self._transition(ConnectionStatus.OFFLINE)
        logger.info("Forced offline mode")

    def set_online(self) -> None:
        """Clear the offline override and mark the connection online."""
        self._forced_offline = False
        self._state.last_online = datetime.now()
        self._state.consecutive_failures = 0
        self._state.error_message = None
        self._transition(ConnectionStatus.ONLINE)

    def _transition(self, status: ConnectionStatus) -> None:
        old_status = self._state.status
        self._state.previous_status = old_status
        self._state.status = status
        if old_status != status:
            logger.info(f"Connection status changed: {old_status.value} -> {status.value}")
            self._notify_callbacks()

    async def force_check(self) -> ConnectionState:
        """Force an immediate connection check."""
        return await self.check_connection()

    def get_status_display(self) -> dict:
        """Get status information for diagnostics."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "forced_offline": self._forced_offline,
            "hosts": [f"{h}:{p}" for h, p in self.hosts],
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
