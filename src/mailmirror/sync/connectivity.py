# =============================================================================
# Connectivity Monitor
# =============================================================================
# Background worker that watches network reachability and drives the
# pipeline manager:
#
#   online -> offline : pause_all()   (workers finish their current fetch)
#   offline -> online : resume_all()  (retry delays back to their floor)
#
# The probe is a plain TCP connect with a timeout; no DNS lookups, no HTTP.
# =============================================================================

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from mailmirror.config import ConnectivityConfig
from mailmirror.core import ConnectivityProbe

if TYPE_CHECKING:
    from mailmirror.sync.manager import PipelineManager


logger = logging.getLogger(__name__)


# Type for the transition callback
ConnectivityCallback = Callable[[bool], Awaitable[None]]


class TcpProbe:
    """
    Reports online when a TCP connection to host:port opens in time.

    Usage:
        >>> probe = TcpProbe("1.1.1.1", 53, timeout=3.0)
        >>> await probe.is_online()
        True
    """

    def __init__(self, host: str = "1.1.1.1", port: int = 53, timeout: float = 3.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: ConnectivityConfig) -> "TcpProbe":
        return cls(config.probe_host, config.probe_port, config.timeout_seconds)

    async def is_online(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Probe {self.host}:{self.port} failed: {e}")
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


class ConnectivityMonitor:
    """
    Polls a probe and pauses/resumes sync on transitions.

    Usage:
        >>> monitor = ConnectivityMonitor(TcpProbe(), manager)
        >>> monitor.on_change = my_callback
        >>> await monitor.start()
        >>> # ... later ...
        >>> await monitor.stop()
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        manager: "PipelineManager",
        interval: float = 15.0,
    ) -> None:
        self.probe = probe
        self.manager = manager
        self.interval = interval
        self.on_change: ConnectivityCallback | None = None

        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def online(self) -> bool:
        return self.manager.state.online

    async def start(self) -> None:
        """Start polling in a background task."""
        if self._running:
            logger.warning("ConnectivityMonitor already running")
            return
        self._running = True
        logger.info(f"Starting connectivity monitor (every {self.interval:g}s)")
        self._task = asyncio.create_task(self._run(), name="connectivity-monitor")

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping connectivity monitor")
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def check(self) -> bool:
        """
        Probe once and apply any transition.

        Returns:
            Whether we're online now.
        """
        try:
            online = await self.probe.is_online()
        except Exception as e:
            logger.warning(f"Connectivity probe raised: {e}")
            online = False

        state = self.manager.state
        if online == state.online:
            return online

        state.online = online
        if online:
            logger.info("Back online, resuming sync")
            self.manager.resume_all()
        else:
            logger.warning("Went offline, pausing sync")
            self.manager.pause_all()

        if self.on_change is not None:
            try:
                await self.on_change(online)
            except Exception as e:
                logger.error(f"Error in connectivity callback: {e}")
        return online

    async def _run(self) -> None:
        while self._running:
            await self.check()
            await asyncio.sleep(self.interval)
