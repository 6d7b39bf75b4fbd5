"""
Process lifecycle and signal handling.

Translates host signals into requests on the maintenance scheduler:

    SIGTERM / SIGINT  graceful shutdown (exit 0 once the current table is done)
    SIGHUP            reload configuration at the next table or pass boundary
    SIGUSR1           start a pass now

Shutdown is modelled as a CancellationToken handed to the scheduler; the
scheduler checks it at table boundaries and in its idle wait.
"""

import asyncio
import logging
import signal
from enum import IntEnum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from maintenance_scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)


class ExitStatus(IntEnum):
    OK = 0
    HOST_UNAVAILABLE = 1


class CancellationToken:
    """Cooperative stop request observed by the control loop.

    A later host-loss cancellation upgrades an earlier graceful one, so the
    process never exits 0 after losing its host.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self.exit_status = ExitStatus.OK

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "shutdown requested",
               exit_status: ExitStatus = ExitStatus.OK) -> None:
        if self._event.is_set():
            if exit_status > self.exit_status:
                self.reason, self.exit_status = reason, exit_status
            return
        self.reason, self.exit_status = reason, exit_status
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class LifecycleManager:
    """Owns signal handlers for one scheduler and reports its exit status."""

    def __init__(self, scheduler: "MaintenanceScheduler"):
        self.scheduler = scheduler
        self._installed = []

    @property
    def token(self) -> CancellationToken:
        return self.scheduler.token

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        if self.token.cancelled:
            logger.info("Shutdown already in progress (%s)", self.token.reason)
            return
        logger.info("Shutdown requested: %s", reason)
        self.token.cancel(reason, ExitStatus.OK)

    def request_reload(self) -> None:
        logger.info("Configuration reload requested")
        self.scheduler.request_reload()

    def request_wake(self) -> None:
        logger.info("Maintenance pass requested")
        self.scheduler.wake()

    def host_unavailable(self, reason: str = "database host unavailable") -> None:
        """Stop without touching any further table and exit non-zero."""
        logger.error("Host unavailable: %s", reason)
        self.token.cancel(reason, ExitStatus.HOST_UNAVAILABLE)

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Register signal handlers on the running event loop."""
        loop = loop or asyncio.get_running_loop()
        handlers = [
            ("SIGTERM", lambda: self.request_shutdown("SIGTERM")),
            ("SIGINT", lambda: self.request_shutdown("SIGINT")),
            ("SIGHUP", self.request_reload),
            ("SIGUSR1", self.request_wake),
        ]
        for name, callback in handlers:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, callback)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning("Cannot install %s handler: %s", name, e)
                continue
            self._installed.append(signum)

    def uninstall(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for signum in self._installed:
            loop.remove_signal_handler(signum)
        self._installed = []

    async def run(self) -> int:
        """Run the scheduler until it stops and return the process exit status."""
        loop = asyncio.get_running_loop()
        self.install(loop)
        try:
            status = await self.scheduler.run()
        finally:
            self.uninstall(loop)
        logger.info("Maintenance daemon stopped (exit status %d)", status)
        return status
