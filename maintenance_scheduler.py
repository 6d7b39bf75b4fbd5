"""
Maintenance scheduler.

The control loop of the daemon. It idles until the maintenance interval
elapses, a wake request arrives or shutdown is requested, then runs one
pass over every registered table, in catalog order:

    observe partitions -> plan -> apply -> record outcome

A table that fails is recorded and the pass moves on; it is retried on the
next pass. Blocking database work runs in a worker thread via
asyncio.to_thread() so the loop stays responsive to signals, but tables are
still handled strictly one after another and an in-flight table is never
interrupted.

States: IDLE -> RUNNING -> IDLE -> ... -> DRAINING -> STOPPED
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from catalog import PolicyCatalog
from config import AppConfig, DatabaseConfig, MaintenanceConfig, get_config, reload_config
from database import DatabaseError, DatabaseManager
from errors import ErrorCode, HostUnavailableError, TransientExecutionError
from execution_gateway import ExecutionGateway, MaintenanceOutcome
from lifecycle import CancellationToken, ExitStatus
from partition_engine import TablePolicy, plan

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class PassReport:
    """Outcomes of one pass; logged, never persisted."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[MaintenanceOutcome] = field(default_factory=list)
    interrupted: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> List[MaintenanceOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def succeeded(self) -> List[MaintenanceOutcome]:
        return [o for o in self.outcomes if o.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "tables": len(self.outcomes),
            "failed": len(self.failed),
            "interrupted": self.interrupted,
            "error": self.error,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MaintenanceScheduler:
    """Single control loop driving partition maintenance passes."""

    def __init__(
        self,
        catalog: PolicyCatalog,
        gateway: ExecutionGateway,
        *,
        db_manager: Optional[DatabaseManager] = None,
        config: Optional[MaintenanceConfig] = None,
        token: Optional[CancellationToken] = None,
        clock: Callable[[], datetime] = _utcnow,
        config_loader: Callable[[], AppConfig] = reload_config,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.db = db_manager
        self.token = token or CancellationToken()
        self._clock = clock
        self._config_loader = config_loader
        self._apply_config(config or get_config().maintenance)

        self.state = SchedulerState.IDLE
        self._wake_event = asyncio.Event()
        self._reload_event = asyncio.Event()
        self._pending_db_config: Optional[DatabaseConfig] = None
        self.last_report: Optional[PassReport] = None
        self._passes = 0

    # ------------------------------------------------------------------
    # Requests from the lifecycle manager
    # ------------------------------------------------------------------

    def wake(self) -> None:
        self._wake_event.set()

    def request_reload(self) -> None:
        self._reload_event.set()

    def get_status(self) -> dict:
        """Return current scheduler status."""
        report = self.last_report
        return {
            "state": self.state.value,
            "passes": self._passes,
            "interval_seconds": self.interval_seconds,
            "lookahead": self.lookahead,
            "last_pass_started_at": report.started_at.isoformat() if report else None,
            "last_pass_finished_at": (
                report.finished_at.isoformat() if report and report.finished_at else None
            ),
            "last_pass_failed_tables": len(report.failed) if report else 0,
            "cancelled": self.token.cancelled,
        }

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _apply_config(self, config: MaintenanceConfig) -> None:
        self.interval_seconds = config.interval_seconds
        self.lookahead = config.lookahead
        self.gateway.operation_timeout = config.operation_timeout_seconds

    def _maybe_reload(self) -> None:
        """Apply a pending reload request. Never interrupts running work."""
        if not self._reload_event.is_set():
            return
        self._reload_event.clear()
        try:
            config = self._config_loader()
        except ValidationError as e:
            logger.error("Ignoring invalid configuration on reload: %s", e)
            return

        self._apply_config(config.maintenance)
        if self.db is not None and config.database.connection_string != self.db.config.connection_string:
            # Switching targets mid-pass would split a pass across two hosts
            self._pending_db_config = config.database
        logger.info(
            "Configuration reloaded (interval=%ss, lookahead=%d, timeout=%ss)",
            self.interval_seconds, self.lookahead, self.gateway.operation_timeout,
        )

    async def _switch_target_if_pending(self) -> None:
        if self._pending_db_config is None:
            return
        new_config, self._pending_db_config = self._pending_db_config, None
        await asyncio.to_thread(self.db.reconnect, new_config)

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Run passes until cancelled. Returns the process exit status."""
        logger.info(
            "Maintenance scheduler started (interval=%ss, lookahead=%d)",
            self.interval_seconds, self.lookahead,
        )
        try:
            while True:
                if not await self._wait_for_wake():
                    break
                self._maybe_reload()
                await self._switch_target_if_pending()
                if not await self._check_host():
                    break
                await self.run_pass()
        except HostUnavailableError as e:
            self.token.cancel(str(e), ExitStatus.HOST_UNAVAILABLE)
        finally:
            self.state = SchedulerState.DRAINING
            logger.info("Maintenance scheduler draining: %s", self.token.reason)
            self.state = SchedulerState.STOPPED

        if self.token.exit_status != ExitStatus.OK:
            logger.error("Maintenance scheduler stopped: %s", self.token.reason)
        return int(self.token.exit_status)

    async def _wait_for_wake(self) -> bool:
        """
        Idle until the timer fires or a wake request arrives.

        The timer is armed when the wait starts (i.e. after the previous
        pass finished) and capped by interval_seconds. A reload received
        while idle re-arms it with the new interval.

        Returns:
            False if the loop should stop instead of running a pass
        """
        self.state = SchedulerState.IDLE
        loop = asyncio.get_running_loop()
        armed_at = loop.time()

        while not self.token.cancelled:
            if self._wake_event.is_set():
                self._wake_event.clear()
                logger.debug("Woken up by request")
                return True

            remaining = armed_at + self.interval_seconds - loop.time()
            if remaining <= 0:
                return True

            await self._wait_any(
                (self._wake_event.wait(), self._reload_event.wait(), self.token.wait()),
                remaining,
            )
            if self._reload_event.is_set():
                self._maybe_reload()
        return False

    @staticmethod
    async def _wait_any(awaitables, timeout: float) -> None:
        waiters = [asyncio.ensure_future(aw) for aw in awaitables]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _check_host(self) -> bool:
        if self.db is None:
            return True
        if await asyncio.to_thread(self.db.ping):
            return True
        self.token.cancel(
            f"database host {self.db.config.target} unavailable",
            ExitStatus.HOST_UNAVAILABLE,
        )
        return False

    async def run_pass(self) -> PassReport:
        """
        Run one pass over every registered table.

        Shutdown is checked before each table: the table in flight always
        finishes, no new one starts.

        Raises:
            HostUnavailableError: If the host goes away during the pass
        """
        self.state = SchedulerState.RUNNING
        report = PassReport(started_at=self._clock())
        try:
            policies = await asyncio.to_thread(self.catalog.list_policies)
        except DatabaseError as e:
            logger.error("Could not read table catalog: %s", e)
            report.error = str(e)
            policies = []

        for policy in policies:
            if self.token.cancelled:
                report.interrupted = True
                logger.info(
                    "Pass interrupted (%s); %d table(s) left for the next run",
                    self.token.reason, len(policies) - len(report.outcomes),
                )
                break
            self._maybe_reload()
            outcome = await asyncio.to_thread(self._maintain_table, policy, self._clock())
            report.outcomes.append(outcome)

        report.finished_at = self._clock()
        self.last_report = report
        self._passes += 1
        self._log_report(report)
        self.state = SchedulerState.IDLE
        return report

    def _maintain_table(self, policy: TablePolicy, now: datetime) -> MaintenanceOutcome:
        """Observe, plan and apply for one table. Runs in a worker thread."""
        try:
            existing = self.gateway.observe(policy)
            work = plan(policy, now, existing, self.lookahead)
            outcome = self.gateway.apply(policy, work)
        except HostUnavailableError:
            raise
        except TransientExecutionError as e:
            logger.warning("Maintenance of %s failed: %s", policy.table_id, e)
            return MaintenanceOutcome(policy.table_id, error=e)
        except Exception as e:
            logger.exception("Maintenance of %s failed", policy.table_id)
            return MaintenanceOutcome(policy.table_id, error=TransientExecutionError(str(e)))

        if outcome.ok:
            self._record_last_run(policy, now, outcome)
        return outcome

    def _record_last_run(self, policy: TablePolicy, now: datetime,
                         outcome: MaintenanceOutcome) -> None:
        # The partition work is already committed; keep it in the outcome
        try:
            self.catalog.record_last_run(policy.table_id, now)
        except DatabaseError as e:
            logger.error("Could not record last run of %s: %s", policy.table_id, e)
            outcome.error = TransientExecutionError(
                f"last_run_at not recorded: {e}", ErrorCode.LAST_RUN_NOT_RECORDED,
            )

    def _log_report(self, report: PassReport) -> None:
        for outcome in report.outcomes:
            if outcome.ok:
                logger.info(
                    "%s: created=%d dropped=%d compressed=%d (%.2fs)",
                    outcome.table_id, len(outcome.created), len(outcome.dropped),
                    len(outcome.compressed), outcome.duration,
                )
            else:
                logger.warning(
                    "%s: failed [%s] %s (created=%d dropped=%d detached=%d)",
                    outcome.table_id, outcome.error.code, outcome.error,
                    len(outcome.created), len(outcome.dropped), len(outcome.detached),
                )
        logger.info(
            "Maintenance pass finished: %d table(s), %d failed%s",
            len(report.outcomes), len(report.failed),
            " (interrupted)" if report.interrupted else "",
        )
