"""
Execution gateway.

Applies one table's Plan against PostgreSQL inside a single transaction.
A failure rolls back that table's work only and is returned as the table's
error; a lost connection is raised as HostUnavailableError instead.

Retirement is detach-then-drop. The drop runs under a savepoint, so a
failed drop leaves the child detached (and committed) and the next pass
finds it again by name and retries the drop alone.

Observed children keep the bounds they were attached with, so a parent
whose children were made by hand, or under an earlier partition_interval,
is planned around rather than overlapped.
"""

import logging
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import QueryCanceledError

from config import get_config
from database import DatabaseManager, is_connection_lost
from errors import ErrorCode, HostUnavailableError, MaintenanceError, TransientExecutionError
from partition_engine import (
    PartitionWindow,
    Plan,
    TablePolicy,
    WindowState,
    parse_partition_name,
    window_at,
)
from time_functions import as_utc

logger = logging.getLogger(__name__)

_DROP_SAVEPOINT = "pgtime_drop"


@dataclass
class MaintenanceOutcome:
    """What happened to one table in one pass."""

    table_id: str
    created: List[PartitionWindow] = field(default_factory=list)
    dropped: List[PartitionWindow] = field(default_factory=list)
    compressed: List[PartitionWindow] = field(default_factory=list)
    # Detached but not dropped; the next pass resumes with the drop
    detached: List[PartitionWindow] = field(default_factory=list)
    error: Optional[MaintenanceError] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_id": self.table_id,
            "created": [w.name for w in self.created],
            "dropped": [w.name for w in self.dropped],
            "compressed": [w.name for w in self.compressed],
            "detached": [w.name for w in self.detached],
            "error": str(self.error) if self.error else None,
            "error_code": self.error.code if self.error else None,
            "duration_seconds": round(self.duration, 3),
        }


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("_", "\\_").replace("%", "\\%")


_RANGE_BOUND_RE = re.compile(r"^FOR VALUES FROM \((.+)\) TO \((.+)\)$", re.DOTALL)
_LITERAL_RE = re.compile(r"^'([^']*)'")
_UTC_OFFSET_RE = re.compile(r"(:\d{2}(?:\.\d+)?[+-]\d{2})$")
_FRACTION_RE = re.compile(r"\.(\d{1,6})(?=[+-]|$)")


def _parse_bound_value(text: str) -> Optional[datetime]:
    text = text.strip()
    if text == "MINVALUE":
        return datetime.min.replace(tzinfo=timezone.utc)
    if text == "MAXVALUE":
        return datetime.max.replace(tzinfo=timezone.utc)
    match = _LITERAL_RE.match(text)
    if match is None:
        return None
    literal = match.group(1)
    literal = _UTC_OFFSET_RE.sub(r"\1:00", literal)
    literal = _FRACTION_RE.sub(lambda m: "." + m.group(1).ljust(6, "0"), literal)
    try:
        return as_utc(datetime.fromisoformat(literal))
    except ValueError:
        return None


def parse_range_bound(bound: Optional[str]) -> Optional[Tuple[datetime, datetime]]:
    """
    Parse a pg_get_expr() partition bound into (start, end).

    Expects literals rendered with TimeZone UTC and DateStyle ISO. Returns
    None for DEFAULT partitions and for bounds that are not a single
    timestamp range.
    """
    if not bound:
        return None
    match = _RANGE_BOUND_RE.match(bound.strip())
    if match is None or "," in match.group(1) or "," in match.group(2):
        return None
    start = _parse_bound_value(match.group(1))
    end = _parse_bound_value(match.group(2))
    if start is None or end is None or start >= end:
        return None
    return start, end


class PostgresPartitionBackend:
    """Partition operations on PostgreSQL declarative range partitioning.

    Every method runs on the caller's cursor and never commits.
    """

    def __init__(self, compression_access_method: Optional[str] = None):
        self.compression_access_method = (
            compression_access_method or get_config().maintenance.compression_access_method
        )

    @staticmethod
    def _parent(window: PartitionWindow) -> sql.Identifier:
        schema, _, relname = window.table_id.rpartition(".")
        return sql.Identifier(schema or "public", relname)

    @staticmethod
    def _child(window: PartitionWindow) -> sql.Identifier:
        if window.child is not None:
            return sql.Identifier(*window.child)
        schema, _, _ = window.table_id.rpartition(".")
        return sql.Identifier(schema or "public", window.name)

    @staticmethod
    def _qualified(identifier: sql.Identifier) -> str:
        return ".".join('"%s"' % s.replace('"', '""') for s in identifier.strings)

    def partition_exists(self, cur, window: PartitionWindow) -> bool:
        """True if the window's child is attached to its parent."""
        cur.execute(
            """
            SELECT EXISTS (
                SELECT 1 FROM pg_catalog.pg_inherits
                WHERE inhrelid = to_regclass(%s)
                  AND inhparent = to_regclass(%s)
            )
            """,
            (self._qualified(self._child(window)), self._qualified(self._parent(window))),
        )
        return bool(cur.fetchone()[0])

    def create_partition(self, cur, window: PartitionWindow) -> bool:
        """Create and attach the child.

        Returns False if it is already attached. A table of the same name that
        is not attached is left alone and the CREATE fails.
        """
        if self.partition_exists(cur, window):
            return False
        cur.execute(
            sql.SQL(
                "CREATE TABLE {child} PARTITION OF {parent} "
                "FOR VALUES FROM (%s) TO (%s)"
            ).format(child=self._child(window), parent=self._parent(window)),
            (window.start, window.end),
        )
        return True

    def detach_partition(self, cur, window: PartitionWindow) -> None:
        cur.execute(
            sql.SQL("ALTER TABLE {parent} DETACH PARTITION {child}").format(
                parent=self._parent(window), child=self._child(window),
            )
        )

    def drop_partition(self, cur, window: PartitionWindow) -> None:
        cur.execute(sql.SQL("DROP TABLE IF EXISTS {child}").format(child=self._child(window)))

    def set_compression(self, cur, window: PartitionWindow) -> None:
        cur.execute(
            sql.SQL("ALTER TABLE {child} SET ACCESS METHOD {am}").format(
                child=self._child(window),
                am=sql.Identifier(self.compression_access_method),
            )
        )

    def is_compressed(self, cur, window: PartitionWindow) -> bool:
        cur.execute(
            """
            SELECT am.amname
            FROM pg_catalog.pg_class c
            JOIN pg_catalog.pg_am am ON am.oid = c.relam
            WHERE c.oid = to_regclass(%s)
            """,
            (self._qualified(self._child(window)),),
        )
        row = cur.fetchone()
        return bool(row) and row[0] == self.compression_access_method

    def list_partitions(self, cur, policy: TablePolicy) -> List[PartitionWindow]:
        """
        Observe the table's children.

        Every child attached to the parent is reported with the bounds it was
        attached with, whatever its name or schema. Unattached tables in the
        parent's schema carrying our naming pattern are reported as detached
        leftovers, with the window their name encodes. A DEFAULT partition
        covers no fixed range and is left out.
        """
        parent = self._qualified(sql.Identifier(policy.schema, policy.relname))
        # pg_get_expr renders bound literals in the session's TimeZone and DateStyle
        cur.execute("SET LOCAL TimeZone = 'UTC'")
        cur.execute("SET LOCAL DateStyle = 'ISO, YMD'")
        cur.execute(
            r"""
            SELECT n.nspname, c.relname, i.inhrelid IS NOT NULL AS attached,
                   am.amname, pg_catalog.pg_get_expr(c.relpartbound, c.oid)
            FROM pg_catalog.pg_class c
            JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
            LEFT JOIN pg_catalog.pg_inherits i
              ON i.inhrelid = c.oid AND i.inhparent = to_regclass(%s)
            LEFT JOIN pg_catalog.pg_am am ON am.oid = c.relam
            WHERE c.relkind IN ('r', 'p')
              AND (
                  i.inhrelid IS NOT NULL
                  OR (
                      n.nspname = %s
                      AND c.relname LIKE %s ESCAPE '\'
                      AND NOT EXISTS (
                          SELECT 1 FROM pg_catalog.pg_inherits o WHERE o.inhrelid = c.oid
                      )
                  )
              )
            ORDER BY c.relname
            """,
            (parent, policy.schema, _escape_like(policy.relname + "_p") + "%"),
        )
        windows = []
        for nspname, relname, attached, amname, bound in cur.fetchall():
            if not attached:
                start = parse_partition_name(policy.table_id, relname)
                if start is None:
                    continue
                window = window_at(policy, start, WindowState.DETACHED)
                windows.append(replace(window, child=(nspname, relname)))
                continue

            bounds = parse_range_bound(bound)
            if bounds is None:
                logger.debug("Ignoring partition %s.%s with bound %r", nspname, relname, bound)
                continue
            if amname == self.compression_access_method:
                state = WindowState.COMPRESSED
            else:
                state = WindowState.PRESENT
            windows.append(PartitionWindow(
                policy.table_id, bounds[0], bounds[1], state, child=(nspname, relname),
            ))
        return windows


class ExecutionGateway:
    """Runs plans against the data engine, one transaction per table."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        backend: Optional[PostgresPartitionBackend] = None,
        operation_timeout: Optional[float] = None,
    ):
        self.db = db_manager
        self.backend = backend or PostgresPartitionBackend()
        self.operation_timeout = (
            operation_timeout or get_config().maintenance.operation_timeout_seconds
        )

    def _set_timeout(self, cur) -> None:
        timeout_ms = int(timedelta(seconds=self.operation_timeout) / timedelta(milliseconds=1))
        cur.execute("SET LOCAL statement_timeout = %s", (timeout_ms,))

    def observe(self, policy: TablePolicy) -> List[PartitionWindow]:
        """Read the table's current partitions from the data engine.

        Raises:
            HostUnavailableError: If the connection to the host is lost
            TransientExecutionError: If the catalog query fails or times out
        """
        try:
            with self.db.transaction() as cur:
                self._set_timeout(cur)
                return self.backend.list_partitions(cur, policy)
        except psycopg2.Error as e:
            if is_connection_lost(e):
                raise HostUnavailableError(f"Lost connection while observing: {e}") from e
            raise _execution_error(e) from e

    def apply(self, policy: TablePolicy, plan: Plan) -> MaintenanceOutcome:
        """
        Execute a plan for one table.

        Args:
            policy: The table's policy
            plan: Work computed by partition_engine.plan()

        Returns:
            The committed work, or an empty outcome carrying the error

        Raises:
            HostUnavailableError: If the connection to the host is lost
        """
        started = time.monotonic()
        staged = MaintenanceOutcome(policy.table_id)
        try:
            with self.db.transaction() as cur:
                self._set_timeout(cur)
                for window in plan.to_create:
                    if self.backend.create_partition(cur, window):
                        staged.created.append(window.with_state(WindowState.PRESENT))
                    else:
                        logger.debug("Partition %s already exists", window.name)
                for window in plan.to_retire:
                    self._retire(cur, window, staged)
                for window in plan.to_compress:
                    self._compress(cur, window, staged)
            outcome = staged
        except HostUnavailableError:
            raise
        except psycopg2.Error as e:
            if is_connection_lost(e):
                raise HostUnavailableError(f"Lost connection during maintenance: {e}") from e
            outcome = MaintenanceOutcome(policy.table_id, error=_execution_error(e))
            logger.warning(
                "Maintenance of %s rolled back: %s", policy.table_id, outcome.error,
            )

        outcome.duration = time.monotonic() - started
        return outcome

    def _retire(self, cur, window: PartitionWindow, outcome: MaintenanceOutcome) -> None:
        if window.state != WindowState.DETACHED and self.backend.partition_exists(cur, window):
            self.backend.detach_partition(cur, window)

        cur.execute(f"SAVEPOINT {_DROP_SAVEPOINT}")
        try:
            self.backend.drop_partition(cur, window)
        except psycopg2.Error as e:
            if is_connection_lost(e):
                raise
            cur.execute(f"ROLLBACK TO SAVEPOINT {_DROP_SAVEPOINT}")
            logger.warning("Detached %s but could not drop it: %s", window.name, e)
            outcome.detached.append(window.with_state(WindowState.DETACHED))
            if outcome.error is None:
                outcome.error = TransientExecutionError(
                    f"Drop of {window.name} failed: {e}", ErrorCode.DROP_FAILED,
                )
            return
        cur.execute(f"RELEASE SAVEPOINT {_DROP_SAVEPOINT}")
        outcome.dropped.append(window.with_state(WindowState.DROPPED))

    def _compress(self, cur, window: PartitionWindow, outcome: MaintenanceOutcome) -> None:
        if not self.backend.partition_exists(cur, window):
            logger.debug("Skipping compression of %s: not attached", window.name)
            return
        if self.backend.is_compressed(cur, window):
            return
        self.backend.set_compression(cur, window)
        outcome.compressed.append(window.with_state(WindowState.COMPRESSED))


def _execution_error(exc: psycopg2.Error) -> TransientExecutionError:
    if isinstance(exc, QueryCanceledError):
        return TransientExecutionError(f"Operation timed out: {exc}", ErrorCode.OPERATION_TIMEOUT)
    return TransientExecutionError(f"{type(exc).__name__}: {exc}".strip())
