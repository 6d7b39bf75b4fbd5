"""
Partition lifecycle engine.

Pure decision logic: given a table policy, the current time and the
partitions the data engine reports for that table, work out which
partition windows must be created, retired or compressed. Nothing here
touches the database, and nothing here is remembered between passes.

Window boundaries are anchored with time_bucket() at the fixed epoch, so
planning the same policy at any instant inside a window yields the same
window edges.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from errors import PolicyValidationError
from time_functions import as_utc, time_bucket

DEFAULT_LOOKAHEAD = 2

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1
MAX_IDENTIFIER_LENGTH = 63
_PARTITION_SUFFIX_FORMAT = "%Y%m%dT%H%M%S"
_PARTITION_SUFFIX_LENGTH = len("_p20000101T000000")

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_$]*$")


class WindowState(str, Enum):
    PLANNED = "planned"
    PRESENT = "present"
    COMPRESSED = "compressed"
    DETACHED = "detached"
    DROPPED = "dropped"


@dataclass(frozen=True)
class TablePolicy:
    """Partitioning policy for one managed table.

    Attributes:
        table_id: Parent table, optionally schema-qualified ("metrics.cpu")
        time_column: Column the parent is range-partitioned on
        partition_interval: Width of one partition
        retention_interval: Age after which a partition is retired (None = keep forever)
        compression_interval: Age after which a retained partition is compressed
        last_run_at: When the daemon last maintained the table
    """

    table_id: str
    time_column: str
    partition_interval: timedelta
    retention_interval: Optional[timedelta] = None
    compression_interval: Optional[timedelta] = None
    last_run_at: Optional[datetime] = None

    @property
    def schema(self) -> str:
        return self.table_id.split(".", 1)[0] if "." in self.table_id else "public"

    @property
    def relname(self) -> str:
        return self.table_id.rsplit(".", 1)[-1]


@dataclass(frozen=True)
class PartitionWindow:
    """Half-open time range [start, end) backed by one child table.

    ``child`` is the (schema, relname) of an observed child table. It is None
    for windows the daemon plans itself, which are named after their start.
    """

    table_id: str
    start: datetime
    end: datetime
    state: WindowState = WindowState.PLANNED
    child: Optional[Tuple[str, str]] = None

    @property
    def name(self) -> str:
        """Child table name (unqualified)."""
        if self.child is not None:
            return self.child[1]
        return partition_name(self.table_id, self.start)

    def with_state(self, state: WindowState) -> "PartitionWindow":
        return replace(self, state=state)


@dataclass
class Plan:
    to_create: List[PartitionWindow] = field(default_factory=list)
    to_retire: List[PartitionWindow] = field(default_factory=list)
    to_compress: List[PartitionWindow] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.to_create or self.to_retire or self.to_compress)


# ---------------------------------------------------------------------------
# Policy validation (registration time)
# ---------------------------------------------------------------------------


def validate_policy(policy: TablePolicy) -> TablePolicy:
    """Reject a policy the engine cannot plan for.

    Returns:
        The policy itself, so calls can be chained.

    Raises:
        PolicyValidationError: On a bad identifier, a non-positive interval,
            a sub-second partition width, or compression past retention.
    """
    parts = policy.table_id.split(".")
    if len(parts) > 2 or not all(_IDENTIFIER_RE.match(p) for p in parts):
        raise PolicyValidationError(f"Invalid table identifier: {policy.table_id!r}")
    if len(policy.relname) + _PARTITION_SUFFIX_LENGTH > MAX_IDENTIFIER_LENGTH:
        raise PolicyValidationError(
            f"Table name {policy.relname!r} leaves no room for partition suffixes"
        )
    if not _IDENTIFIER_RE.match(policy.time_column or ""):
        raise PolicyValidationError(f"Invalid time column: {policy.time_column!r}")

    if policy.partition_interval <= timedelta(0):
        raise PolicyValidationError("partition_interval must be positive")
    if policy.partition_interval % timedelta(seconds=1):
        raise PolicyValidationError("partition_interval must be a whole number of seconds")
    if policy.retention_interval is not None and policy.retention_interval <= timedelta(0):
        raise PolicyValidationError("retention_interval must be positive")
    if policy.compression_interval is not None:
        if policy.compression_interval <= timedelta(0):
            raise PolicyValidationError("compression_interval must be positive")
        if (
            policy.retention_interval is not None
            and policy.compression_interval > policy.retention_interval
        ):
            raise PolicyValidationError(
                "compression_interval must not exceed retention_interval"
            )
    return policy


# ---------------------------------------------------------------------------
# Window derivation
# ---------------------------------------------------------------------------


def partition_name(table_id: str, start: datetime) -> str:
    relname = table_id.rsplit(".", 1)[-1]
    return f"{relname}_p{as_utc(start).astimezone(timezone.utc).strftime(_PARTITION_SUFFIX_FORMAT)}"


def parse_partition_name(table_id: str, name: str) -> Optional[datetime]:
    """Recover a window start from a child table name, or None if it is not ours."""
    prefix = f"{table_id.rsplit('.', 1)[-1]}_p"
    if not name.startswith(prefix):
        return None
    try:
        start = datetime.strptime(name[len(prefix):], _PARTITION_SUFFIX_FORMAT)
    except ValueError:
        return None
    return start.replace(tzinfo=timezone.utc)


def window_at(policy: TablePolicy, start: datetime,
              state: WindowState = WindowState.PLANNED) -> PartitionWindow:
    start = as_utc(start)
    return PartitionWindow(policy.table_id, start, start + policy.partition_interval, state)


def window_containing(policy: TablePolicy, ts: datetime) -> PartitionWindow:
    return window_at(policy, time_bucket(policy.partition_interval, ts))


def expected_windows(policy: TablePolicy, now: datetime,
                     lookahead: int = DEFAULT_LOOKAHEAD) -> List[PartitionWindow]:
    """Windows that must exist: the one holding ``now`` and the ones after it."""
    first = window_containing(policy, now)
    return [
        window_at(policy, first.start + i * policy.partition_interval)
        for i in range(lookahead)
    ]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan(
    policy: TablePolicy,
    now: datetime,
    existing: Iterable[PartitionWindow] = (),
    lookahead: int = DEFAULT_LOOKAHEAD,
) -> Plan:
    """Compute the create/retire/compress work for one table.

    Args:
        policy: A policy that already passed validate_policy()
        now: Reference time for this pass
        existing: Windows the data engine reports for the table right now
            (any bounds, including children created by someone else)
        lookahead: Number of windows to keep created from now onwards

    Expected windows are created only where no observed child covers them:
    a window partly covered (after a change of partition_interval, or by a
    hand-made partition) shrinks to the uncovered gaps. Retirement and
    compression use the observed bounds.

    Returns:
        Plan with every list ordered oldest window first
    """
    validate_policy(policy)
    if lookahead < 1:
        raise ValueError("lookahead must be at least 1")
    now = as_utc(now)

    ordered = sorted(
        (w for w in existing
         if w.table_id == policy.table_id and w.state != WindowState.DROPPED),
        key=lambda w: (w.start, w.end),
    )

    result = Plan()
    for expected in expected_windows(policy, now, lookahead):
        result.to_create.extend(
            PartitionWindow(policy.table_id, start, end)
            for start, end in _uncovered(expected.start, expected.end, ordered)
        )

    retire_before = None
    if policy.retention_interval is not None:
        retire_before = now - policy.retention_interval
        result.to_retire = [w for w in ordered if w.end <= retire_before]

    if policy.compression_interval is not None:
        compress_before = now - policy.compression_interval
        result.to_compress = [
            w for w in ordered
            if w.state == WindowState.PRESENT
            and w.end <= compress_before
            and (retire_before is None or w.end > retire_before)
        ]

    return result


def _uncovered(start: datetime, end: datetime,
               ordered: List[PartitionWindow]) -> List[Tuple[datetime, datetime]]:
    """Parts of [start, end) not overlapped by any window in ``ordered``."""
    gaps = []
    cursor = start
    for w in ordered:
        if w.end <= cursor or w.start >= end:
            continue
        if w.start > cursor:
            gaps.append((cursor, w.start))
        cursor = max(cursor, w.end)
        if cursor >= end:
            break
    if cursor < end:
        gaps.append((cursor, end))
    return gaps
