"""Shared test helpers for the pgtime-maintainer test suite."""

import copy
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import psycopg2
from alembic.config import Config
from alembic.script import ScriptDirectory

from partition_engine import PartitionWindow, TablePolicy, WindowState, window_at

_PROJECT_ROOT = Path(__file__).parent.parent

DAY = timedelta(days=1)


def get_alembic_head() -> str:
    """Return current Alembic head revision dynamically.

    Uses project-root-based path so it works regardless of CWD.
    """
    cfg = Config(str(_PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    return ScriptDirectory.from_config(cfg).get_current_head()


def day(n: int) -> datetime:
    """Midnight UTC of day ``n`` after 2000-01-01."""
    return datetime(2000, 1, 1, tzinfo=timezone.utc) + n * DAY


def make_policy(table_id: str = "metrics", **overrides) -> TablePolicy:
    fields = dict(
        table_id=table_id,
        time_column="ts",
        partition_interval=DAY,
        retention_interval=7 * DAY,
        compression_interval=None,
    )
    fields.update(overrides)
    return TablePolicy(**fields)


class FakeCursor:
    """Cursor over a private copy of the engine state; commit publishes it."""

    def __init__(self, state: Dict[str, Dict[str, PartitionWindow]]):
        self.work = copy.deepcopy(state)
        self.statements: List[str] = []
        self._savepoints: Dict[str, Dict] = {}

    def execute(self, query, params=None):
        text = str(query)
        self.statements.append(text)
        if text.startswith("SAVEPOINT "):
            self._savepoints[text.split()[1]] = copy.deepcopy(self.work)
        elif text.startswith("ROLLBACK TO SAVEPOINT "):
            self.work = copy.deepcopy(self._savepoints[text.split()[-1]])
        elif text.startswith("RELEASE SAVEPOINT "):
            self._savepoints.pop(text.split()[-1], None)


_ATTACHED = (WindowState.PRESENT, WindowState.COMPRESSED)


class InMemoryPartitionBackend:
    """Stand-in for PostgresPartitionBackend keeping child tables in a dict.

    Children are keyed by name per parent, and creating a child that is
    already there unattached, or whose range overlaps an attached sibling,
    fails the way PostgreSQL does.

    ``failures`` maps (operation, table_id) to an exception raised when that
    operation runs for that table. ``hooks`` maps an operation name to a
    callable invoked with the window before the operation runs.
    """

    def __init__(self):
        self.state: Dict[str, Dict[str, PartitionWindow]] = {}
        self.failures: Dict[Tuple[str, str], BaseException] = {}
        self.hooks: Dict[str, Callable[[PartitionWindow], None]] = {}
        self.calls: List[Tuple[str, str, datetime]] = []

    def seed(self, policy: TablePolicy, start: datetime,
             state: WindowState = WindowState.PRESENT,
             end: Optional[datetime] = None, child: Optional[str] = None) -> None:
        """Add a child table; ``end`` and ``child`` default to the policy's window."""
        window = window_at(policy, start, state)
        name = child or window.name
        self.state.setdefault(policy.table_id, {})[name] = replace(
            window, end=end or window.end, child=(policy.schema, name),
        )

    def windows(self, table_id: str) -> Dict[datetime, WindowState]:
        return {w.start: w.state for w in self.state.get(table_id, {}).values()}

    def _enter(self, op: str, table_id: str, start: Optional[datetime] = None,
               window: Optional[PartitionWindow] = None) -> None:
        self.calls.append((op, table_id, start))
        if op in self.hooks:
            self.hooks[op](window)
        failure = self.failures.get((op, table_id))
        if failure is not None:
            raise failure

    @staticmethod
    def _children(cur: FakeCursor, window: PartitionWindow) -> Dict[str, PartitionWindow]:
        return cur.work.setdefault(window.table_id, {})

    def partition_exists(self, cur: FakeCursor, window: PartitionWindow) -> bool:
        child = self._children(cur, window).get(window.name)
        return child is not None and child.state in _ATTACHED

    def create_partition(self, cur: FakeCursor, window: PartitionWindow) -> bool:
        self._enter("create_partition", window.table_id, window.start, window)
        children = self._children(cur, window)
        if self.partition_exists(cur, window):
            return False
        if window.name in children:
            raise psycopg2.ProgrammingError(f'relation "{window.name}" already exists')
        for other in children.values():
            if other.state in _ATTACHED and other.start < window.end and window.start < other.end:
                raise psycopg2.ProgrammingError(
                    f'partition "{window.name}" would overlap partition "{other.name}"'
                )
        schema = window.table_id.rpartition(".")[0] or "public"
        children[window.name] = replace(
            window, state=WindowState.PRESENT, child=(schema, window.name),
        )
        return True

    def _set_state(self, cur: FakeCursor, window: PartitionWindow, state: WindowState) -> None:
        children = self._children(cur, window)
        children[window.name] = children[window.name].with_state(state)

    def detach_partition(self, cur: FakeCursor, window: PartitionWindow) -> None:
        self._enter("detach_partition", window.table_id, window.start, window)
        self._set_state(cur, window, WindowState.DETACHED)

    def drop_partition(self, cur: FakeCursor, window: PartitionWindow) -> None:
        self._enter("drop_partition", window.table_id, window.start, window)
        self._children(cur, window).pop(window.name, None)

    def set_compression(self, cur: FakeCursor, window: PartitionWindow) -> None:
        self._enter("set_compression", window.table_id, window.start, window)
        self._set_state(cur, window, WindowState.COMPRESSED)

    def is_compressed(self, cur: FakeCursor, window: PartitionWindow) -> bool:
        child = self._children(cur, window).get(window.name)
        return child is not None and child.state == WindowState.COMPRESSED

    def list_partitions(self, cur: FakeCursor, policy: TablePolicy) -> List[PartitionWindow]:
        self._enter("list_partitions", policy.table_id)
        return sorted(cur.work.get(policy.table_id, {}).values(), key=lambda w: w.start)


class FakeDatabase:
    """Transaction scope for InMemoryPartitionBackend."""

    def __init__(self, backend: InMemoryPartitionBackend):
        self.backend = backend
        self.commits = 0
        self.rollbacks = 0
        self.last_cursor: Optional[FakeCursor] = None

    @contextmanager
    def transaction(self):
        cur = FakeCursor(self.backend.state)
        self.last_cursor = cur
        try:
            yield cur
        except Exception:
            self.rollbacks += 1
            raise
        self.backend.state = cur.work
        self.commits += 1


class FakeCatalog:
    """PolicyCatalog replacement serving a fixed list of policies."""

    def __init__(self, policies: List[TablePolicy]):
        self.policies = list(policies)
        self.last_runs: Dict[str, datetime] = {}
        self.list_calls = 0

    def list_policies(self) -> List[TablePolicy]:
        self.list_calls += 1
        return list(self.policies)

    def record_last_run(self, table_id: str, ts: datetime) -> None:
        self.last_runs[table_id] = ts
