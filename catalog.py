"""
Metadata catalog accessor.

Reads and writes the table registration rows in ``<schema>.tables``
(created by the Alembic migrations). The catalog's CHECK constraints reject
malformed intervals on their own; registration also validates in Python so
that errors carry a readable message. The daemon only ever writes
``last_run_at`` for an existing row.
"""

import logging
from datetime import datetime
from typing import List, Optional

from psycopg2 import sql

from config import get_config
from database import DatabaseManager
from errors import ErrorCode, PolicyValidationError
from partition_engine import TablePolicy, validate_policy

logger = logging.getLogger(__name__)

_COLUMNS = ("table_id", "time_column", "partition_interval",
            "retention_interval", "compression_interval", "last_run_at")


def _row_to_policy(row) -> TablePolicy:
    """Convert a catalog row tuple into a TablePolicy."""
    return TablePolicy(**dict(zip(_COLUMNS, row)))


class PolicyCatalog:
    """Repository for table registration records."""

    def __init__(self, db_manager: DatabaseManager, schema: Optional[str] = None):
        """Initialize catalog with database manager and catalog schema."""
        self.db = db_manager
        self.schema = schema or get_config().maintenance.catalog_schema

    @property
    def _table(self) -> sql.Composed:
        return sql.SQL("{}.{}").format(sql.Identifier(self.schema), sql.Identifier("tables"))

    def list_policies(self) -> List[TablePolicy]:
        """
        List every registered table in stable catalog order.

        Rows that fail validation are logged and left out, so one broken row
        cannot stop maintenance of the others.

        Returns:
            Policies ordered by table_id
        """
        query = sql.SQL(
            "SELECT {cols} FROM {table} ORDER BY table_id"
        ).format(
            cols=sql.SQL(", ").join(map(sql.Identifier, _COLUMNS)),
            table=self._table,
        )
        with self.db.get_cursor() as cursor:
            cursor.execute(query)
            rows = cursor.fetchall()

        policies = []
        for row in rows:
            policy = _row_to_policy(row)
            try:
                validate_policy(policy)
            except PolicyValidationError as e:
                logger.error("Skipping invalid catalog row for %s: %s", policy.table_id, e)
                continue
            policies.append(policy)
        return policies

    def get_policy(self, table_id: str) -> Optional[TablePolicy]:
        """
        Get one registered table.

        Args:
            table_id: Parent table identifier

        Returns:
            The policy or None if the table is not registered
        """
        query = sql.SQL("SELECT {cols} FROM {table} WHERE table_id = %s").format(
            cols=sql.SQL(", ").join(map(sql.Identifier, _COLUMNS)),
            table=self._table,
        )
        with self.db.get_cursor() as cursor:
            cursor.execute(query, (table_id,))
            row = cursor.fetchone()
            return _row_to_policy(row) if row else None

    def register_table(self, policy: TablePolicy, verify_parent: bool = True) -> TablePolicy:
        """
        Register (or update) a table for maintenance.

        Args:
            policy: Policy to store
            verify_parent: Check that the parent exists and is range-partitioned
                on policy.time_column

        Returns:
            The stored policy

        Raises:
            PolicyValidationError: If the policy or the parent table is unsuitable
        """
        validate_policy(policy)
        if verify_parent:
            self._verify_parent(policy)

        query = sql.SQL("""
            INSERT INTO {table}
                (table_id, time_column, partition_interval,
                 retention_interval, compression_interval)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (table_id) DO UPDATE
            SET time_column = EXCLUDED.time_column,
                partition_interval = EXCLUDED.partition_interval,
                retention_interval = EXCLUDED.retention_interval,
                compression_interval = EXCLUDED.compression_interval
        """).format(table=self._table)

        with self.db.get_cursor() as cursor:
            cursor.execute(query, (
                policy.table_id,
                policy.time_column,
                policy.partition_interval,
                policy.retention_interval,
                policy.compression_interval,
            ))
        logger.info(
            "Registered %s (interval=%s, retention=%s, compression=%s)",
            policy.table_id, policy.partition_interval,
            policy.retention_interval, policy.compression_interval,
        )
        return policy

    def unregister_table(self, table_id: str) -> bool:
        """
        Stop maintaining a table. Existing partitions are left alone.

        Returns:
            True if a registration was removed
        """
        query = sql.SQL("DELETE FROM {table} WHERE table_id = %s").format(table=self._table)
        with self.db.get_cursor() as cursor:
            cursor.execute(query, (table_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info("Unregistered %s", table_id)
        return removed

    def record_last_run(self, table_id: str, ts: datetime) -> None:
        """Stamp the time the table was last maintained."""
        query = sql.SQL("UPDATE {table} SET last_run_at = %s WHERE table_id = %s").format(
            table=self._table,
        )
        with self.db.get_cursor() as cursor:
            cursor.execute(query, (ts, table_id))

    def _verify_parent(self, policy: TablePolicy) -> None:
        """Check the parent is a range-partitioned table keyed on time_column."""
        query = """
            SELECT pt.partstrat, a.attname
            FROM pg_catalog.pg_partitioned_table pt
            JOIN pg_catalog.pg_attribute a
              ON a.attrelid = pt.partrelid
             AND a.attnum = pt.partattrs[0]
            WHERE pt.partrelid = to_regclass(%s)
        """
        with self.db.get_cursor() as cursor:
            cursor.execute(query, (policy.table_id,))
            row = cursor.fetchone()

        if row is None:
            raise PolicyValidationError(
                f"{policy.table_id} does not exist or is not partitioned",
                ErrorCode.INVALID_POLICY,
            )
        strategy, column = row
        if strategy != "r" or column != policy.time_column:
            raise PolicyValidationError(
                f"{policy.table_id} must be range-partitioned on {policy.time_column} "
                f"(found strategy={strategy!r}, column={column!r})"
            )
