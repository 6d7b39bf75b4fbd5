"""Table registration catalog.

Creates the catalog schema and the ``tables`` registry read by the
maintenance daemon. The CHECK constraints make the database itself reject
non-positive intervals, month-based partition widths and compression
horizons beyond retention.

Revision ID: 001
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op

from config import get_config

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _schema() -> str:
    return get_config().maintenance.catalog_schema


def upgrade() -> None:
    """Create the catalog schema and registry table."""
    schema = _schema()
    op.execute(f'CREATE SCHEMA IF NOT EXISTS "{schema}"')
    op.execute(
        f"""
        CREATE TABLE IF NOT EXISTS "{schema}".tables (
            table_id             TEXT PRIMARY KEY,
            time_column          TEXT NOT NULL,
            partition_interval   INTERVAL NOT NULL,
            retention_interval   INTERVAL,
            compression_interval INTERVAL,
            last_run_at          TIMESTAMPTZ,
            created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),

            CONSTRAINT partition_interval_positive
                CHECK (partition_interval > INTERVAL '0'),
            CONSTRAINT partition_interval_fixed
                CHECK (date_part('month', partition_interval) = 0
                       AND date_part('year', partition_interval) = 0),
            CONSTRAINT retention_interval_positive
                CHECK (retention_interval IS NULL OR retention_interval > INTERVAL '0'),
            CONSTRAINT compression_interval_positive
                CHECK (compression_interval IS NULL OR compression_interval > INTERVAL '0'),
            CONSTRAINT compression_within_retention
                CHECK (compression_interval IS NULL
                       OR retention_interval IS NULL
                       OR compression_interval <= retention_interval)
        )
        """
    )


def downgrade() -> None:
    op.execute(f'DROP TABLE IF EXISTS "{_schema()}".tables')
