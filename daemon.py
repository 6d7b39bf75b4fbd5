#!/usr/bin/env python3
"""
pgtime-maintainer: partition maintenance daemon for time-partitioned tables.

Usage:
    pgtime-maintainer migrate
    pgtime-maintainer register metrics.cpu --time-column ts --interval "1 day" \\
        --retention "30 days" --compression "7 days"
    pgtime-maintainer list
    pgtime-maintainer run-once
    pgtime-maintainer run

Connection settings come from DB_* / POSTGRES_* environment variables
(or .env), see config.py.
"""

import argparse
import asyncio
import json
import logging
import sys

from config import get_config
from errors import (
    HostUnavailableError,
    MaintenanceError,
    PolicyValidationError,
    TableNotRegisteredError,
)
from lifecycle import ExitStatus
from version import __version__

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Set up root logging from LOG_LEVEL / LOG_FORMAT."""
    cfg = get_config().logging
    logging.basicConfig(level=cfg.level.upper(), format=cfg.format)


def _build_scheduler(db):
    from catalog import PolicyCatalog
    from execution_gateway import ExecutionGateway
    from maintenance_scheduler import MaintenanceScheduler

    return MaintenanceScheduler(
        PolicyCatalog(db),
        ExecutionGateway(db),
        db_manager=db,
    )


def cmd_run(args) -> int:
    """Run the maintenance loop until SIGTERM/SIGINT."""
    from database import DatabaseManager
    from lifecycle import LifecycleManager

    db = DatabaseManager()
    try:
        db.initialize()
        scheduler = _build_scheduler(db)
        if not args.wait_first:
            scheduler.wake()
        return asyncio.run(LifecycleManager(scheduler).run())
    finally:
        db.close()


def cmd_run_once(args) -> int:
    """Run a single pass and print its report."""
    from database import DatabaseManager

    db = DatabaseManager()
    try:
        db.initialize()
        scheduler = _build_scheduler(db)
        report = asyncio.run(scheduler.run_pass())
    finally:
        db.close()
    print(json.dumps(report.to_dict(), indent=2))
    return ExitStatus.OK


def cmd_register(args) -> int:
    """Register a table (or update its policy)."""
    from catalog import PolicyCatalog
    from database import close_db_manager, get_db_manager
    from partition_engine import TablePolicy
    from time_functions import parse_interval

    policy = TablePolicy(
        table_id=args.table,
        time_column=args.time_column,
        partition_interval=parse_interval(args.interval),
        retention_interval=parse_interval(args.retention) if args.retention else None,
        compression_interval=parse_interval(args.compression) if args.compression else None,
    )
    try:
        PolicyCatalog(get_db_manager()).register_table(policy, verify_parent=not args.no_verify)
    finally:
        close_db_manager()
    print(f"Registered {policy.table_id}.")
    return ExitStatus.OK


def cmd_unregister(args) -> int:
    """Remove a table from maintenance."""
    from catalog import PolicyCatalog
    from database import close_db_manager, get_db_manager

    try:
        removed = PolicyCatalog(get_db_manager()).unregister_table(args.table)
    finally:
        close_db_manager()
    if not removed:
        raise TableNotRegisteredError(f"{args.table} is not registered")
    print(f"Unregistered {args.table}.")
    return ExitStatus.OK


def cmd_list(args) -> int:
    """List registered tables."""
    from catalog import PolicyCatalog
    from database import close_db_manager, get_db_manager

    try:
        policies = PolicyCatalog(get_db_manager()).list_policies()
    finally:
        close_db_manager()
    if not policies:
        print("No tables registered.")
        return ExitStatus.OK

    print(f"\n{'Table':<32} {'Column':<16} {'Interval':<18} {'Retention':<18} {'Compression':<18} {'Last run'}")
    print("-" * 125)
    for p in policies:
        print(
            f"{p.table_id:<32} {p.time_column:<16} {str(p.partition_interval):<18} "
            f"{str(p.retention_interval or '-'):<18} {str(p.compression_interval or '-'):<18} "
            f"{p.last_run_at.isoformat() if p.last_run_at else 'never'}"
        )
    print()
    return ExitStatus.OK


def cmd_migrate(args) -> int:
    """Create or upgrade the catalog schema."""
    from migrate import run_migrations
    return ExitStatus.OK if run_migrations() else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgtime-maintainer",
        description="Create, retire and compress partitions of time-partitioned tables",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Run the maintenance daemon")
    p_run.add_argument(
        "--wait-first", action="store_true",
        help="Wait one interval before the first pass instead of starting immediately",
    )
    p_run.set_defaults(func=cmd_run)

    # run-once
    p_once = subparsers.add_parser("run-once", help="Run a single maintenance pass")
    p_once.set_defaults(func=cmd_run_once)

    # register
    p_reg = subparsers.add_parser("register", help="Register a partitioned table")
    p_reg.add_argument("table", help="Parent table, optionally schema-qualified")
    p_reg.add_argument("--time-column", required=True, help="Partition key column")
    p_reg.add_argument("--interval", required=True, help='Partition width, e.g. "1 day"')
    p_reg.add_argument("--retention", help='Drop partitions older than this, e.g. "30 days"')
    p_reg.add_argument("--compression", help='Compress partitions older than this')
    p_reg.add_argument(
        "--no-verify", action="store_true",
        help="Skip checking that the parent is range-partitioned on the time column",
    )
    p_reg.set_defaults(func=cmd_register)

    # unregister
    p_unreg = subparsers.add_parser("unregister", help="Stop maintaining a table")
    p_unreg.add_argument("table", help="Parent table")
    p_unreg.set_defaults(func=cmd_unregister)

    # list
    p_list = subparsers.add_parser("list", help="List registered tables")
    p_list.set_defaults(func=cmd_list)

    # migrate
    p_migrate = subparsers.add_parser("migrate", help="Create or upgrade the catalog schema")
    p_migrate.set_defaults(func=cmd_migrate)

    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        status = args.func(args)
    except HostUnavailableError as e:
        logger.error("%s", e)
        status = ExitStatus.HOST_UNAVAILABLE
    except PolicyValidationError as e:
        print(f"Invalid policy [{e.code}]: {e}", file=sys.stderr)
        status = e.error_code.exit_status
    except MaintenanceError as e:
        print(f"{e} [{e.code}]", file=sys.stderr)
        status = e.error_code.exit_status
    sys.exit(int(status))


if __name__ == "__main__":
    main()
