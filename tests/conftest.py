"""
Pytest configuration and fixtures for pgtime-maintainer tests.
"""

import os
import sys

import pytest
import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Set test environment variables before importing config
# Use a SEPARATE test database to avoid touching real partitions
os.environ.setdefault('DB_HOST', 'localhost')
os.environ.setdefault('DB_PORT', '5432')
os.environ['POSTGRES_DB'] = 'pgtime_test'
os.environ.setdefault('POSTGRES_USER', 'postgres')
os.environ.setdefault('POSTGRES_PASSWORD', 'postgres')
os.environ['DB_CONNECT_TIMEOUT'] = '3'

from helpers import FakeCatalog, FakeDatabase, InMemoryPartitionBackend  # noqa: E402


@pytest.fixture(scope='session')
def test_config():
    """Provide test configuration."""
    from config import AppConfig
    return AppConfig.load()


@pytest.fixture(scope='session')
def db_connection_params(test_config):
    """Provide database connection parameters."""
    return {
        'host': test_config.database.host,
        'port': test_config.database.port,
        'dbname': test_config.database.name,
        'user': test_config.database.user,
        'password': test_config.database.password,
        'connect_timeout': test_config.database.connect_timeout,
    }


@pytest.fixture(scope='session')
def setup_test_database(db_connection_params):
    """Create the test database and catalog schema if they don't exist."""
    conn_params = db_connection_params.copy()
    test_db_name = conn_params.pop('dbname')
    conn_params['dbname'] = 'postgres'

    try:
        conn = psycopg2.connect(**conn_params)
    except psycopg2.OperationalError as e:
        pytest.skip(f"Could not connect to PostgreSQL: {e}")

    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
    cursor = conn.cursor()
    cursor.execute("SELECT 1 FROM pg_database WHERE datname = %s", (test_db_name,))
    if not cursor.fetchone():
        cursor.execute(f"CREATE DATABASE {test_db_name}")
    cursor.close()
    conn.close()

    from migrate import run_migrations
    if not run_migrations():
        pytest.skip("Could not apply catalog migrations to the test database")

    yield test_db_name


@pytest.fixture(scope='function')
def db_manager(setup_test_database):
    """Provide database manager for tests."""
    from database import DatabaseManager

    manager = DatabaseManager()
    manager.initialize()

    yield manager

    # Cleanup: drop registrations and sample tables after each test
    with manager.get_cursor() as cursor:
        cursor.execute("TRUNCATE TABLE pgtime.tables")
        cursor.execute("DROP SCHEMA IF EXISTS pgtime_it CASCADE")

    manager.close()


@pytest.fixture
def memory_backend():
    """Provide an in-memory partition backend."""
    return InMemoryPartitionBackend()


@pytest.fixture
def fake_db(memory_backend):
    """Provide a transaction scope over the in-memory backend."""
    return FakeDatabase(memory_backend)


@pytest.fixture
def gateway(fake_db, memory_backend):
    """Provide an ExecutionGateway wired to the in-memory backend."""
    from execution_gateway import ExecutionGateway
    return ExecutionGateway(fake_db, memory_backend, operation_timeout=5)


@pytest.fixture
def fake_catalog():
    return FakeCatalog([])
