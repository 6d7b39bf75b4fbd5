"""
Database connection and operations module.

Provides connection pooling, transaction scopes and host-loss detection
for the pgtime maintenance daemon.
"""

import logging
from contextlib import contextmanager
from typing import Optional, List

import psycopg2
from psycopg2 import pool
from psycopg2.extensions import QueryCanceledError

from config import DatabaseConfig, get_config
from errors import HostUnavailableError

logger = logging.getLogger(__name__)

# SQLSTATEs that mean the session is gone (class 08 is matched by prefix)
_SESSION_TERMINATED_SQLSTATES = ('57P01', '57P02', '57P03')


class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class ConnectionPoolError(DatabaseError):
    """Exception for connection pool errors."""
    pass


class QueryError(DatabaseError):
    """Exception for query execution errors."""
    pass


def is_connection_lost(exc: BaseException, conn=None) -> bool:
    """Tell a dead session apart from an ordinary statement failure.

    Args:
        exc: The error raised by psycopg2
        conn: The connection the error was raised on, if known

    Returns:
        True if the connection to the host can no longer be used
    """
    if isinstance(exc, QueryCanceledError):
        return False
    if conn is not None and conn.closed:
        return True
    if isinstance(exc, psycopg2.InterfaceError):
        return True
    pgcode = getattr(exc, 'pgcode', None)
    if pgcode:
        return pgcode.startswith('08') or pgcode in _SESSION_TERMINATED_SQLSTATES
    # libpq reports a dropped socket as an OperationalError without SQLSTATE
    return isinstance(exc, psycopg2.OperationalError)


class DatabaseManager:
    """
    Manages database connections with connection pooling.

    Provides context manager interfaces for cursors and transactions with
    automatic connection management. A lost connection surfaces as
    HostUnavailableError; everything else propagates to the caller.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        """Initialize database manager."""
        self.config = config or get_config().database
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._initialized = False

    def initialize(self) -> None:
        """Initialize connection pool."""
        if self._initialized:
            logger.warning("Database manager already initialized")
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=self.config.pool_size,
                host=self.config.host,
                port=self.config.port,
                dbname=self.config.name,
                user=self.config.user,
                password=self.config.password,
                connect_timeout=self.config.connect_timeout,
                application_name=self.config.application_name,
            )
            self._initialized = True
            logger.info(
                "Database connection pool initialized (target=%s)",
                self.config.target,
            )
        except psycopg2.OperationalError as e:
            logger.error("Failed to connect to %s: %s", self.config.target, e)
            raise HostUnavailableError(f"Cannot connect to {self.config.target}: {e}") from e
        except Exception as e:
            logger.error("Failed to initialize connection pool: %s", e)
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}") from e

    def close(self) -> None:
        """Close all connections in the pool."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            self._initialized = False
            logger.info("Database connection pool closed")

    def reconnect(self, config: DatabaseConfig) -> None:
        """Point the manager at a (possibly new) connection target."""
        logger.info("Reconnecting database pool: %s -> %s", self.config.target, config.target)
        self.close()
        self.config = config
        self.initialize()

    @contextmanager
    def get_connection(self):
        """
        Get a connection from the pool as a context manager.

        Yields:
            psycopg2.connection: Database connection

        Raises:
            HostUnavailableError: If the host cannot be reached or the session dies
            ConnectionPoolError: If the pool has no connection to hand out
        """
        if not self._initialized:
            self.initialize()

        try:
            conn = self._pool.getconn()
        except psycopg2.OperationalError as e:
            raise HostUnavailableError(f"Cannot connect to {self.config.target}: {e}") from e
        except pool.PoolError as e:
            raise ConnectionPoolError(f"Connection error: {e}") from e

        try:
            yield conn
        except psycopg2.Error as e:
            if is_connection_lost(e, conn):
                logger.error("Lost connection to %s: %s", self.config.target, e)
                raise HostUnavailableError(f"Lost connection to {self.config.target}: {e}") from e
            conn.rollback()
            raise
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    @contextmanager
    def get_cursor(self):
        """
        Get a cursor from a pooled connection, committing on success.

        Yields:
            psycopg2.cursor: Database cursor

        Raises:
            QueryError: If a statement fails on a healthy connection
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except psycopg2.Error as e:
                if is_connection_lost(e, conn):
                    raise
                conn.rollback()
                logger.error("Cursor operation error: %s", e)
                raise QueryError(f"Query execution failed: {e}") from e
            finally:
                if not conn.closed:
                    cursor.close()

    @contextmanager
    def transaction(self):
        """
        Open one transaction and yield its cursor.

        Commits when the block exits normally and rolls back on any error,
        re-raising the original psycopg2 exception so callers can classify it.
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                if not conn.closed:
                    conn.rollback()
                raise
            finally:
                if not conn.closed:
                    cursor.close()

    def execute_query(
        self,
        query: str,
        params: Optional[tuple] = None,
        fetch: bool = False
    ) -> Optional[List[tuple]]:
        """
        Execute a query with optional parameters.

        Args:
            query: SQL query string
            params: Query parameters
            fetch: If True, fetch and return results

        Returns:
            Query results if fetch=True, None otherwise
        """
        with self.get_cursor() as cursor:
            cursor.execute(query, params)
            if fetch:
                return cursor.fetchall()
            return None

    def ping(self) -> bool:
        """Return True if the host answers a trivial query."""
        try:
            self.execute_query("SELECT 1", fetch=True)
            return True
        except (HostUnavailableError, DatabaseError) as e:
            logger.warning("Database ping failed for %s: %s", self.config.target, e)
            return False


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()
    return _db_manager


def close_db_manager() -> None:
    """Close global database manager."""
    global _db_manager
    if _db_manager:
        _db_manager.close()
        _db_manager = None
