"""
Process-scoped Postgres connection pool.

Lambda keeps module state warm between invocations, so the pool is created
once per process and reused. Connections are handed out through
``connection()``, which always returns them to the pool, including on error
paths, and discards connections that broke while in use.
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg2
from psycopg2 import pool as pg_pool

from storefront_ingest.config import Config
from storefront_ingest.errors import StorageError
from storefront_ingest.utils.logging_utils import log_error, log_progress
from storefront_ingest.utils.retry import RetryPolicy

TRANSIENT_MARKERS = (
    "connection",
    "terminating connection",
    "server closed the connection",
    "too many connections",
    "timeout",
    "timed out",
    "could not connect",
    "not queryable",
)


def is_transient_db_error(error: BaseException) -> bool:
    """
    Decide whether a database error is worth retrying.

    Args:
        error: Exception raised by psycopg2 or the pool

    Returns:
        bool: True for connection-level trouble, False for SQL/data errors
    """
    if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError, pg_pool.PoolError)):
        return True
    if isinstance(error, psycopg2.Error):
        message = str(error).lower()
        return any(marker in message for marker in TRANSIENT_MARKERS)
    return False


STORAGE_RETRY = RetryPolicy(
    max_retries=4, base_delay=0.4, max_delay=3.0, jitter=0.2, retryable=is_transient_db_error
)

_pool: Optional[pg_pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()


def get_pool() -> pg_pool.ThreadedConnectionPool:
    """
    Return the process-wide pool, creating it on first use.

    Returns:
        ThreadedConnectionPool configured from Config
    """
    global _pool
    with _pool_lock:
        if _pool is None or _pool.closed:
            details: Dict[str, Any] = Config.get_db_connection_details()
            log_progress("DB Pool", f"Creating pool (min={Config.DB_POOL_MIN}, max={Config.DB_POOL_MAX})")
            _pool = STORAGE_RETRY.call(
                lambda: pg_pool.ThreadedConnectionPool(
                    Config.DB_POOL_MIN, Config.DB_POOL_MAX, **details
                ),
                section="DB Pool",
            )
        return _pool


def close_pool() -> None:
    """Close every pooled connection (used by tests and the reset utility)."""
    global _pool
    with _pool_lock:
        if _pool is not None and not _pool.closed:
            _pool.closeall()
        _pool = None


def _acquire(pool: pg_pool.ThreadedConnectionPool):
    conn = pool.getconn()
    try:
        # Ping; a pooled connection may have been closed by the server while idle.
        with conn.cursor() as cursor:
            cursor.execute("SELECT 1")
        conn.rollback()
    except Exception:
        pool.putconn(conn, close=True)
        raise
    return conn


@contextmanager
def connection(pool: Optional[pg_pool.ThreadedConnectionPool] = None) -> Iterator[Any]:
    """
    Acquire a pooled connection with retries and guarantee its release.

    Open transactions are rolled back on exit, so callers commit explicitly
    at their checkpoints.

    Args:
        pool: Pool to draw from (defaults to the process-wide pool)

    Yields:
        psycopg2 connection

    Raises:
        StorageError: If no healthy connection could be acquired
    """
    pool = pool or get_pool()
    try:
        conn = STORAGE_RETRY.call(lambda: _acquire(pool), section="DB Pool")
    except (psycopg2.Error, pg_pool.PoolError) as e:
        log_error("DB Pool", e)
        raise StorageError(f"Could not acquire database connection: {e}") from e

    broken = False
    try:
        yield conn
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        broken = True
        raise
    finally:
        if not broken and not conn.closed:
            try:
                conn.rollback()
            except psycopg2.Error:
                broken = True
        pool.putconn(conn, close=broken or bool(conn.closed))


def run_with_retry(conn_fn, pool: Optional[pg_pool.ThreadedConnectionPool] = None):
    """
    Run ``conn_fn(conn)`` on a fresh connection, retrying transient failures.

    Only use for idempotent units of work: a retry re-runs the whole callable
    on a new connection.

    Args:
        conn_fn: Callable taking a connection
        pool: Optional pool override

    Returns:
        Whatever ``conn_fn`` returns
    """

    def attempt():
        with connection(pool) as conn:
            return conn_fn(conn)

    return STORAGE_RETRY.call(attempt, section="DB")
