"""
Database Utilities

Retry logic and connection setup for the SQLite store. All functions here are
blocking and are expected to run on the database thread pool.
"""

import contextlib
import functools
import logging
import os
import sqlite3
import time
from typing import Any, Callable, Iterator

log = logging.getLogger("AbuseMonitor.DbUtils")

RETRYABLE_ERRORS = ("locked", "busy", "unable to open")


def retry_on_db_lock(max_attempts: int = 3, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator that retries a database operation on lock/busy errors with exponential backoff.

    Any other error is raised immediately.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
                    error_msg = str(e).lower()
                    if not any(err in error_msg for err in RETRYABLE_ERRORS):
                        raise
                    if attempt == max_attempts:
                        log.error(f"Database operation failed after {max_attempts} attempts: {e}")
                        raise
                    log.warning(
                        f"Database operation failed (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    # Exponential backoff with jitter
                    delay = min(delay * 2 + (time.time() % 0.1), max_delay)

        return wrapper

    return decorator


def get_optimized_connection(db_path: str, timeout: float = 30.0, read_only: bool = False) -> sqlite3.Connection:
    """Creates an SQLite connection tuned for one writer and concurrent readers."""
    if read_only:
        uri = f"file:{os.path.abspath(db_path)}?mode=ro"
        conn = sqlite3.connect(uri, timeout=timeout, uri=True)
    else:
        conn = sqlite3.connect(db_path, timeout=timeout)

    cursor = conn.cursor()
    if not read_only:
        # WAL mode for better concurrency (persistent setting)
        cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA temp_store=MEMORY;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")
    return conn


@contextlib.contextmanager
def db_connection(db_path: str, timeout: float = 30.0, read_only: bool = False) -> Iterator[sqlite3.Connection]:
    """
    Yields a connection inside a transaction: commit on success, rollback on
    error, and always close.
    """
    conn = get_optimized_connection(db_path, timeout=timeout, read_only=read_only)
    try:
        with conn:
            yield conn
    finally:
        conn.close()
