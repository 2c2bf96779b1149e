"""
Database connection management.

Provides SQLite connections and the transaction host used by the
consumption executor and purchase ingestion.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "hybrid_billing.db"
DEFAULT_BUSY_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_BUSY_TIMEOUT) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


class SqliteTransactionHost:
    """Opens one connection per transaction and always releases it.

    Transactions start with BEGIN IMMEDIATE so concurrent writers are
    serialized by SQLite's write lock; a waiting writer sees the committed
    state of the previous one.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside BEGIN; COMMIT on exit, ROLLBACK on error.

        The connection is closed on every exit path, including
        BaseException (e.g. KeyboardInterrupt or task cancellation).
        """
        conn = get_connection(self.db_path, self.timeout)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()
