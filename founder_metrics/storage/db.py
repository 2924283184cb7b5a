"""
Database connection management.

Provides SQLite connections to the main system database (accounts,
subscriptions, transactions, pricing) and the founder platform database
(feature flags).
"""

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


def get_connection(db_path: str, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled and rows
        addressable by column name
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@dataclass(frozen=True)
class Datastore:
    """Handle to both databases.

    Constructed by the process entry point and passed to every reader and
    repository. Connections are opened per call and closed afterwards, so a
    single handle is safe to share between threads.
    """
    main_path: str
    founder_path: str
    timeout: float = 5.0

    @contextmanager
    def main(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.main_path, self.timeout)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def founder(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.founder_path, self.timeout)
        try:
            yield conn
        finally:
            conn.close()
