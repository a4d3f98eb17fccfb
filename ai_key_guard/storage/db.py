"""
Database connection management.

Provides the SQLite connection that backs watermark state, rotation jobs,
run locks and the usage snapshot log.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".ai-key-guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 10.0) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    The connection is opened in autocommit mode so callers control
    transactions explicitly with ``BEGIN IMMEDIATE``, which takes the write
    lock up front and makes read-modify-write sequences atomic across
    processes.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
