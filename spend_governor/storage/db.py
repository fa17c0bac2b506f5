"""
Database connection management.

Provides SQLite connections and the schema for the shared governance store.
"""

import sqlite3
from pathlib import Path


DEFAULT_DB_PATH = ".spend-governor.db"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS usage_event (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        principal TEXT NOT NULL,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        operation_kind TEXT NOT NULL,
        endpoint TEXT,
        input_units INTEGER NOT NULL,
        output_units INTEGER NOT NULL,
        cost REAL NOT NULL CHECK (cost >= 0),
        timestamp TEXT NOT NULL,
        cached INTEGER NOT NULL DEFAULT 0,
        error INTEGER NOT NULL DEFAULT 0,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_usage_event_timestamp
        ON usage_event (timestamp)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_usage_event_principal_timestamp
        ON usage_event (principal, timestamp)
    """,
    """
    CREATE TABLE IF NOT EXISTS budget_limit (
        principal TEXT NOT NULL,
        budget_window TEXT NOT NULL,
        scope TEXT NOT NULL,
        max_cost REAL NOT NULL,
        max_units INTEGER,
        enabled INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (principal, budget_window)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_record (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        principal TEXT NOT NULL,
        period TEXT NOT NULL,
        threshold INTEGER NOT NULL,
        severity TEXT NOT NULL,
        budget_window TEXT NOT NULL,
        message TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        UNIQUE (principal, period, threshold)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_pause (
        principal TEXT NOT NULL,
        service TEXT NOT NULL,
        status TEXT NOT NULL,
        reason TEXT,
        paused_at TEXT,
        resumed_at TEXT,
        PRIMARY KEY (principal, service)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_counter (
        key TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
)


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection for the governance store.

    A busy timeout lets several processes share one database file.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=10.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
