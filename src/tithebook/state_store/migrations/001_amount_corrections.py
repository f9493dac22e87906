"""
Migration 001: Add amount_corrections table.

Append-only log of user amount corrections per assembly scope
(plus the __GLOBAL__ scope for promoted corrections).
"""

import sqlite3

VERSION = 1
NAME = "amount_corrections"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create amount_corrections table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS amount_corrections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scope TEXT NOT NULL,
            original TEXT NOT NULL,
            corrected REAL NOT NULL,
            member_id TEXT,
            source TEXT NOT NULL DEFAULT 'manual',
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_corrections_scope_original "
        "ON amount_corrections(scope, original)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_corrections_pair "
        "ON amount_corrections(original, corrected)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove amount_corrections table."""
    conn.execute("DROP TABLE IF EXISTS amount_corrections")
