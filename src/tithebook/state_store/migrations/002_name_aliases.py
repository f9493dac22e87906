"""
Migration 002: Add name_aliases table.

Each row is one user confirmation that an extracted (handwritten) name
belongs to a roster member.
"""

import sqlite3

VERSION = 2
NAME = "name_aliases"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create name_aliases table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS name_aliases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scope TEXT NOT NULL,
            extracted_name TEXT NOT NULL,
            member_id TEXT NOT NULL,
            member_name TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_aliases_scope_name "
        "ON name_aliases(scope, extracted_name)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove name_aliases table."""
    conn.execute("DROP TABLE IF EXISTS name_aliases")
