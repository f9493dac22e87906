"""
Migration 003: Add char_substitutions table.

Frequency counts of single-character OCR substitutions learned from
aligned (original, corrected) amount pairs.
"""

import sqlite3

VERSION = 3
NAME = "char_substitutions"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create char_substitutions table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS char_substitutions (
            scope TEXT NOT NULL,
            from_char TEXT NOT NULL,
            to_char TEXT NOT NULL,
            frequency INTEGER NOT NULL DEFAULT 0,
            contexts TEXT,  -- JSON array of recent source strings
            updated_at TEXT NOT NULL,
            PRIMARY KEY (scope, from_char, to_char)
        )
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove char_substitutions table."""
    conn.execute("DROP TABLE IF EXISTS char_substitutions")
