"""
Migration 004: Add regression_models table.

One row per scope holding the amount model weights and its training
corpus as JSON blobs.
"""

import sqlite3

VERSION = 4
NAME = "regression_models"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create regression_models table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS regression_models (
            scope TEXT PRIMARY KEY,
            weights_json TEXT,  -- NULL until first training
            examples_json TEXT NOT NULL,
            examples_since_train INTEGER NOT NULL DEFAULT 0,
            trained_at TEXT,
            updated_at TEXT NOT NULL
        )
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove regression_models table."""
    conn.execute("DROP TABLE IF EXISTS regression_models")
