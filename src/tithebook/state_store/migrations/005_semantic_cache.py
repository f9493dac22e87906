"""
Migration 005: Add semantic_cache table.

Caches AI name-matching verdicts, both positive (member id) and negative
(NULL member id), keyed by a hash of the normalized name and candidates.
"""

import sqlite3

VERSION = 5
NAME = "semantic_cache"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create semantic_cache table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS semantic_cache (
            cache_key TEXT PRIMARY KEY,
            matched_member_id TEXT,
            confidence REAL NOT NULL,
            model TEXT NOT NULL,
            prompt_version TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            hit_count INTEGER DEFAULT 0
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_semantic_cache_expires ON semantic_cache(expires_at)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove semantic_cache table."""
    conn.execute("DROP TABLE IF EXISTS semantic_cache")
