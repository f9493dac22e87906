"""
Migration runner for the learned-state schema.

Migrations live next to this module as ``{version}_{name}.py``
(e.g. 001_amount_corrections.py) and each defines:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None
- downgrade(conn: Connection) -> None  # optional
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "tithebook.state_store.migrations"


@dataclass
class Migration:
    """A single versioned schema change."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Discover migration modules, sorted by version."""
    migrations = []

    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        try:
            module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{py_file.stem}")
        except ImportError as e:
            logger.warning("Failed to import migration %s: %s", py_file.stem, e)
            continue

        try:
            migrations.append(
                Migration(
                    version=module.VERSION,
                    name=module.NAME,
                    upgrade=module.upgrade,
                    downgrade=getattr(module, "downgrade", None),
                )
            )
        except AttributeError as e:
            logger.warning("Migration %s is incomplete: %s", py_file.stem, e)

    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Applies migrations in version order.

    Applied versions are recorded in a ``migrations`` table so each one runs
    exactly once per database.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        cursor = self.conn.execute("SELECT version FROM migrations")
        return {row[0] for row in cursor.fetchall()}

    def get_current_version(self) -> int:
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result if result is not None else 0

    def get_pending(self) -> list[Migration]:
        applied = self.get_applied_versions()
        return [m for m in get_all_migrations() if m.version not in applied]

    def apply(self, migration: Migration) -> None:
        """Apply one migration inside its own commit."""
        logger.info("Applying migration %03d_%s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Migration %03d failed: %s", migration.version, e)
            raise

    def rollback(self, migration: Migration) -> None:
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version} ({migration.name}) does not support rollback"
            )

        logger.info("Rolling back migration %03d_%s", migration.version, migration.name)
        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Rollback of migration %03d failed: %s", migration.version, e)
            raise

    def run_pending(self) -> list[int]:
        """Apply every pending migration. Returns the applied versions."""
        applied_versions = []
        for migration in self.get_pending():
            self.apply(migration)
            applied_versions.append(migration.version)

        if applied_versions:
            logger.info("Applied %d migrations: %s", len(applied_versions), applied_versions)
        return applied_versions

    def migrate_to(self, target_version: int) -> None:
        """Move the schema up or down to ``target_version``."""
        current = self.get_current_version()
        by_version = {m.version: m for m in get_all_migrations()}

        if target_version > current:
            for version in range(current + 1, target_version + 1):
                if version in by_version:
                    self.apply(by_version[version])
        elif target_version < current:
            for version in range(current, target_version, -1):
                if version in by_version:
                    self.rollback(by_version[version])
