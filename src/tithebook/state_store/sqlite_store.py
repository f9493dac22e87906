"""
SQLite-based state store implementation.

Tables:
- members: Stored master roster per assembly
- amount_corrections: User amount corrections (learned state)
- name_aliases: Confirmed extracted-name -> member links
- char_substitutions: OCR character substitution counts
- regression_models: Serialized amount model weights and examples
- semantic_cache: Cached AI name-matching verdicts
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..schemas.member_record import MemberRecord

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "__GLOBAL__"


class StorageUnavailableError(Exception):
    """The learned-state database cannot be opened or written."""

    pass


def utc_now() -> str:
    """Current UTC time as an ISO timestamp with a trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class AmountCorrection:
    """One observed amount correction."""

    id: int
    scope: str
    original: str  # trimmed + uppercased OCR text
    corrected: float
    member_id: str | None
    source: str
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AmountCorrection":
        """Create from database row."""
        return cls(
            id=row["id"],
            scope=row["scope"],
            original=row["original"],
            corrected=row["corrected"],
            member_id=row["member_id"],
            source=row["source"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "original": self.original,
            "corrected": self.corrected,
            "member_id": self.member_id,
            "source": self.source,
            "created_at": self.created_at,
        }


@dataclass
class NameAlias:
    """One confirmed link from an extracted name to a member."""

    id: int
    scope: str
    extracted_name: str  # lowercased + trimmed
    member_id: str
    member_name: str
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "NameAlias":
        """Create from database row."""
        return cls(
            id=row["id"],
            scope=row["scope"],
            extracted_name=row["extracted_name"],
            member_id=row["member_id"],
            member_name=row["member_name"],
            created_at=row["created_at"],
        )


@dataclass
class CharSubstitution:
    """Learned count for one OCR character substitution."""

    scope: str
    from_char: str
    to_char: str
    frequency: int
    contexts: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CharSubstitution":
        """Create from database row."""
        return cls(
            scope=row["scope"],
            from_char=row["from_char"],
            to_char=row["to_char"],
            frequency=row["frequency"],
            contexts=json.loads(row["contexts"]) if row["contexts"] else [],
        )


class StateStore:
    """
    SQLite-based state store for learned state and the member roster.

    Provides persistent tracking of:
    - Master roster per assembly
    - Amount corrections and name aliases
    - Character substitution counts
    - Regression model blobs
    - Semantic verdict cache

    Thread-safe for single-writer scenarios; callers serialize writes per
    scope (see ``tithebook.learning.locks``).
    """

    SCHEMA_VERSION = 1
    MAX_SUBSTITUTION_CONTEXTS = 10
    # Seconds to wait on a locked database
    CONNECT_TIMEOUT = 30.0

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)

        Raises:
            StorageUnavailableError: If the database cannot be created or opened
        """
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
            if run_migrations:
                self._run_migrations()
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailableError(f"Cannot open state store at {self.db_path}: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.CONNECT_TIMEOUT)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        SQLite failures (locked database, disk or permission errors) are
        raised as StorageUnavailableError.
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot connect to {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailableError(f"State store error at {self.db_path}: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            # Master roster
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS members (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scope TEXT NOT NULL,
                    membership_number TEXT,
                    old_membership_number TEXT,
                    surname TEXT,
                    first_name TEXT,
                    record_json TEXT NOT NULL,
                    first_seen TEXT,
                    custom_order INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_members_scope ON members(scope)")

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Member roster methods

    def list_members(self, scope: str) -> list[MemberRecord]:
        """Get the stored roster for an assembly, in custom order."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM members WHERE scope = ?
                ORDER BY custom_order IS NULL, custom_order, id
            """,
                (scope.lower(),),
            ).fetchall()

        members = []
        for row in rows:
            member = MemberRecord.from_dict(json.loads(row["record_json"]))
            member.db_id = row["id"]
            member.first_seen_date = row["first_seen"]
            member.custom_order = row["custom_order"]
            members.append(member)
        return members

    def add_member(self, scope: str, member: MemberRecord) -> int:
        """Insert a member into an assembly roster. Returns the row id."""
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO members
                (scope, membership_number, old_membership_number, surname, first_name,
                 record_json, first_seen, custom_order, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    scope.lower(),
                    member.membership_number or None,
                    member.old_membership_number or None,
                    member.surname,
                    member.first_name,
                    json.dumps(member.to_dict()),
                    member.first_seen_date or now,
                    member.custom_order,
                    now,
                    now,
                ),
            )
            member.db_id = cursor.lastrowid
            return cursor.lastrowid

    def update_member(self, member: MemberRecord) -> bool:
        """Persist changes to an existing member (matched by ``db_id``)."""
        if member.db_id is None:
            raise ValueError("Cannot update a member without db_id")
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE members
                SET membership_number = ?, old_membership_number = ?, surname = ?,
                    first_name = ?, record_json = ?, custom_order = ?, updated_at = ?
                WHERE id = ?
            """,
                (
                    member.membership_number or None,
                    member.old_membership_number or None,
                    member.surname,
                    member.first_name,
                    json.dumps(member.to_dict()),
                    member.custom_order,
                    utc_now(),
                    member.db_id,
                ),
            )
            return cursor.rowcount > 0

    def get_max_custom_order(self, scope: str) -> int:
        with self._transaction() as conn:
            result = conn.execute(
                "SELECT MAX(custom_order) FROM members WHERE scope = ?", (scope.lower(),)
            ).fetchone()[0]
        return result or 0

    def delete_members(self, scope: str) -> int:
        """Purge an assembly roster. Returns count of deleted rows."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM members WHERE scope = ?", (scope.lower(),))
            return cursor.rowcount

    # Amount correction methods

    def add_amount_correction(
        self,
        scope: str,
        original: str,
        corrected: float,
        member_id: str | None = None,
        source: str = "manual",
        created_at: str | None = None,
    ) -> int:
        """Append an amount correction observation."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO amount_corrections
                (scope, original, corrected, member_id, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (scope, original, corrected, member_id, source, created_at or utc_now()),
            )
            return cursor.lastrowid

    def get_amount_corrections(
        self, scope: str | None = None, original: str | None = None
    ) -> list[AmountCorrection]:
        """Get correction observations, optionally filtered."""
        query = "SELECT * FROM amount_corrections WHERE 1=1"
        params: list[Any] = []
        if scope is not None:
            query += " AND scope = ?"
            params.append(scope)
        if original is not None:
            query += " AND original = ?"
            params.append(original)
        query += " ORDER BY id"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [AmountCorrection.from_row(row) for row in rows]

    def has_amount_correction(self, scope: str, original: str, corrected: float) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM amount_corrections
                WHERE scope = ? AND original = ? AND corrected = ?
                LIMIT 1
            """,
                (scope, original, corrected),
            ).fetchone()
        return row is not None

    def count_correction_scopes(self, original: str, corrected: float) -> int:
        """Count distinct assembly scopes that recorded the same correction."""
        with self._transaction() as conn:
            result = conn.execute(
                """
                SELECT COUNT(DISTINCT scope) FROM amount_corrections
                WHERE original = ? AND corrected = ? AND scope != ?
            """,
                (original, corrected, GLOBAL_SCOPE),
            ).fetchone()[0]
        return result or 0

    def get_common_corrections(self, scope: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most frequent (original, corrected) pairs for a scope."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT original, corrected, COUNT(*) AS occurrences
                FROM amount_corrections
                WHERE scope = ?
                GROUP BY original, corrected
                ORDER BY occurrences DESC, MAX(id) DESC
                LIMIT ?
            """,
                (scope, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def delete_amount_corrections(self, scope: str) -> int:
        """Delete all corrections for a scope. Returns count of deleted rows."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM amount_corrections WHERE scope = ?", (scope,))
            return cursor.rowcount

    # Name alias methods

    def add_name_alias(
        self, scope: str, extracted_name: str, member_id: str, member_name: str
    ) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO name_aliases
                (scope, extracted_name, member_id, member_name, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (scope, extracted_name, member_id, member_name, utc_now()),
            )
            return cursor.lastrowid

    def get_alias_counts(
        self, scope: str, extracted_name: str | None = None
    ) -> list[dict[str, Any]]:
        """Confirmation counts per (extracted name, member), most confirmed first."""
        query = """
            SELECT extracted_name, member_id, MAX(member_name) AS member_name,
                   COUNT(*) AS occurrences, MIN(id) AS first_id
            FROM name_aliases
            WHERE scope = ?
        """
        params: list[Any] = [scope]
        if extracted_name is not None:
            query += " AND extracted_name = ?"
            params.append(extracted_name)
        query += """
            GROUP BY extracted_name, member_id
            ORDER BY occurrences DESC, first_id ASC
        """

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def delete_name_aliases(self, scope: str, extracted_name: str | None = None) -> int:
        with self._transaction() as conn:
            if extracted_name is None:
                cursor = conn.execute("DELETE FROM name_aliases WHERE scope = ?", (scope,))
            else:
                cursor = conn.execute(
                    "DELETE FROM name_aliases WHERE scope = ? AND extracted_name = ?",
                    (scope, extracted_name),
                )
            return cursor.rowcount

    # Character substitution methods

    def get_char_substitutions(self, scope: str) -> list[CharSubstitution]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM char_substitutions WHERE scope = ?
                ORDER BY from_char, frequency DESC
            """,
                (scope,),
            ).fetchall()
        return [CharSubstitution.from_row(row) for row in rows]

    def increment_char_substitutions(
        self, scope: str, pairs: list[tuple[str, str]], context: str
    ) -> None:
        """Count one observation of each (from, to) pair, keeping recent contexts."""
        now = utc_now()
        with self._transaction() as conn:
            for from_char, to_char in pairs:
                row = conn.execute(
                    """
                    SELECT frequency, contexts FROM char_substitutions
                    WHERE scope = ? AND from_char = ? AND to_char = ?
                """,
                    (scope, from_char, to_char),
                ).fetchone()

                if row:
                    contexts = json.loads(row["contexts"]) if row["contexts"] else []
                    if context not in contexts:
                        contexts.append(context)
                    contexts = contexts[-self.MAX_SUBSTITUTION_CONTEXTS :]
                    conn.execute(
                        """
                        UPDATE char_substitutions
                        SET frequency = frequency + 1, contexts = ?, updated_at = ?
                        WHERE scope = ? AND from_char = ? AND to_char = ?
                    """,
                        (json.dumps(contexts), now, scope, from_char, to_char),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO char_substitutions
                        (scope, from_char, to_char, frequency, contexts, updated_at)
                        VALUES (?, ?, ?, 1, ?, ?)
                    """,
                        (scope, from_char, to_char, json.dumps([context]), now),
                    )

    def delete_char_substitutions(self, scope: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM char_substitutions WHERE scope = ?", (scope,))
            return cursor.rowcount

    # Regression model methods

    def get_regression_model(self, scope: str) -> dict[str, Any] | None:
        """Get the stored model blob for a scope."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM regression_models WHERE scope = ?", (scope,)
            ).fetchone()
        return dict(row) if row else None

    def save_regression_model(
        self,
        scope: str,
        weights_json: str | None,
        examples_json: str,
        examples_since_train: int,
        trained_at: str | None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO regression_models
                (scope, weights_json, examples_json, examples_since_train, trained_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope) DO UPDATE SET
                    weights_json = excluded.weights_json,
                    examples_json = excluded.examples_json,
                    examples_since_train = excluded.examples_since_train,
                    trained_at = excluded.trained_at,
                    updated_at = excluded.updated_at
            """,
                (scope, weights_json, examples_json, examples_since_train, trained_at, utc_now()),
            )

    def delete_regression_model(self, scope: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM regression_models WHERE scope = ?", (scope,))
            return cursor.rowcount > 0

    # Semantic cache methods

    def get_semantic_cache(self, cache_key: str) -> dict[str, Any] | None:
        """Get a cached semantic verdict by key (expired entries are ignored)."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM semantic_cache
                WHERE cache_key = ? AND expires_at > ?
            """,
                (cache_key, utc_now()),
            ).fetchone()

            if row:
                conn.execute(
                    "UPDATE semantic_cache SET hit_count = hit_count + 1 WHERE cache_key = ?",
                    (cache_key,),
                )
                return dict(row)
            return None

    def set_semantic_cache(
        self,
        cache_key: str,
        matched_member_id: str | None,
        confidence: float,
        model: str,
        prompt_version: str,
        ttl_days: int = 30,
    ) -> None:
        """Store a semantic verdict (``matched_member_id`` None = negative verdict)."""
        now = datetime.now(timezone.utc)
        expires = now + timedelta(days=ttl_days)

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO semantic_cache
                (cache_key, matched_member_id, confidence, model, prompt_version,
                 created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    matched_member_id = excluded.matched_member_id,
                    confidence = excluded.confidence,
                    model = excluded.model,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at,
                    hit_count = 0
            """,
                (
                    cache_key,
                    matched_member_id,
                    confidence,
                    model,
                    prompt_version,
                    now.isoformat().replace("+00:00", "Z"),
                    expires.isoformat().replace("+00:00", "Z"),
                ),
            )

    def clear_expired_semantic_cache(self) -> int:
        """Clear expired cache entries. Returns count of deleted rows."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM semantic_cache WHERE expires_at < ?", (utc_now(),))
            return cursor.rowcount

    def clear_semantic_cache(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM semantic_cache")
            return cursor.rowcount

    # Statistics

    def get_stats(self) -> dict[str, int]:
        """Get store statistics."""
        with self._transaction() as conn:
            stats = {}

            stats["members"] = conn.execute("SELECT COUNT(*) FROM members").fetchone()[0]
            stats["assemblies"] = conn.execute(
                "SELECT COUNT(DISTINCT scope) FROM members"
            ).fetchone()[0]
            stats["amount_corrections"] = conn.execute(
                "SELECT COUNT(*) FROM amount_corrections"
            ).fetchone()[0]
            stats["global_corrections"] = conn.execute(
                "SELECT COUNT(*) FROM amount_corrections WHERE scope = ?", (GLOBAL_SCOPE,)
            ).fetchone()[0]
            stats["name_aliases"] = conn.execute("SELECT COUNT(*) FROM name_aliases").fetchone()[0]
            stats["char_substitutions"] = conn.execute(
                "SELECT COUNT(*) FROM char_substitutions"
            ).fetchone()[0]
            stats["regression_models"] = conn.execute(
                "SELECT COUNT(*) FROM regression_models WHERE weights_json IS NOT NULL"
            ).fetchone()[0]
            stats["semantic_cache"] = conn.execute(
                "SELECT COUNT(*) FROM semantic_cache"
            ).fetchone()[0]

            return stats
