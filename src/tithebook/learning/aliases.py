"""
Learned name aliases.

When a user manually links a name read from a tithe page to a roster
member, that link is remembered. Once the same link has been confirmed
at least twice it is applied automatically on later pages.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..state_store import StorageUnavailableError
from .locks import ScopeLocks, scope_key

if TYPE_CHECKING:
    from ..schemas.member_record import MemberRecord
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

MIN_ALIAS_OCCURRENCES = 2

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_extracted_name(name: Any) -> str:
    if name is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(name).strip().lower())


@dataclass
class AliasMatch:
    member_id: str
    member_name: str
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"member_id": self.member_id, "member_name": self.member_name, "count": self.count}


class NameAliasLearner:
    """Per-scope extracted-name -> member confirmations."""

    def __init__(
        self,
        state_store: StateStore | None,
        min_occurrences: int = MIN_ALIAS_OCCURRENCES,
        locks: ScopeLocks | None = None,
    ) -> None:
        self.store = state_store
        self.min_occurrences = min_occurrences
        self.locks = locks or ScopeLocks()

    def _disable(self, error: Exception) -> None:
        logger.warning("Alias store unavailable, continuing stateless: %s", error)
        self.store = None

    def learn(self, scope: str, extracted_name: str, member_id: str, member_name: str = "") -> bool:
        """Record one confirmation. Returns True if it was stored."""
        name = normalize_extracted_name(extracted_name)
        member_key = (member_id or "").strip().lower()
        if not name or not member_key:
            logger.debug("Skipping alias with empty name or member id")
            return False
        if self.store is None:
            return False

        scope_name = scope_key(scope)
        with self.locks.hold(scope_name):
            try:
                self.store.add_name_alias(scope_name, name, member_key, member_name or member_key)
            except StorageUnavailableError as e:
                self._disable(e)
                return False
        logger.debug("Learned alias %r -> %s in %s", name, member_key, scope_name)
        return True

    def learn_member(self, scope: str, extracted_name: str, member: MemberRecord) -> bool:
        """Record a confirmation against a roster record."""
        member_id = member.primary_id
        display = " ".join(
            p for p in [member.title, member.first_name, member.surname, member.other_names] if p
        )
        return self.learn(scope, extracted_name, member_id, display or member_id)

    def lookup(self, scope: str, extracted_name: str) -> AliasMatch | None:
        """Most confirmed member for a name, if confirmed often enough."""
        name = normalize_extracted_name(extracted_name)
        if not name or self.store is None:
            return None
        try:
            counts = self.store.get_alias_counts(scope_key(scope), extracted_name=name)
        except StorageUnavailableError as e:
            self._disable(e)
            return None

        if not counts or counts[0]["occurrences"] < self.min_occurrences:
            return None
        best = counts[0]
        return AliasMatch(
            member_id=best["member_id"],
            member_name=best["member_name"],
            count=best["occurrences"],
        )

    def alias_map(self, scope: str) -> dict[str, str]:
        """Usable aliases as extracted name -> member id."""
        if self.store is None:
            return {}
        try:
            counts = self.store.get_alias_counts(scope_key(scope))
        except StorageUnavailableError as e:
            self._disable(e)
            return {}

        result: dict[str, str] = {}
        for row in counts:
            # Rows are ordered most confirmed first
            if row["occurrences"] >= self.min_occurrences and row["extracted_name"] not in result:
                result[row["extracted_name"]] = row["member_id"]
        return result

    def forget(self, scope: str, extracted_name: str) -> int:
        name = normalize_extracted_name(extracted_name)
        if not name or self.store is None:
            return 0
        scope_name = scope_key(scope)
        with self.locks.hold(scope_name):
            try:
                return self.store.delete_name_aliases(scope_name, extracted_name=name)
            except StorageUnavailableError as e:
                self._disable(e)
                return 0
