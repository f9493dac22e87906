"""
Amount correction learning.

Every time a user fixes an OCR-extracted amount the pair (what the page
was read as, what it really says) is appended as an immutable observation.
Later extractions of the same text get a suggestion with a confidence that
grows with the number and agreement of observations.

Patterns confirmed independently by several assemblies are promoted to a
GLOBAL scope that every assembly falls back to.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..amounts.normalizer import parse_plain_number
from ..config import LearningConfig
from ..state_store import GLOBAL_SCOPE, StorageUnavailableError
from .locks import ScopeLocks, scope_key

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.95
GLOBAL_CONFIDENCE_FACTOR = 0.9


def normalize_original(original: Any) -> str:
    """Key form of an OCR amount string (trimmed, uppercased)."""
    if original is None:
        return ""
    return str(original).strip().upper()


@dataclass
class CorrectionSuggestion:
    """Most frequent learned correction for one OCR string."""

    value: float
    confidence: float
    occurrences: int  # count of the winning corrected value
    is_global: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "is_global": self.is_global,
        }


@dataclass
class AutoCorrectDecision:
    """Whether a learned correction may be applied without asking."""

    auto_correct: bool
    suggested_value: float | None
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_correct": self.auto_correct,
            "suggested_value": self.suggested_value,
            "count": self.count,
        }


class CorrectionStore:
    """Scoped store of amount correction observations.

    Without a state store (or once the store becomes unavailable) it runs
    stateless: saves return False and suggestions return None.
    """

    def __init__(
        self,
        state_store: StateStore | None,
        learning_config: LearningConfig | None = None,
        locks: ScopeLocks | None = None,
    ) -> None:
        self.store = state_store
        self.config = learning_config or LearningConfig()
        self.locks = locks or ScopeLocks()

    @property
    def is_stateless(self) -> bool:
        return self.store is None

    def _disable(self, error: Exception) -> None:
        logger.warning("Correction store unavailable, continuing stateless: %s", error)
        self.store = None

    def save(
        self,
        scope: str,
        original: Any,
        corrected: Any,
        member_id: str | None = None,
        source: str = "manual",
    ) -> bool:
        """Record one correction. Returns True if an observation was stored."""
        key = normalize_original(original)
        if not key:
            return False
        try:
            value = float(corrected)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric correction %r for %r", corrected, key)
            return False

        if parse_plain_number(key) == value:
            logger.debug("Skipping no-op correction %s -> %s", key, value)
            return False
        if self.store is None:
            return False

        scope_name = scope_key(scope)
        with self.locks.hold(scope_name):
            try:
                self.store.add_amount_correction(
                    scope=scope_name,
                    original=key,
                    corrected=value,
                    member_id=member_id.lower() if member_id else None,
                    source=source,
                )
            except StorageUnavailableError as e:
                self._disable(e)
                return False

        logger.debug("Learned correction %s -> %s in %s", key, value, scope_name)
        return True

    def suggest(self, scope: str, original: Any) -> CorrectionSuggestion | None:
        """Suggest a corrected value, assembly patterns first, then GLOBAL."""
        key = normalize_original(original)
        if not key or self.store is None:
            return None

        scope_name = scope_key(scope)
        try:
            observations = self.store.get_amount_corrections(scope=scope_name, original=key)
            is_global = scope_name == GLOBAL_SCOPE
            if not observations and not is_global:
                observations = self.store.get_amount_corrections(scope=GLOBAL_SCOPE, original=key)
                is_global = True
        except StorageUnavailableError as e:
            self._disable(e)
            return None

        if not observations:
            return None

        counts = Counter(obs.corrected for obs in observations)
        value, max_count = counts.most_common(1)[0]
        total = len(observations)

        confidence = 0.5 + (max_count / total) * 0.3 + min(total / 10, 0.15)
        if is_global:
            confidence *= GLOBAL_CONFIDENCE_FACTOR

        return CorrectionSuggestion(
            value=value,
            confidence=min(MAX_CONFIDENCE, confidence),
            occurrences=max_count,
            is_global=is_global,
        )

    def promote(self, original: Any, corrected: Any) -> bool:
        """Copy a pattern into GLOBAL once enough assemblies agree on it.

        Returns True only when a new global observation was written.
        """
        key = normalize_original(original)
        if not key or self.store is None:
            return False
        try:
            value = float(corrected)
        except (TypeError, ValueError):
            return False

        with self.locks.hold(GLOBAL_SCOPE):
            try:
                scopes = self.store.count_correction_scopes(key, value)
                if scopes < self.config.promotion_min_scopes:
                    return False
                if self.store.has_amount_correction(GLOBAL_SCOPE, key, value):
                    return False
                self.store.add_amount_correction(
                    scope=GLOBAL_SCOPE, original=key, corrected=value, source="promotion"
                )
            except StorageUnavailableError as e:
                self._disable(e)
                return False

        logger.info("Promoted correction %s -> %s to global (%d assemblies)", key, value, scopes)
        return True

    def auto_correct_decision(self, scope: str, original: Any) -> AutoCorrectDecision:
        suggestion = self.suggest(scope, original)
        if suggestion is None:
            return AutoCorrectDecision(auto_correct=False, suggested_value=None, count=0)

        auto = (
            suggestion.occurrences >= self.config.auto_correct_min_occurrences
            and suggestion.confidence >= self.config.auto_correct_min_confidence
        )
        return AutoCorrectDecision(
            auto_correct=auto,
            suggested_value=suggestion.value,
            count=suggestion.occurrences,
        )

    def most_common_corrections(self, scope: str, limit: int = 20) -> list[dict[str, Any]]:
        """Known (original, corrected) patterns for an assembly, most frequent first."""
        if self.store is None:
            return []
        try:
            return self.store.get_common_corrections(scope_key(scope), limit=limit)
        except StorageUnavailableError as e:
            self._disable(e)
            return []

    def clear(self, scope: str) -> int:
        if self.store is None:
            return 0
        scope_name = scope_key(scope)
        with self.locks.hold(scope_name):
            try:
                deleted = self.store.delete_amount_corrections(scope_name)
            except StorageUnavailableError as e:
                self._disable(e)
                return 0
        logger.info("Cleared %d corrections for %s", deleted, scope_name)
        return deleted

    def export(self, scope: str | None = None) -> list[dict[str, Any]]:
        """All observations (optionally one scope) as transferable records."""
        if self.store is None:
            return []
        try:
            observations = self.store.get_amount_corrections(
                scope=scope_key(scope) if scope is not None else None
            )
        except StorageUnavailableError as e:
            self._disable(e)
            return []
        return [obs.to_dict() for obs in observations]

    def import_records(self, records: list[dict[str, Any]]) -> int:
        """Import exported observations. Returns the number written.

        Rows missing a scope, original or numeric corrected value are skipped,
        as are rows whose (scope, original, corrected) already exists.
        """
        if self.store is None:
            return 0

        imported = 0
        for record in records:
            if not isinstance(record, dict):
                continue
            scope_name = scope_key(record.get("scope"))
            key = normalize_original(record.get("original"))
            try:
                value = float(record.get("corrected"))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                logger.debug("Skipping import row without numeric correction: %r", record)
                continue
            if not scope_name or not key or parse_plain_number(key) == value:
                continue

            with self.locks.hold(scope_name):
                try:
                    if self.store.has_amount_correction(scope_name, key, value):
                        continue
                    self.store.add_amount_correction(
                        scope=scope_name,
                        original=key,
                        corrected=value,
                        member_id=record.get("member_id"),
                        source=record.get("source") or "import",
                        created_at=record.get("created_at"),
                    )
                except StorageUnavailableError as e:
                    self._disable(e)
                    return imported
            imported += 1

        logger.info("Imported %d of %d correction records", imported, len(records))
        return imported

    def stats(self) -> dict[str, Any]:
        if self.store is None:
            return {"stateless": True}
        try:
            stats = self.store.get_stats()
        except StorageUnavailableError as e:
            self._disable(e)
            return {"stateless": True}
        return {
            "stateless": False,
            "amount_corrections": stats["amount_corrections"],
            "global_corrections": stats["global_corrections"],
        }
