"""
Character-level OCR substitution learning.

Learns which characters the vision model misreads for which digits
("1OO" corrected to 100 teaches O->0 twice) and applies the most frequent
substitution to new inputs. Works alongside the regression model in the
ensemble.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..amounts.normalizer import LETTER_TO_DIGIT
from ..state_store import StorageUnavailableError
from .locks import ScopeLocks, scope_key

if TYPE_CHECKING:
    from ..state_store import CharSubstitution, StateStore

logger = logging.getLogger(__name__)

# Baseline confusions count as half an observation
BASELINE_WEIGHT = 0.5
MAX_CONFIDENCE = 0.95


def format_amount(value: float) -> str:
    """Render a corrected amount the way it would be written ("100", "12.5")."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


@dataclass
class SubstitutionPrediction:
    value: float
    corrected_text: str
    confidence: float
    substitutions: list[str] = field(default_factory=list)  # e.g. ["O->0", "O->0"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "corrected_text": self.corrected_text,
            "confidence": self.confidence,
            "substitutions": self.substitutions,
            "method": "char_substitution",
        }


class SubstitutionLearner:
    """Per-scope (from_char -> to_char) frequency counters."""

    def __init__(self, state_store: StateStore | None, locks: ScopeLocks | None = None) -> None:
        self.store = state_store
        self.locks = locks or ScopeLocks()

    def _disable(self, error: Exception) -> None:
        logger.warning("Substitution store unavailable, continuing stateless: %s", error)
        self.store = None

    def learn(self, scope: str, original: str, corrected: float) -> bool:
        """Count the character substitutions in an aligned correction.

        Pairs of different length cannot be aligned and are skipped.
        """
        original_upper = str(original).strip().upper()
        corrected_text = format_amount(corrected)
        if not original_upper or len(original_upper) != len(corrected_text):
            logger.debug("Cannot align %r with %s, skipping", original_upper, corrected_text)
            return False

        pairs = [
            (from_char, to_char)
            for from_char, to_char in zip(original_upper, corrected_text)
            if from_char != to_char
        ]
        if not pairs or self.store is None:
            return False

        scope_name = scope_key(scope)
        with self.locks.hold(scope_name):
            try:
                self.store.increment_char_substitutions(scope_name, pairs, original_upper)
            except StorageUnavailableError as e:
                self._disable(e)
                return False
        return True

    def _candidates(self, learned: list[CharSubstitution], char: str) -> list[tuple[str, float]]:
        results = [(sub.to_char, float(sub.frequency)) for sub in learned if sub.from_char == char]
        baseline = LETTER_TO_DIGIT.get(char)
        if baseline and all(to != baseline for to, _ in results):
            results.append((baseline, BASELINE_WEIGHT))
        # Stable sort keeps the first learned entry on equal frequency
        return sorted(results, key=lambda item: item[1], reverse=True)

    def predict(self, scope: str, raw: str) -> SubstitutionPrediction | None:
        """Apply the most frequent known substitution to every non-digit character."""
        text = str(raw or "").strip().upper()
        if not text:
            return None

        learned: list[CharSubstitution] = []
        if self.store is not None:
            try:
                learned = self.store.get_char_substitutions(scope_key(scope))
            except StorageUnavailableError as e:
                self._disable(e)

        corrected = []
        applied = []
        total_frequency = 0.0
        for char in text:
            if char.isdigit() or char == ".":
                corrected.append(char)
                continue
            candidates = self._candidates(learned, char)
            if not candidates:
                return None
            to_char, frequency = candidates[0]
            corrected.append(to_char)
            applied.append(f"{char}->{to_char}")
            total_frequency += frequency

        corrected_text = "".join(corrected)
        try:
            value = float(corrected_text)
        except ValueError:
            return None

        avg_frequency = total_frequency / len(applied) if applied else 0.0
        return SubstitutionPrediction(
            value=value,
            corrected_text=corrected_text,
            confidence=min(MAX_CONFIDENCE, 0.5 + avg_frequency / 20),
            substitutions=applied,
        )

    def stats(self, scope: str, top: int = 10) -> dict[str, Any]:
        if self.store is None:
            return {"total_patterns": 0, "top_substitutions": []}
        try:
            learned = self.store.get_char_substitutions(scope_key(scope))
        except StorageUnavailableError as e:
            self._disable(e)
            return {"total_patterns": 0, "top_substitutions": []}

        ranked = sorted(learned, key=lambda sub: sub.frequency, reverse=True)[:top]
        return {
            "total_patterns": len(learned),
            "top_substitutions": [
                {
                    "from": sub.from_char,
                    "to": sub.to_char,
                    "frequency": sub.frequency,
                    "contexts": sub.contexts,
                }
                for sub in ranked
            ],
        }

    def reset(self, scope: str) -> int:
        if self.store is None:
            return 0
        scope_name = scope_key(scope)
        with self.locks.hold(scope_name):
            try:
                return self.store.delete_char_substitutions(scope_name)
            except StorageUnavailableError as e:
                self._disable(e)
                return 0
