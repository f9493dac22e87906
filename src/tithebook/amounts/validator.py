"""
Amount validation.

Flags OCR-misread amounts and suggests corrections using, in order:
learned corrections, the member's own payment history, the learned
ensemble, known OCR misreadings and snapping to common tithe values.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .normalizer import COMMON_TITHE_AMOUNTS, normalize_amount, parse_plain_number

if TYPE_CHECKING:
    from ..learning.corrections import CorrectionStore
    from .ensemble import EnsembleCorrector

logger = logging.getLogger(__name__)

# Whole-string OCR misreadings seen often enough to hard-code
OCR_NUMBER_CORRECTIONS: dict[str, float] = {
    "S0": 50,
    "5O": 50,
    "1OO": 100,
    "10O": 100,
    "1O0": 100,
    "2OO": 200,
    "20O": 200,
    "5OO": 500,
    "50O": 500,
    "1OOO": 1000,
    "100O": 1000,
    "10OO": 1000,
    "1O00": 1000,
}

SNAP_TOLERANCE_PERCENT = 8.0
ASSEMBLY_PATTERN_WEIGHT = 0.7
MAX_ASSEMBLY_PATTERNS = 20


class ValidationReason(str, Enum):
    VALID = "valid"
    OCR_ARTIFACT = "ocr_artifact"
    ANOMALY = "anomaly"
    UNUSUAL_HIGH = "unusual_high"
    UNUSUAL_LOW = "unusual_low"
    MEMBER_PATTERN = "member_pattern"


@dataclass
class AmountValidation:
    original_amount: float
    confidence: float
    reason: ValidationReason
    suggested_amount: float | None = None
    message: str = ""

    @property
    def needs_review(self) -> bool:
        return self.reason != ValidationReason.VALID

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_amount": self.original_amount,
            "suggested_amount": self.suggested_amount,
            "confidence": self.confidence,
            "reason": self.reason.value,
            "message": self.message,
        }


@dataclass
class MemberHistory:
    """Payment statistics for one member (positive amounts only)."""

    member_id: str
    average_amount: float
    standard_deviation: float
    min_amount: float
    max_amount: float
    last_amount: float
    occurrences: int


@dataclass
class SnapResult:
    amount: float
    deviation: float  # percent
    is_assembly_pattern: bool


def learn_assembly_patterns(amounts: Iterable[float]) -> list[float]:
    """The most frequent positive amounts paid in an assembly (top 20)."""
    counts = Counter(a for a in amounts if a and a > 0)
    return [amount for amount, _ in counts.most_common(MAX_ASSEMBLY_PATTERNS)]


def snap_to_common_amount(
    amount: float,
    tolerance_percent: float = SNAP_TOLERANCE_PERCENT,
    assembly_patterns: list[float] | None = None,
) -> SnapResult | None:
    """Closest common tithe value within tolerance.

    Assembly patterns compete with their deviation scaled by 0.7, so a
    locally common value wins over a slightly closer generic one.
    """
    if amount <= 0:
        return None

    local = set(assembly_patterns or [])
    candidates = list(dict.fromkeys([*(assembly_patterns or []), *COMMON_TITHE_AMOUNTS]))

    best: SnapResult | None = None
    best_effective = math.inf
    for common in candidates:
        if common <= 0:
            continue
        deviation = abs(amount - common) / common * 100
        if deviation > tolerance_percent:
            continue
        is_local = common in local
        effective = deviation * ASSEMBLY_PATTERN_WEIGHT if is_local else deviation
        if effective < best_effective:
            best = SnapResult(amount=common, deviation=deviation, is_assembly_pattern=is_local)
            best_effective = effective
    return best


def build_member_history(transactions: Iterable[tuple[str, float]]) -> dict[str, MemberHistory]:
    """Per-member statistics from (member id, amount) pairs.

    Member ids are compared case-insensitively; zero and negative amounts
    ("did not pay") are ignored.
    """
    amounts_by_member: dict[str, list[float]] = {}
    for member_id, amount in transactions:
        if not member_id or not amount or amount <= 0:
            continue
        amounts_by_member.setdefault(member_id.strip().lower(), []).append(float(amount))

    histories = {}
    for member_id, amounts in amounts_by_member.items():
        average = sum(amounts) / len(amounts)
        variance = sum((a - average) ** 2 for a in amounts) / len(amounts)
        histories[member_id] = MemberHistory(
            member_id=member_id,
            average_amount=round(average),
            standard_deviation=round(math.sqrt(variance)),
            min_amount=min(amounts),
            max_amount=max(amounts),
            last_amount=amounts[-1],
            occurrences=len(amounts),
        )
    return histories


def get_member_typical_amount(history: MemberHistory) -> float | None:
    """The member's signature amount, if they pay consistently."""
    if history.occurrences < 3 or history.average_amount <= 0:
        return None
    if history.standard_deviation / history.average_amount < 0.15:
        return round(history.average_amount)
    if history.min_amount == history.max_amount:
        return history.min_amount
    return None


def _lookup_history(
    member_id: str | None, histories: dict[str, MemberHistory] | None
) -> MemberHistory | None:
    if not member_id or not histories:
        return None
    return histories.get(member_id.strip().lower())


def validate_amount(
    amount: Any,
    member_id: str | None = None,
    histories: dict[str, MemberHistory] | None = None,
    patterns: list[float] | None = None,
) -> AmountValidation:
    """Check one amount against OCR misreadings, member history and common values."""
    if isinstance(amount, str):
        text = amount.strip().upper()
        if text in OCR_NUMBER_CORRECTIONS:
            suggested = OCR_NUMBER_CORRECTIONS[text]
            return AmountValidation(
                original_amount=0.0,
                suggested_amount=suggested,
                confidence=0.85,
                reason=ValidationReason.OCR_ARTIFACT,
                message=f'Possible OCR error: "{amount}" -> {suggested:g}',
            )
        value = parse_plain_number(text) if text else 0.0
    else:
        value = parse_plain_number(amount)

    if value is None or value < 0:
        return AmountValidation(
            original_amount=value if value is not None else 0.0,
            suggested_amount=normalize_amount(amount),
            confidence=0.5,
            reason=ValidationReason.OCR_ARTIFACT,
            message="Invalid amount detected",
        )

    history = _lookup_history(member_id, histories)
    if history and history.occurrences >= 3:
        average = history.average_amount
        if history.standard_deviation > 0 and value > 0:
            z_score = abs(value - average) / history.standard_deviation
            if z_score > 2:
                direction = "higher" if value > average else "lower"
                return AmountValidation(
                    original_amount=value,
                    suggested_amount=round(average),
                    confidence=0.7,
                    reason=ValidationReason.ANOMALY,
                    message=f"Amount is {z_score:.1f} standard deviations {direction} than average (GHS {average:g})",
                )

        if value > history.max_amount * 3:
            return AmountValidation(
                original_amount=value,
                suggested_amount=round(average),
                confidence=0.6,
                reason=ValidationReason.UNUSUAL_HIGH,
                message=f"Amount is 3x higher than usual max ({history.max_amount:g}). Typical: {average:g}",
            )

        # Zero is a valid "did not pay"
        if 0 < value < history.min_amount * 0.3 and history.min_amount > 10:
            return AmountValidation(
                original_amount=value,
                suggested_amount=round(average),
                confidence=0.5,
                reason=ValidationReason.UNUSUAL_LOW,
                message=f"Amount seems low compared to usual min ({history.min_amount:g}). Typical: {average:g}",
            )

    snapped = snap_to_common_amount(value, assembly_patterns=patterns)
    if snapped and snapped.amount != value:
        return AmountValidation(
            original_amount=value,
            suggested_amount=snapped.amount,
            confidence=0.75,
            reason=ValidationReason.OCR_ARTIFACT,
            message=(
                f"Amount {value:g} is close to common value {snapped.amount:g} "
                f"({snapped.deviation:.1f}% off)"
            ),
        )

    return AmountValidation(original_amount=value, confidence=1.0, reason=ValidationReason.VALID)


class AmountValidator:
    """Validation backed by the learned correction state of an assembly."""

    def __init__(
        self,
        corrections: CorrectionStore | None = None,
        ensemble: EnsembleCorrector | None = None,
        histories: dict[str, MemberHistory] | None = None,
    ) -> None:
        self.corrections = corrections
        self.ensemble = ensemble
        self.histories = histories or {}
        self._patterns: dict[str, list[float]] = {}

    def learn_patterns(self, scope: str, amounts: Iterable[float]) -> list[float]:
        patterns = learn_assembly_patterns(amounts)
        if patterns:
            self._patterns[scope.strip().lower()] = patterns
        return patterns

    def patterns_for(self, scope: str) -> list[float]:
        return self._patterns.get(scope.strip().lower(), [])

    def validate_with_learning(
        self, scope: str, raw: Any, member_id: str | None = None
    ) -> AmountValidation:
        history = _lookup_history(member_id, self.histories)
        is_text = isinstance(raw, str)

        if is_text and self.corrections is not None:
            suggestion = self.corrections.suggest(scope, raw)
            if suggestion and suggestion.confidence > 0.5:
                confidence = suggestion.confidence
                note = ""
                if history and history.occurrences >= 3:
                    deviation = (
                        abs(suggestion.value - history.average_amount) / history.standard_deviation
                        if history.standard_deviation > 0
                        else 0.0
                    )
                    if deviation <= 1:
                        confidence = min(0.98, confidence + 0.15)
                        note = f" (matches typical payment of GHS {round(history.average_amount)})"
                    elif deviation > 2:
                        confidence = max(0.4, confidence - 0.2)
                        note = (
                            " (unusual for this member who typically pays "
                            f"GHS {round(history.average_amount)})"
                        )
                return AmountValidation(
                    original_amount=parse_plain_number(raw) or 0.0,
                    suggested_amount=suggestion.value,
                    confidence=confidence,
                    reason=ValidationReason.OCR_ARTIFACT,
                    message=(
                        f'Learned correction: "{raw}" -> {suggestion.value:g} '
                        f"(seen {suggestion.occurrences}x){note}"
                    ),
                )

        if history and history.occurrences >= 5:
            value = parse_plain_number(raw)
            consistent = (
                history.standard_deviation < history.average_amount * 0.1
                and history.min_amount == history.max_amount
            )
            if consistent and value is not None and value != history.average_amount:
                return AmountValidation(
                    original_amount=value,
                    suggested_amount=history.average_amount,
                    confidence=0.9,
                    reason=ValidationReason.MEMBER_PATTERN,
                    message=(
                        f"This member always pays GHS {history.average_amount:g} "
                        f"({history.occurrences} consecutive payments)"
                    ),
                )

        if is_text and self.ensemble is not None:
            prediction = self.ensemble.predict(scope, raw)
            if prediction and prediction.confidence > 0.6:
                note = (
                    f" ({prediction.agreement} methods agree)"
                    if prediction.agreement > 1
                    else f" ({prediction.method})"
                )
                return AmountValidation(
                    original_amount=parse_plain_number(raw) or 0.0,
                    suggested_amount=prediction.value,
                    confidence=prediction.confidence,
                    reason=ValidationReason.OCR_ARTIFACT,
                    message=f'AI correction: "{raw}" -> {prediction.value:g}{note}',
                )

        return validate_amount(raw, member_id, self.histories, self.patterns_for(scope))
