"""OCR-aware string similarity for handwritten register names.

All functions are pure and symmetric. Scores are fractions in [0, 1].
"""

from __future__ import annotations

import re
from enum import Enum

from rapidfuzz.distance import Levenshtein

from tithebook.similarity.ghanaian import (
    are_surname_variants,
    ghanaian_name_similarity,
    is_known_surname,
)

HIGH_CONFIDENCE = 0.85
MEDIUM_CONFIDENCE = 0.65

# Paired tokens below this similarity do not count
TOKEN_MATCH_THRESHOLD = 0.7
SURNAME_VARIANT_BOOST = 0.1

# Characters that handwriting OCR commonly returns in place of letters
OCR_CONFUSIONS = {
    "0": "O",
    "1": "I",
    "5": "S",
    "8": "B",
    "@": "A",
    "$": "S",
    "|": "I",
    "!": "I",
    "3": "E",
    "4": "A",
    "6": "G",
    "7": "T",
}

_OCR_TABLE = str.maketrans(OCR_CONFUSIONS)


class ConfidenceTier(str, Enum):
    """Coarse bucket for a match or extraction score."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def normalize_for_similarity(text: str | None) -> str:
    """Uppercase, undo OCR digit/symbol confusions, keep letters and spaces."""
    if not text:
        return ""
    s = text.upper().translate(_OCR_TABLE)
    s = re.sub(r"[^A-Z\s]", "", s)
    return re.sub(r"\s+", " ", s).strip()


def levenshtein_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def edit_similarity(a: str, b: str) -> float:
    """(maxLen - distance) / maxLen on already-normalized strings."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - Levenshtein.distance(a, b)) / max_len


def token_similarity(a: str, b: str) -> float:
    """Order-insensitive token pairing.

    Tolerates surname-first vs. given-name-first ordering. Each token of
    ``a`` claims its best unused token of ``b``; pairs under 0.7 are ignored.
    """
    tokens_a = [t for t in a.split() if len(t) > 1]
    tokens_b = [t for t in b.split() if len(t) > 1]
    if not tokens_a or not tokens_b:
        return 0.0

    # Greedy pairing depends on order; take the better direction
    return max(_pair_tokens(tokens_a, tokens_b), _pair_tokens(tokens_b, tokens_a))


def _pair_tokens(tokens_a: list[str], tokens_b: list[str]) -> float:
    used: set[int] = set()
    total = 0.0
    for ta in tokens_a:
        best_score = 0.0
        best_index = -1
        for j, tb in enumerate(tokens_b):
            if j in used:
                continue
            score = edit_similarity(ta, tb)
            if score > best_score:
                best_score = score
                best_index = j
        if best_index >= 0 and best_score >= TOKEN_MATCH_THRESHOLD:
            used.add(best_index)
            total += best_score

    return total / max(len(tokens_a), len(tokens_b))


def surname_variant_boost(a: str, b: str) -> float:
    """+0.1 when both names carry recognised spellings of the same surname."""
    surnames_a = [t for t in a.lower().split() if is_known_surname(t)]
    surnames_b = [t for t in b.lower().split() if is_known_surname(t)]
    for sa in surnames_a:
        for sb in surnames_b:
            if are_surname_variants(sa, sb):
                return SURNAME_VARIANT_BOOST
    return 0.0


def name_similarity(a: str | None, b: str | None) -> float:
    """Combined name score used by matching and duplicate detection.

    ``min(1, max(edit, token, locale) + surname boost)``. Only strings that are
    equal after normalization score exactly 1.0.
    """
    na = normalize_for_similarity(a)
    nb = normalize_for_similarity(b)
    if na == nb:
        return 1.0
    if not na or not nb:
        return 0.0

    base = max(
        edit_similarity(na, nb),
        token_similarity(na, nb),
        ghanaian_name_similarity(na, nb),
        ghanaian_name_similarity(nb, na),
    )
    score = min(1.0, base + surname_variant_boost(na, nb))
    # Reserve 1.0 for normalized equality
    return min(score, 0.99)


def confidence_tier(
    score: float,
    high: float = HIGH_CONFIDENCE,
    medium: float = MEDIUM_CONFIDENCE,
) -> ConfidenceTier:
    if score >= high:
        return ConfidenceTier.HIGH
    if score >= medium:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW
