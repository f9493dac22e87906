"""Similarity engine: OCR-aware edit, token and Ghanaian name scoring."""

from tithebook.similarity.ghanaian import (
    are_day_name_variants,
    are_surname_variants,
    ghanaian_name_similarity,
    ghanaian_phonetic,
    normalize_surname,
    strip_titles,
)
from tithebook.similarity.text import (
    HIGH_CONFIDENCE,
    MEDIUM_CONFIDENCE,
    ConfidenceTier,
    confidence_tier,
    edit_similarity,
    levenshtein_distance,
    name_similarity,
    normalize_for_similarity,
    surname_variant_boost,
    token_similarity,
)

__all__ = [
    "HIGH_CONFIDENCE",
    "MEDIUM_CONFIDENCE",
    "ConfidenceTier",
    "are_day_name_variants",
    "are_surname_variants",
    "confidence_tier",
    "edit_similarity",
    "ghanaian_name_similarity",
    "ghanaian_phonetic",
    "levenshtein_distance",
    "name_similarity",
    "normalize_for_similarity",
    "normalize_surname",
    "strip_titles",
    "surname_variant_boost",
    "token_similarity",
]
