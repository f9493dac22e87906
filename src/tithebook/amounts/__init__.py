"""Amount normalization, validation and learned correction ensemble."""

from .normalizer import (
    COMMON_TITHE_AMOUNTS,
    LETTER_TO_DIGIT,
    is_low_confidence_amount,
    normalize_amount,
    parse_plain_number,
    score_amount_confidence,
)
from .validator import (
    AmountValidation,
    AmountValidator,
    MemberHistory,
    ValidationReason,
    build_member_history,
    learn_assembly_patterns,
    snap_to_common_amount,
    validate_amount,
)

__all__ = [
    "COMMON_TITHE_AMOUNTS",
    "LETTER_TO_DIGIT",
    "AmountValidation",
    "AmountValidator",
    "MemberHistory",
    "ValidationReason",
    "build_member_history",
    "is_low_confidence_amount",
    "learn_assembly_patterns",
    "normalize_amount",
    "parse_plain_number",
    "score_amount_confidence",
    "snap_to_common_amount",
    "validate_amount",
]
