"""
Handwritten amount normalization.

Turns a raw OCR amount string into a number. The conversion is total:
anything that cannot be resolved becomes 0 rather than raising, and
callers use ``is_low_confidence_amount`` to flag those rows for review.

Handled patterns:
- Blank cells, dashes ("-", en/em dash) = no payment
- Crossed-out cells ("X", "XX", "N/A", "NA") = no payment
- Letter/digit confusions ("1oo" -> 100, "5l" -> 51)
- Notebook shorthand: "10.w" / "10:w" means 10 and zero pesewas
"""

from __future__ import annotations

import re
from typing import Any

# Letters handwriting OCR returns in place of digits
LETTER_TO_DIGIT: dict[str, str] = {
    "l": "1",
    "I": "1",
    "i": "1",
    "|": "1",
    "L": "1",
    "o": "0",
    "O": "0",
    "Q": "0",
    "s": "5",
    "S": "5",
    "z": "2",
    "Z": "2",
    "b": "6",
    "B": "8",
    "g": "9",
    "G": "6",
    "t": "7",
    "T": "7",
    "e": "3",
    "E": "3",
    "a": "4",
    "A": "4",
}

# Frequently observed tithe values (GHS)
COMMON_TITHE_AMOUNTS = [
    5, 10, 15, 20, 25, 30, 40, 50, 60, 70, 80, 100,
    120, 150, 200, 250, 300, 400, 500, 600, 700, 800, 1000,
    1500, 2000, 3000, 5000, 10000,
]

SET_SIZE = 31

# Ceiling for cells that had writing but no readable number
UNREADABLE_AMOUNT_CONFIDENCE = 0.3

_DASHES_RE = re.compile(r"^[-–—\s]+$")
_CROSSED_OUT_RE = re.compile(r"^(X+|N/?A)$", re.IGNORECASE)
_NOTEBOOK_SUFFIX_RE = re.compile(r"^(.*\d)\s*[.:]\s*w$", re.IGNORECASE)
_LETTER_TABLE = str.maketrans(LETTER_TO_DIGIT)


def _is_explicit_blank(text: str) -> bool:
    return not text or bool(_DASHES_RE.match(text)) or bool(_CROSSED_OUT_RE.match(text))


def normalize_amount(raw: Any) -> float:
    """Resolve a raw OCR amount to a number, or 0 when it cannot be read.

    Never raises.
    """
    if raw is None:
        return 0.0
    if isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw) if raw == raw else 0.0  # NaN -> 0

    text = str(raw).strip()
    if _is_explicit_blank(text):
        return 0.0

    notebook = _NOTEBOOK_SUFFIX_RE.match(text)
    if notebook:
        text = notebook.group(1)

    text = text.translate(_LETTER_TABLE)
    text = re.sub(r"[^0-9.]", "", text)

    # Keep the first decimal point, fold any later ones into the fraction
    if text.count(".") > 1:
        head, _, tail = text.partition(".")
        text = head + "." + tail.replace(".", "")

    if not text or text == ".":
        return 0.0
    try:
        return float(text)
    except ValueError:
        return 0.0


def is_low_confidence_amount(raw: Any) -> bool:
    """True when ``raw`` had content but could not be resolved to a number.

    Explicit blanks, dashes, cross-outs and a written zero are not flagged.
    """
    if raw is None or isinstance(raw, (int, float)):
        return False
    text = str(raw).strip()
    if _is_explicit_blank(text):
        return False
    if normalize_amount(text) != 0:
        return False
    return not re.fullmatch(r"0+(\.0*)?", text)


def score_amount_confidence(
    amount: float,
    legibility: int = 3,
    raw_text: str | None = None,
    ink_color: str | None = None,
    cell_condition: str | None = None,
    row_no: int | None = None,
) -> float:
    """Multi-factor confidence for one extracted amount cell.

    Factors: legibility (1-5), digit purity of the raw text, closeness to a
    common tithe amount, ink color (red usually means the TOTAL column was
    read), cell condition and the row's position inside its SET.
    """
    confidence = 0.5
    confidence += (legibility - 1) / 4 * 0.35

    if raw_text:
        numeric_ratio = sum(ch.isdigit() for ch in raw_text) / len(raw_text)
        if numeric_ratio == 1:
            confidence += 0.12
        elif numeric_ratio < 0.5:
            confidence -= 0.1

    if amount in COMMON_TITHE_AMOUNTS:
        confidence += 0.08
    elif any(abs(common - amount) / common < 0.05 for common in COMMON_TITHE_AMOUNTS):
        confidence += 0.04

    if ink_color == "red":
        confidence -= 0.15

    if cell_condition == "corrected":
        confidence -= 0.1
    elif cell_condition == "smudged":
        confidence -= 0.2
    elif cell_condition == "clean":
        confidence += 0.05

    if row_no:
        position_in_set = ((row_no - 1) % SET_SIZE) + 1
        if position_in_set <= 20:
            confidence += 0.05
        elif position_in_set > 28:
            confidence -= 0.03

    if amount == 0:
        if is_low_confidence_amount(raw_text):
            return UNREADABLE_AMOUNT_CONFIDENCE
        # An empty or dashed cell is unambiguous
        confidence = 0.95

    return min(0.98, max(0.1, confidence))


def parse_plain_number(text: Any) -> float | None:
    """Parse ``text`` as a plain number with no OCR repair; None if it is not one."""
    if text is None:
        return None
    try:
        value = float(str(text).strip().replace(",", ""))
    except ValueError:
        return None
    return value if value == value else None
