"""
Multi-page sequencing.

Tithe register rows are grouped in SETs of 31 members (rows 1-31, 32-62,
...) and row numbering continues across pages. Pages photographed in any
order are analysed, sorted by their first row and merged into one list.
A member read on two pages is kept once, and jumps in the numbering are
reported for review.

Each SET spans a two-page spread: the odd page holds January to May, the
even page June to December.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Union

from ..schemas.extraction import ExtractedEntry, PageExtraction, PageInfo, SequenceResult

logger = logging.getLogger(__name__)

SET_SIZE = 31
GAP_THRESHOLD = 5
WEEKS_PER_MONTH = 5

ODD_PAGE_MONTHS = ("january", "february", "march", "april", "may")
EVEN_PAGE_MONTHS = (
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
)

PageInput = Union[PageExtraction, Sequence[ExtractedEntry]]

_WEEK_NUMBER_RE = re.compile(r"(\d+)")
_WEEK_WORDS = {"first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5}


def get_set_number(row_no: int) -> int:
    """SET containing a row (1 for rows 1-31). 0 for non-positive rows."""
    if row_no <= 0:
        return 0
    return math.ceil(row_no / SET_SIZE)


def get_set_range(set_number: int) -> tuple[int, int]:
    """Inclusive (start, end) rows of a SET; (0, 0) for non-positive SETs."""
    if set_number <= 0:
        return (0, 0)
    return ((set_number - 1) * SET_SIZE + 1, set_number * SET_SIZE)


def page_entries(page: PageInput) -> list[ExtractedEntry]:
    if isinstance(page, PageExtraction):
        return page.entries
    return list(page)


def analyze_page(entries: Sequence[ExtractedEntry], page_index: int = 0) -> PageInfo:
    """Row range, SET and SET coverage of one page."""
    rows = sorted(e.row_no for e in entries if e.row_no > 0)
    if not entries or not rows:
        return PageInfo(
            page_index=page_index,
            starting_no=0,
            ending_no=0,
            entry_count=len(entries),
            set_number=0,
            set_coverage=0,
            entries=list(entries),
        )

    starting_no = rows[0]
    set_number = get_set_number(starting_no)
    start, end = get_set_range(set_number)
    in_set = sum(1 for n in rows if start <= n <= end)

    return PageInfo(
        page_index=page_index,
        starting_no=starting_no,
        ending_no=rows[-1],
        entry_count=len(entries),
        set_number=set_number,
        set_coverage=round(in_set / SET_SIZE * 100),
        entries=list(entries),
    )


def _is_better(candidate: ExtractedEntry, existing: ExtractedEntry) -> bool:
    if candidate.amount != existing.amount:
        return candidate.amount > existing.amount
    return candidate.confidence > existing.confidence


def _sequence_confidence(pages: list[PageInfo], duplicates: int, gaps: int) -> float:
    confidence = 1.0
    total_entries = sum(p.entry_count for p in pages) or 1
    confidence -= duplicates / total_entries * 0.3
    confidence -= gaps * 0.1
    if len(pages) > 3:
        confidence -= (len(pages) - 3) * 0.05
    return max(0.3, min(1.0, confidence))


def find_gaps(entries: Sequence[ExtractedEntry], threshold: int = GAP_THRESHOLD) -> list[int]:
    """Rows after which the numbering jumps by more than ``threshold``."""
    rows = sorted(e.row_no for e in entries if e.row_no > 0)
    return [prev for prev, nxt in zip(rows, rows[1:]) if nxt - prev > threshold]


def sequence_pages(
    pages: Sequence[PageInput],
    failed_pages: list[int] | None = None,
    gap_threshold: int = GAP_THRESHOLD,
) -> SequenceResult:
    """Order pages by first row and merge them into one deduplicated list.

    A name seen twice keeps the copy with the higher amount, then the higher
    confidence; on a full tie the first copy stays. Every replaced or
    discarded copy counts as one removed duplicate. Entries without a name
    are never treated as duplicates.
    """
    failed = list(failed_pages or [])
    if not pages:
        return SequenceResult(confidence=0.0, failed_pages=failed)

    if len(pages) == 1:
        return SequenceResult(
            merged=list(page_entries(pages[0])),
            page_order=[0],
            confidence=1.0,
            failed_pages=failed,
        )

    infos = [analyze_page(page_entries(page), index) for index, page in enumerate(pages)]
    ordered = sorted(infos, key=lambda info: info.starting_no)

    merged: list[ExtractedEntry] = []
    position_by_name: dict[str, int] = {}
    duplicates = 0

    for info in ordered:
        for entry in info.entries:
            key = entry.name_key
            if not key:
                merged.append(entry)
                continue
            position = position_by_name.get(key)
            if position is None:
                position_by_name[key] = len(merged)
                merged.append(entry)
                continue
            if _is_better(entry, merged[position]):
                merged[position] = entry
            duplicates += 1

    # Unnumbered rows go last
    merged.sort(key=lambda e: (e.row_no <= 0, e.row_no))
    gaps = find_gaps(merged, gap_threshold)
    confidence = _sequence_confidence(ordered, duplicates, len(gaps))

    logger.info(
        "Sequenced %d pages into %d entries (%d duplicates, %d gaps, confidence %.2f)",
        len(pages),
        len(merged),
        duplicates,
        len(gaps),
        confidence,
    )
    if gaps:
        logger.warning("Numbering gaps after rows %s", gaps)

    return SequenceResult(
        merged=merged,
        page_order=[info.page_index for info in ordered],
        duplicates_removed=duplicates,
        gaps=gaps,
        confidence=confidence,
        failed_pages=failed,
    )


def infer_set_from_page_number(page_number: int) -> dict[str, int]:
    """SET and member range printed on a register page (pages 1-2 are SET 1)."""
    if page_number <= 0:
        return {"set_number": 0, "start_member": 0, "end_member": 0}
    set_number = math.ceil(page_number / 2)
    start, end = get_set_range(set_number)
    return {"set_number": set_number, "start_member": start, "end_member": end}


@dataclass
class MonthValidation:
    is_valid: bool
    page_type: str  # "odd" or "even"
    expected_range: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "page_type": self.page_type,
            "expected_range": self.expected_range,
        }


def validate_month_on_page(page_number: int, month: str) -> MonthValidation:
    """Check that ``month`` is printed on the given side of a spread.

    Odd pages carry January-May, even pages June-December. Month names may
    be abbreviated ("Sept", "jun").
    """
    is_odd = page_number % 2 == 1
    months = ODD_PAGE_MONTHS if is_odd else EVEN_PAGE_MONTHS
    expected = "January-May" if is_odd else "June-December"
    name = (month or "").strip().lower()
    is_valid = bool(name) and any(m.startswith(name[:3]) for m in months)
    return MonthValidation(
        is_valid=is_valid,
        page_type="odd" if is_odd else "even",
        expected_range=expected,
    )


def get_week_column_offset(week: str | int) -> int:
    """Zero-based week column within a month ("Week 1", "2nd", 3, "fourth")."""
    if isinstance(week, int):
        number = week
    else:
        text = str(week).strip().lower()
        match = _WEEK_NUMBER_RE.search(text)
        if match:
            number = int(match.group(1))
        else:
            number = next((n for word, n in _WEEK_WORDS.items() if word in text), 1)
    return min(max(number, 1), WEEKS_PER_MONTH) - 1


def summarize_sets(pages: Sequence[PageInput]) -> list[dict[str, Any]]:
    """Per-SET coverage across all pages: which pages, which rows are missing."""
    rows_by_set: dict[int, set[int]] = {}
    pages_by_set: dict[int, list[int]] = {}
    for index, page in enumerate(pages):
        for entry in page_entries(page):
            set_number = get_set_number(entry.row_no)
            if set_number == 0:
                continue
            rows_by_set.setdefault(set_number, set()).add(entry.row_no)
            page_list = pages_by_set.setdefault(set_number, [])
            if index not in page_list:
                page_list.append(index)

    summary = []
    for set_number in sorted(rows_by_set):
        start, end = get_set_range(set_number)
        rows = rows_by_set[set_number]
        summary.append(
            {
                "set_number": set_number,
                "start_member": start,
                "end_member": end,
                "pages": pages_by_set[set_number],
                "rows_present": len(rows),
                "coverage": round(len(rows) / SET_SIZE * 100),
                "missing_rows": [n for n in range(start, end + 1) if n not in rows],
            }
        )
    return summary
