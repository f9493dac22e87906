"""
Duplicate-page detection and cross-validation.

Users often photograph the same page more than once. Copies are detected
by their starting row and first names, merged into one extraction, and
their amounts compared row by row so disagreements can be reviewed.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..schemas.extraction import DiscrepancyReport, ExtractedEntry, SequenceResult
from ..similarity import name_similarity
from .pages import GAP_THRESHOLD, PageInput, analyze_page, page_entries, sequence_pages

logger = logging.getLogger(__name__)

SAME_PAGE_NAME_THRESHOLD = 0.8
NAMES_COMPARED = 3
MIN_MATCHING_NAMES = 2
DEFAULT_ROW_CONFIDENCE = 0.5


def is_same_page(
    a: Sequence[ExtractedEntry],
    b: Sequence[ExtractedEntry],
    threshold: float = SAME_PAGE_NAME_THRESHOLD,
) -> bool:
    """True when two extractions are copies of one physical page."""
    if analyze_page(a).starting_no != analyze_page(b).starting_no:
        return False

    names_b = [e.name for e in list(b)[:NAMES_COMPARED]]
    matches = 0
    for entry in list(a)[:NAMES_COMPARED]:
        if any(name_similarity(entry.name, other) >= threshold for other in names_b):
            matches += 1
    return matches >= MIN_MATCHING_NAMES


def detect_duplicate_pages(
    pages: Sequence[PageInput], threshold: float = SAME_PAGE_NAME_THRESHOLD
) -> list[list[int]]:
    """Groups (of two or more page indices) that show the same page."""
    entries = [page_entries(page) for page in pages]
    groups: list[list[int]] = []
    grouped: set[int] = set()

    for i in range(len(entries)):
        if i in grouped:
            continue
        group = [i]
        for j in range(i + 1, len(entries)):
            if j not in grouped and is_same_page(entries[i], entries[j], threshold):
                group.append(j)
                grouped.add(j)
        if len(group) > 1:
            groups.append(group)
        grouped.add(i)

    if groups:
        logger.info("Found %d duplicate page groups: %s", len(groups), groups)
    return groups


def _base_index(entries: list[list[ExtractedEntry]]) -> int:
    """Copy with the most entries; the first one wins a tie."""
    best = 0
    for i, page in enumerate(entries):
        if len(page) > len(entries[best]):
            best = i
    return best


def merge_duplicate_extractions(
    group: Sequence[PageInput], threshold: float = SAME_PAGE_NAME_THRESHOLD
) -> list[ExtractedEntry]:
    """Merge copies of one page, averaging confidence over matched rows."""
    copies = [list(page_entries(page)) for page in group]
    if not copies:
        return []
    if len(copies) == 1:
        return copies[0]

    base_idx = _base_index(copies)
    others = [page for i, page in enumerate(copies) if i != base_idx]

    merged = []
    for entry in copies[base_idx]:
        matches = [
            other
            for page in others
            for other in page
            if name_similarity(entry.name, other.name) >= threshold
        ]
        if not matches:
            merged.append(entry)
            continue
        confidences = [entry.confidence or DEFAULT_ROW_CONFIDENCE] + [
            m.confidence or DEFAULT_ROW_CONFIDENCE for m in matches
        ]
        merged.append(
            ExtractedEntry(
                row_no=entry.row_no,
                name=entry.name,
                raw_amount=entry.raw_amount,
                amount=entry.amount,
                confidence=sum(confidences) / len(confidences),
                low_confidence=entry.low_confidence,
            )
        )
    return merged


def _format_amount(value: float) -> str:
    return f"{value:g}"


def detect_amount_discrepancies(group: Sequence[PageInput]) -> list[DiscrepancyReport]:
    """Rows whose amount differs between copies of the same page.

    The suggestion is the majority value; when no single value leads, it is
    the rounded average of the non-zero readings.
    """
    copies = [list(page_entries(page)) for page in group]
    if len(copies) < 2:
        return []

    base_idx = _base_index(copies)
    others = [page for i, page in enumerate(copies) if i != base_idx]
    reports = []

    for entry in copies[base_idx]:
        amounts = [entry.amount]
        for page in others:
            match = next((e for e in page if e.row_no == entry.row_no), None)
            if match is not None:
                amounts.append(match.amount)

        distinct = list(dict.fromkeys(amounts))
        if len(distinct) < 2 or not any(a > 0 for a in amounts):
            continue

        counts = Counter(amounts)
        suggested, max_count = counts.most_common(1)[0]
        leaders = [value for value, count in counts.items() if count == max_count]
        if len(leaders) > 1:
            non_zero = [a for a in amounts if a > 0]
            suggested = float(round(sum(non_zero) / len(non_zero)))

        reports.append(
            DiscrepancyReport(
                row_no=entry.row_no,
                name=entry.name,
                amounts=distinct,
                suggested_amount=suggested,
                confidence=max_count / len(amounts),
                message=(
                    f"Member #{entry.row_no}: Found different amounts "
                    f"({', '.join(_format_amount(a) for a in distinct)}). "
                    f"Suggested: {_format_amount(suggested)}"
                ),
            )
        )

    return reports


@dataclass
class ConsolidationResult:
    """Sequenced batch after duplicate pages were merged."""

    sequence: SequenceResult
    duplicate_groups: list[list[int]] = field(default_factory=list)
    discrepancies: list[DiscrepancyReport] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence.to_dict(),
            "duplicate_groups": self.duplicate_groups,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
        }


def consolidate_batch(
    pages: Sequence[PageInput],
    failed_pages: list[int] | None = None,
    threshold: float = SAME_PAGE_NAME_THRESHOLD,
    gap_threshold: int = GAP_THRESHOLD,
) -> ConsolidationResult:
    """Merge duplicate photos, cross-check their amounts, then sequence.

    ``page_order`` in the result refers to indices of ``pages``; a merged
    group is represented by its first index.
    """
    entries = [list(page_entries(page)) for page in pages]
    groups = detect_duplicate_pages(entries, threshold)

    group_of = {idx: group for group in groups for idx in group}
    unique_pages: list[list[ExtractedEntry]] = []
    original_index: list[int] = []
    discrepancies: list[DiscrepancyReport] = []

    for idx, page in enumerate(entries):
        group = group_of.get(idx)
        if group is None:
            unique_pages.append(page)
            original_index.append(idx)
        elif group[0] == idx:
            copies = [entries[i] for i in group]
            unique_pages.append(merge_duplicate_extractions(copies, threshold))
            original_index.append(idx)
            discrepancies.extend(detect_amount_discrepancies(copies))

    sequence = sequence_pages(
        unique_pages, failed_pages=failed_pages, gap_threshold=gap_threshold
    )
    sequence.page_order = [original_index[i] for i in sequence.page_order]

    if discrepancies:
        logger.warning("%d amount discrepancies across duplicate pages", len(discrepancies))
    return ConsolidationResult(
        sequence=sequence, duplicate_groups=groups, discrepancies=discrepancies
    )
