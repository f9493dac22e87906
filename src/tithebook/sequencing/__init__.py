"""Multi-page sequencing, duplicate-page merging and batch extraction."""

from tithebook.sequencing.batch import BatchResult, FailureReason, PageFailure, extract_batch
from tithebook.sequencing.duplicates import (
    ConsolidationResult,
    consolidate_batch,
    detect_amount_discrepancies,
    detect_duplicate_pages,
    is_same_page,
    merge_duplicate_extractions,
)
from tithebook.sequencing.pages import (
    SET_SIZE,
    MonthValidation,
    analyze_page,
    find_gaps,
    get_set_number,
    get_set_range,
    get_week_column_offset,
    infer_set_from_page_number,
    page_entries,
    sequence_pages,
    summarize_sets,
    validate_month_on_page,
)

__all__ = [
    "SET_SIZE",
    "BatchResult",
    "ConsolidationResult",
    "FailureReason",
    "MonthValidation",
    "PageFailure",
    "analyze_page",
    "consolidate_batch",
    "detect_amount_discrepancies",
    "detect_duplicate_pages",
    "extract_batch",
    "find_gaps",
    "get_set_number",
    "get_set_range",
    "get_week_column_offset",
    "infer_set_from_page_number",
    "is_same_page",
    "merge_duplicate_extractions",
    "page_entries",
    "sequence_pages",
    "summarize_sets",
    "validate_month_on_page",
]
