"""
Batch extraction.

Runs the vision extraction for every photo of a batch on a worker pool,
waits for all of them, records failed pages by index and consolidates the
pages that were read.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..schemas.extraction import PageExtraction
from ..vision.client import InvalidPageError, RateLimitedError, VisionError
from .duplicates import SAME_PAGE_NAME_THRESHOLD, ConsolidationResult, consolidate_batch
from .pages import GAP_THRESHOLD

logger = logging.getLogger(__name__)

ImageT = TypeVar("ImageT")


class FailureReason(str, Enum):
    NEEDS_ANOTHER_PHOTO = "needs_another_photo"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


FAILURE_MESSAGES = {
    FailureReason.NEEDS_ANOTHER_PHOTO: "This page needs another photo.",
    FailureReason.RATE_LIMITED: "Try again in a minute.",
    FailureReason.FAILED: "This page could not be read.",
}


@dataclass
class PageFailure:
    index: int
    reason: FailureReason
    detail: str = ""

    @property
    def message(self) -> str:
        return FAILURE_MESSAGES[self.reason]

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "reason": self.reason.value,
            "message": self.message,
            "detail": self.detail,
        }


@dataclass
class BatchResult:
    """Outcome of one batch: read pages by input index, failures and the merge."""

    pages: dict[int, PageExtraction] = field(default_factory=dict)
    failures: list[PageFailure] = field(default_factory=list)
    consolidation: ConsolidationResult | None = None

    @property
    def failed_pages(self) -> list[int]:
        return sorted(f.index for f in self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pages": {str(i): p.to_dict() for i, p in sorted(self.pages.items())},
            "failures": [f.to_dict() for f in sorted(self.failures, key=lambda f: f.index)],
            "consolidation": self.consolidation.to_dict() if self.consolidation else None,
        }


def classify_failure(error: VisionError) -> FailureReason:
    if isinstance(error, InvalidPageError):
        return FailureReason.NEEDS_ANOTHER_PHOTO
    if isinstance(error, RateLimitedError):
        return FailureReason.RATE_LIMITED
    return FailureReason.FAILED


def extract_batch(
    images: Sequence[ImageT],
    extractor: Callable[[ImageT], PageExtraction],
    max_workers: int = 4,
    threshold: float = SAME_PAGE_NAME_THRESHOLD,
    gap_threshold: int = GAP_THRESHOLD,
) -> BatchResult:
    """
    Extract every image concurrently, then consolidate the successful pages.

    Args:
        images: Photos in upload order (bytes, paths, ... whatever ``extractor`` takes)
        extractor: Callable reading one photo into a PageExtraction
        max_workers: Worker threads for the extraction calls
        threshold: Name similarity for duplicate-page detection
        gap_threshold: Row-number jump above which a gap is reported

    Returns:
        BatchResult whose ``page_order`` and failed indices refer to ``images``
    """
    result = BatchResult()
    if not images:
        return result

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(extractor, image): idx for idx, image in enumerate(images)}
        for future in as_completed(futures):
            idx = futures[future]
            try:
                result.pages[idx] = future.result()
            except VisionError as e:
                reason = classify_failure(e)
                logger.warning("Page %d failed (%s): %s", idx, reason.value, e)
                result.failures.append(PageFailure(index=idx, reason=reason, detail=str(e)))

    read_indices = sorted(result.pages)
    consolidation = consolidate_batch(
        [result.pages[i] for i in read_indices],
        failed_pages=result.failed_pages,
        threshold=threshold,
        gap_threshold=gap_threshold,
    )
    consolidation.sequence.page_order = [read_indices[i] for i in consolidation.sequence.page_order]
    consolidation.duplicate_groups = [
        [read_indices[i] for i in group] for group in consolidation.duplicate_groups
    ]
    result.consolidation = consolidation

    logger.info(
        "Batch of %d photos: %d read, %d failed",
        len(images),
        len(result.pages),
        len(result.failures),
    )
    return result
