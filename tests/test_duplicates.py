"""Tests for duplicate-page detection, merging and batch extraction."""

import pytest

from tithebook.schemas.extraction import PageExtraction
from tithebook.sequencing import (
    FailureReason,
    consolidate_batch,
    detect_amount_discrepancies,
    detect_duplicate_pages,
    extract_batch,
    is_same_page,
    merge_duplicate_extractions,
)
from tithebook.vision import InvalidPageError, RateLimitedError, VisionAPIError

from conftest import make_entries


@pytest.fixture
def page_copies():
    """Two photos of the same page; the second misreads a name and one amount."""
    first = make_entries(
        [(1, "Kofi Mensah", "100"), (2, "Ama Owusu", "50"), (3, "Kwame Asante", "20")]
    )
    second = make_entries(
        [(1, "Kofi Mensa", "100"), (2, "Ama Owusu", "60"), (3, "Kwame Asante", "20")]
    )
    return first, second


class TestSamePage:
    """Tests for is_same_page / detect_duplicate_pages."""

    def test_copies_detected(self, page_copies):
        assert is_same_page(*page_copies) is True

    def test_different_start_row(self, page_copies, sample_pages):
        assert is_same_page(page_copies[0], sample_pages[0].entries) is False

    def test_same_start_different_names(self, page_copies):
        other = make_entries([(1, "Yaw Boateng", "5"), (2, "Esi Tetteh", "5")])
        assert is_same_page(page_copies[0], other) is False

    def test_groups(self, page_copies, sample_pages):
        pages = [page_copies[0], sample_pages[0], page_copies[1]]
        assert detect_duplicate_pages(pages) == [[0, 2]]

    def test_no_groups(self, sample_pages):
        assert detect_duplicate_pages(sample_pages) == []


class TestMergeAndDiscrepancies:
    """Tests for merging copies and comparing their amounts."""

    def test_merge_keeps_base_rows(self, page_copies):
        merged = merge_duplicate_extractions(list(page_copies))
        assert [e.name for e in merged] == ["Kofi Mensah", "Ama Owusu", "Kwame Asante"]
        assert merged[1].amount == 50
        assert merged[0].confidence == pytest.approx(0.9)

    def test_base_is_largest_copy(self, page_copies):
        short = page_copies[0][:2]
        merged = merge_duplicate_extractions([short, page_copies[1]])
        assert len(merged) == 3
        assert merged[0].name == "Kofi Mensa"

    def test_discrepancy_tie_uses_average(self, page_copies):
        reports = detect_amount_discrepancies(list(page_copies))

        assert len(reports) == 1
        report = reports[0]
        assert report.row_no == 2
        assert report.amounts == [50, 60]
        assert report.suggested_amount == 55
        assert report.confidence == 0.5
        assert report.message == "Member #2: Found different amounts (50, 60). Suggested: 55"

    def test_discrepancy_majority(self, page_copies):
        third = make_entries(
            [(1, "Kofi Mensah", "100"), (2, "Ama Owusu", "60"), (3, "Kwame Asante", "20")]
        )
        reports = detect_amount_discrepancies([page_copies[0], page_copies[1], third])

        assert reports[0].suggested_amount == 60
        assert reports[0].confidence == pytest.approx(2 / 3)

    def test_two_of_three_agree(self):
        copies = [make_entries([(1, "Kofi Mensah", amount)]) for amount in ("100", "100", "150")]

        report = detect_amount_discrepancies(copies)[0]

        assert report.suggested_amount == 100
        assert report.confidence == pytest.approx(0.667, abs=1e-3)

    def test_all_zero_is_not_a_discrepancy(self):
        a = make_entries([(1, "Kofi Mensah", "-"), (2, "Ama Owusu", "")])
        b = make_entries([(1, "Kofi Mensah", "X"), (2, "Ama Owusu", "0")])
        assert detect_amount_discrepancies([a, b]) == []


class TestConsolidateBatch:
    """Tests for consolidate_batch."""

    def test_merges_copies_before_sequencing(self, page_copies, sample_pages):
        pages = [sample_pages[0], page_copies[0], page_copies[1]]

        result = consolidate_batch(pages)

        assert result.duplicate_groups == [[1, 2]]
        assert result.sequence.page_order == [1, 0]
        assert [e.row_no for e in result.sequence.merged] == [1, 2, 3, 16, 17, 18]
        assert len(result.discrepancies) == 1
        assert result.to_dict()["duplicate_groups"] == [[1, 2]]

    def test_gap_threshold(self, sample_pages):
        assert consolidate_batch(sample_pages).sequence.gaps == [3]
        assert consolidate_batch(sample_pages, gap_threshold=20).sequence.gaps == []


class TestExtractBatch:
    """Tests for concurrent batch extraction."""

    @staticmethod
    def extractor(pages: dict):
        def extract(key):
            outcome = pages[key]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        return extract

    def test_all_pages_read(self, sample_pages):
        pages = {"p2.jpg": sample_pages[0], "p1.jpg": sample_pages[1]}

        result = extract_batch(["p2.jpg", "p1.jpg"], self.extractor(pages), max_workers=2)

        assert result.failures == []
        assert set(result.pages) == {0, 1}
        assert result.consolidation.sequence.page_order == [1, 0]

    def test_gap_threshold_passed_through(self, sample_pages):
        pages = {"p2.jpg": sample_pages[0], "p1.jpg": sample_pages[1]}

        result = extract_batch(["p2.jpg", "p1.jpg"], self.extractor(pages), gap_threshold=20)

        assert result.consolidation.sequence.gaps == []

    def test_failures_recorded_by_index(self, sample_pages):
        pages = {
            "a.jpg": InvalidPageError("not a register"),
            "b.jpg": sample_pages[1],
            "c.jpg": RateLimitedError("slow down"),
            "d.jpg": sample_pages[0],
            "e.jpg": VisionAPIError(500, "boom"),
        }

        result = extract_batch(list(pages), self.extractor(pages))

        assert result.failed_pages == [0, 2, 4]
        reasons = {f.index: f.reason for f in result.failures}
        assert reasons == {
            0: FailureReason.NEEDS_ANOTHER_PHOTO,
            2: FailureReason.RATE_LIMITED,
            4: FailureReason.FAILED,
        }
        failure = next(f for f in result.failures if f.index == 0)
        assert failure.message == "This page needs another photo."

        sequence = result.consolidation.sequence
        assert sequence.page_order == [1, 3]
        assert sequence.failed_pages == [0, 2, 4]
        assert len(sequence.merged) == 6

    def test_every_page_failed(self):
        pages = {"a.jpg": InvalidPageError("blurry")}
        result = extract_batch(["a.jpg"], self.extractor(pages))

        assert result.pages == {}
        assert result.consolidation.sequence.merged == []
        assert result.failed_pages == [0]

    def test_empty_batch(self):
        result = extract_batch([], lambda image: PageExtraction())
        assert result.consolidation is None
        assert result.to_dict()["failures"] == []

    def test_other_errors_propagate(self):
        def broken(image):
            raise KeyError(image)

        with pytest.raises(KeyError):
            extract_batch(["a.jpg"], broken)
