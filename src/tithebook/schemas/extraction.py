"""
Page extraction data types.

These are the plain, serializable shapes passed between the vision client,
the page sequencer and the duplicate-page validator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..amounts.normalizer import (
    UNREADABLE_AMOUNT_CONFIDENCE,
    is_low_confidence_amount,
    normalize_amount,
    score_amount_confidence,
)


def _row_number(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else 0
    try:
        n = int(str(value).strip().split(".")[0])
    except ValueError:
        return 0
    return n if n > 0 else 0


def _clamp_confidence(value: Any, default: float) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return default
    if conf != conf:  # NaN
        return default
    return max(0.0, min(1.0, conf))


@dataclass
class ExtractedEntry:
    """One register row as read by the vision step."""

    row_no: int  # 0 when unknown
    name: str
    raw_amount: str
    amount: float = 0.0
    confidence: float = 0.5
    # Cell had writing that did not resolve to a number
    low_confidence: bool = False

    @classmethod
    def create(
        cls, row_no: Any, name: Any, raw_amount: Any, confidence: Any = None
    ) -> ExtractedEntry:
        """Build an entry from loosely-typed values, normalizing the amount."""
        raw = "" if raw_amount is None else str(raw_amount).strip()
        unreadable = is_low_confidence_amount(raw_amount)
        conf = _clamp_confidence(confidence, 0.5)
        if unreadable:
            conf = min(conf, UNREADABLE_AMOUNT_CONFIDENCE)
        return cls(
            row_no=_row_number(row_no),
            name="" if name is None else str(name).strip(),
            raw_amount=raw,
            amount=normalize_amount(raw_amount),
            confidence=conf,
            low_confidence=unreadable,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtractedEntry:
        """Create from vision output or stored JSON.

        Accepts the vision keys (rowNo / "No.", name / "Name", amount / "Amount")
        as well as this class's own ``to_dict`` keys.
        """
        row_no = data.get("row_no", data.get("rowNo", data.get("No.")))
        name = data.get("name", data.get("Name", ""))
        raw_amount = data.get("raw_amount", data.get("amount", data.get("Amount")))
        return cls.create(row_no, name, raw_amount, data.get("confidence"))

    @property
    def name_key(self) -> str:
        """Lowercased, trimmed name used for duplicate detection."""
        return self.name.lower().strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_no": self.row_no,
            "name": self.name,
            "raw_amount": self.raw_amount,
            "amount": self.amount,
            "confidence": self.confidence,
            "low_confidence": self.low_confidence,
        }


@dataclass
class PageExtraction:
    """All rows extracted from one scanned page."""

    entries: list[ExtractedEntry] = field(default_factory=list)
    is_valid_page: bool = True
    detected_year: int | None = None
    page_number: int | None = None
    source: str | None = None  # e.g. image filename

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str | None = None) -> PageExtraction:
        """Create from vision JSON (``isValidPage``, ``entries``, ...)."""
        entries = [
            ExtractedEntry.from_dict(item)
            for item in data.get("entries", []) or []
            if isinstance(item, dict)
        ]
        is_valid = data.get("isValidPage", data.get("is_valid_page", True))
        return cls(
            entries=entries,
            is_valid_page=bool(is_valid) if is_valid is not None else True,
            detected_year=_optional_int(data.get("detectedYear", data.get("detected_year"))),
            page_number=_optional_int(data.get("pageNumber", data.get("page_number"))),
            source=source or data.get("source"),
        )

    @classmethod
    def from_api_response(cls, data: Any, source: str | None = None) -> PageExtraction:
        """Create from a vision response, tolerating missing or odd fields.

        Rows that are not objects are dropped; a non-object response is an
        empty, invalid page.
        """
        if not isinstance(data, dict):
            return cls(entries=[], is_valid_page=False, source=source)
        page = cls.from_dict({**data, "entries": []}, source=source)
        raw_entries = data.get("entries")
        if isinstance(raw_entries, list):
            page.entries = [
                entry_from_api_item(item) for item in raw_entries if isinstance(item, dict)
            ]
        return page

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValidPage": self.is_valid_page,
            "detectedYear": self.detected_year,
            "pageNumber": self.page_number,
            "source": self.source,
            "entries": [e.to_dict() for e in self.entries],
        }


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class PageInfo:
    """Row range and SET placement of one page."""

    page_index: int
    starting_no: int
    ending_no: int
    entry_count: int
    set_number: int
    set_coverage: int  # percent of the SET's rows present, 0-100
    entries: list[ExtractedEntry] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_index": self.page_index,
            "starting_no": self.starting_no,
            "ending_no": self.ending_no,
            "entry_count": self.entry_count,
            "set_number": self.set_number,
            "set_coverage": self.set_coverage,
        }


@dataclass
class SequenceResult:
    """Merged multi-page extraction."""

    merged: list[ExtractedEntry] = field(default_factory=list)
    page_order: list[int] = field(default_factory=list)
    duplicates_removed: int = 0
    # Row numbers after which a numbering jump was found
    gaps: list[int] = field(default_factory=list)
    confidence: float = 0.0
    failed_pages: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged": [e.to_dict() for e in self.merged],
            "page_order": self.page_order,
            "duplicates_removed": self.duplicates_removed,
            "gaps": self.gaps,
            "confidence": self.confidence,
            "failed_pages": self.failed_pages,
        }


@dataclass
class DiscrepancyReport:
    """Amount disagreement for one row across scans of the same page."""

    row_no: int
    name: str
    amounts: list[float]
    suggested_amount: float
    confidence: float
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_no": self.row_no,
            "name": self.name,
            "amounts": self.amounts,
            "suggested_amount": self.suggested_amount,
            "confidence": self.confidence,
            "message": self.message,
        }


def entry_from_api_item(item: dict[str, Any]) -> ExtractedEntry:
    """Entry from one vision row, scoring confidence when the model gave none.

    Optional per-row hints: ``legibility`` (1-5), ``inkColor`` and
    ``cellCondition``.
    """
    entry = ExtractedEntry.from_dict(item)
    if item.get("confidence") is None:
        legibility = _optional_int(item.get("legibility")) or 3
        entry.confidence = score_amount_confidence(
            entry.amount,
            legibility=max(1, min(5, legibility)),
            raw_text=entry.raw_amount or None,
            ink_color=item.get("inkColor", item.get("ink_color")),
            cell_condition=item.get("cellCondition", item.get("cell_condition")),
            row_no=entry.row_no or None,
        )
    return entry
