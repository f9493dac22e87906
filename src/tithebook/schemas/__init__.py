"""Plain data types shared across the pipeline."""

from .member_record import (
    TRACKED_FIELDS,
    MemberRecord,
    parse_member_id,
    read_roster,
    split_id_parts,
    write_roster,
)
from .extraction import (
    DiscrepancyReport,
    ExtractedEntry,
    PageExtraction,
    PageInfo,
    SequenceResult,
)

__all__ = [
    "TRACKED_FIELDS",
    "DiscrepancyReport",
    "ExtractedEntry",
    "MemberRecord",
    "PageExtraction",
    "PageInfo",
    "SequenceResult",
    "parse_member_id",
    "read_roster",
    "split_id_parts",
    "write_roster",
]
