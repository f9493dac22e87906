"""
Member roster records.

A MemberRecord has a fixed, typed core (identity and IDs) plus an open
``attributes`` map for every other roster column (phone, address, baptism
details, ...). Roster files use the human column names below; records
round-trip through ``from_dict``/``to_dict`` using those names.
"""

from __future__ import annotations

import csv
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Core roster columns -> attribute names
CORE_COLUMNS: dict[str, str] = {
    "Membership Number": "membership_number",
    "Old Membership Number": "old_membership_number",
    "Title": "title",
    "First Name": "first_name",
    "Surname": "surname",
    "Other Names": "other_names",
}

# Fields compared during roster reconciliation, in report order
TRACKED_FIELDS: tuple[str, ...] = (
    "First Name",
    "Surname",
    "Other Names",
    "Title",
    "Gender",
    "Marital Status",
    "Type of Marriage",
    "Age",
    "Place of Birth",
    "Hometown",
    "Hometown Region",
    "Nationality",
    "Email",
    "Phone Number",
    "Whatsapp Number",
    "Other Phone Numbers",
    "Postal Address",
    "Residential Address",
    "Zip Code",
    "Digital Address",
    "Baptized By",
    "Place of Baptism",
    "Date of Baptism (DD-MMM-YYYY)",
    "Previous Denomination",
    "Languages Spoken",
    "Spiritual Gifts",
    "Level of Education",
    "Course Studied",
    "Type of Employment",
    "Place of Work",
    "Profession/Occupation",
    "Is Communicant? (Yes/No)",
    "Any Spiritual Gifts? (Yes/No)",
    "Holy Spirit Baptism? (Yes/No)",
    "Water Baptism? (Yes/No)",
    "Right Hand of Fellowship? (Yes/No)",
    "Salaried Staff Ministers (SSNIT Number)",
    "Membership Number",
    "Old Membership Number",
)

# Bookkeeping keys that are not roster columns
META_KEYS = ("firstSeenDate", "firstSeenSource", "customOrder")

_TRAILING_ID_RE = re.compile(r"\(([^)]+)\)$")


def parse_member_id(raw_id: Any) -> str:
    """Extract the ID from a roster value.

    Concatenated values like ``"Kofi Mensah (TAC89JAM|A-12)"`` yield the
    parenthesised part; plain IDs are returned trimmed.
    """
    if raw_id is None:
        return ""
    trimmed = str(raw_id).strip()
    if not trimmed:
        return ""
    match = _TRAILING_ID_RE.search(trimmed)
    if match:
        return match.group(1).strip()
    return trimmed


def split_id_parts(member_id: str) -> list[str]:
    """Split a ``|``-joined ID into its non-empty trimmed parts."""
    return [p.strip() for p in member_id.split("|") if p.strip()]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet numbers (phone numbers, ages) arrive as floats
        return str(int(value))
    return str(value).strip()


@dataclass
class MemberRecord:
    """One member of an assembly roster."""

    membership_number: str = ""
    old_membership_number: str = ""
    title: str = ""
    first_name: str = ""
    surname: str = ""
    other_names: str = ""
    attributes: dict[str, str] = field(default_factory=dict)

    first_seen_date: str | None = None  # ISO timestamp
    first_seen_source: str | None = None
    custom_order: int | None = None
    db_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemberRecord:
        """Create from a roster row keyed by column name."""
        record = cls()
        for key, value in data.items():
            if key is None or key in META_KEYS:
                continue
            record.set(str(key).strip(), value)

        record.first_seen_date = data.get("firstSeenDate") or None
        record.first_seen_source = data.get("firstSeenSource") or None
        custom_order = data.get("customOrder")
        if custom_order not in (None, ""):
            try:
                record.custom_order = int(custom_order)
            except (TypeError, ValueError):
                logger.debug("Ignoring non-numeric customOrder %r", custom_order)
        return record

    def to_dict(self, include_meta: bool = False) -> dict[str, Any]:
        """Convert to a roster row keyed by column name."""
        result: dict[str, Any] = {
            column: getattr(self, attr) for column, attr in CORE_COLUMNS.items()
        }
        result.update(self.attributes)
        if include_meta:
            result["firstSeenDate"] = self.first_seen_date
            result["firstSeenSource"] = self.first_seen_source
            result["customOrder"] = self.custom_order
        return result

    def get(self, column: str) -> str:
        """Get any roster column as trimmed text ("" when absent)."""
        attr = CORE_COLUMNS.get(column)
        if attr:
            return getattr(self, attr)
        return self.attributes.get(column, "")

    def set(self, column: str, value: Any) -> None:
        attr = CORE_COLUMNS.get(column)
        text = _as_text(value)
        if attr:
            setattr(self, attr, text)
        else:
            self.attributes[column] = text

    @property
    def current_id(self) -> str:
        return parse_member_id(self.membership_number)

    @property
    def old_id(self) -> str:
        return parse_member_id(self.old_membership_number)

    @property
    def has_identifier(self) -> bool:
        return bool(self.current_id or self.old_id)

    @property
    def primary_id(self) -> str:
        """Current ID, falling back to the old ID."""
        return self.current_id or self.old_id

    @property
    def name_key(self) -> str | None:
        """(surname|first name) key used to spot conflicting records."""
        if not self.surname or not self.first_name:
            return None
        return f"{self.surname}|{self.first_name}".lower()

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.other_names, self.surname]
        return " ".join(p for p in parts if p)

    @property
    def display_name(self) -> str:
        """Title, names and IDs as shown on tithe lists."""
        names = " ".join(p for p in [self.title, self.first_name, self.surname, self.other_names] if p)
        ids = "|".join(p for p in [self.current_id, self.old_id] if p)
        return f"{names} ({ids})" if ids else names


def read_roster(path: Path) -> list[MemberRecord]:
    """Load a roster file (.csv or .json list of row objects)."""
    suffix = path.suffix.lower()
    if suffix == ".json":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("members", [])
        rows = [row for row in data if isinstance(row, dict)]
    elif suffix == ".csv":
        with open(path, newline="", encoding="utf-8-sig") as f:
            rows = list(csv.DictReader(f))
    else:
        raise ValueError(f"Unsupported roster format: {path.suffix} (expected .csv or .json)")

    logger.info("Read %d roster rows from %s", len(rows), path.name)
    return [MemberRecord.from_dict(row) for row in rows]


def write_roster(path: Path, members: list[MemberRecord]) -> None:
    """Write members as a JSON roster file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump([m.to_dict(include_meta=True) for m in members], f, indent=2, ensure_ascii=False)
