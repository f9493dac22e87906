"""Test fixtures and utilities."""

import sqlite3
from pathlib import Path

import pytest

from tithebook.schemas.extraction import ExtractedEntry, PageExtraction
from tithebook.schemas.member_record import MemberRecord
from tithebook.state_store import StateStore

SAMPLE_ROSTER_ROWS = [
    {
        "Membership Number": "Kofi Mensah (TAC89JAM|A-12)",
        "Old Membership Number": "OLD-001",
        "Title": "Elder",
        "First Name": "Kofi",
        "Surname": "Mensah",
        "Other Names": "Yeboah",
        "Gender": "Male",
        "Phone Number": "0244000001",
        "customOrder": 1,
    },
    {
        "Membership Number": "TAC90AMA",
        "Old Membership Number": "",
        "Title": "Mrs",
        "First Name": "Ama",
        "Surname": "Owusu",
        "Other Names": "",
        "Gender": "Female",
        "Phone Number": "0244000002",
        "customOrder": 2,
    },
    {
        "Membership Number": "TAC91KWA",
        "Old Membership Number": "OLD-003",
        "Title": "",
        "First Name": "Kwame",
        "Surname": "Asante",
        "Other Names": "Boakye",
        "Gender": "Male",
        "Phone Number": "0244000003",
        "customOrder": 3,
    },
    {
        "Membership Number": "",
        "Old Membership Number": "",
        "Title": "",
        "First Name": "Esi",
        "Surname": "Tetteh",
        "Other Names": "",
        "Gender": "Female",
        "Phone Number": "",
        "customOrder": 4,
    },
]


def make_entries(rows: list[tuple[int, str, str]]) -> list[ExtractedEntry]:
    """Entries from (row number, name, raw amount) tuples."""
    return [ExtractedEntry.create(row_no, name, amount, 0.9) for row_no, name, amount in rows]


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store with all migrations applied."""
    return StateStore(temp_db)


class QuickTimeoutStore(StateStore):
    """State store that gives up on a locked database almost at once."""

    CONNECT_TIMEOUT = 0.1


@pytest.fixture
def locked_store(temp_db):
    """Store whose database is held under an exclusive lock by another connection."""
    store = QuickTimeoutStore(temp_db)
    blocker = sqlite3.connect(str(temp_db), isolation_level=None)
    blocker.execute("BEGIN EXCLUSIVE")
    try:
        yield store
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()


@pytest.fixture
def sample_roster_rows() -> list[dict]:
    return [dict(row) for row in SAMPLE_ROSTER_ROWS]


@pytest.fixture
def sample_roster(sample_roster_rows) -> list[MemberRecord]:
    """Four members; the last one has no ID."""
    return [MemberRecord.from_dict(row) for row in sample_roster_rows]


@pytest.fixture
def sample_pages() -> list[PageExtraction]:
    """Two consecutive pages of SET 1, photographed in reverse order."""
    second = PageExtraction(
        entries=make_entries(
            [
                (16, "Yaw Boateng", "50"),
                (17, "Akosua Addo", "20"),
                (18, "Kwabena Ansah", "1OO"),
            ]
        ),
        page_number=2,
        source="page2.jpg",
    )
    first = PageExtraction(
        entries=make_entries(
            [
                (1, "Kofi Mensah", "100"),
                (2, "Ama Owusu", "50"),
                (3, "Kwame Asante", "-"),
            ]
        ),
        page_number=1,
        source="page1.jpg",
    )
    return [second, first]
