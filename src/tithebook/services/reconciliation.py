"""Roster reconciliation service.

Compares a freshly imported member roster with the stored master roster of
an assembly and sorts every incoming record into exactly one bucket:

- changed: matched by ID (current or old), with field-level differences
- unchanged: matched by ID, nothing differs
- conflict: not matched, but a master member has the same surname and first name
- new: not matched, has at least one ID
- unidentifiable: not matched and has no ID at all

Master records without any ID are reported separately. Applying a report
appends new members after the current highest custom order, merges field
changes and resolves conflicts as the user chose.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..schemas.member_record import TRACKED_FIELDS, MemberRecord, split_id_parts
from ..state_store import utc_now

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


class MatchType(str, Enum):
    """How an incoming record was tied to a master member."""

    ID = "ID"
    OLD_ID = "OldID"


class ConflictResolution(str, Enum):
    USE_NEW = "use_new"
    KEEP_EXISTING = "keep_existing"


@dataclass
class FieldChange:
    field: str
    old_value: str
    new_value: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "old_value": self.old_value, "new_value": self.new_value}


@dataclass
class ChangedMember:
    """A master member whose incoming record differs in at least one field."""

    member_id: str
    existing: MemberRecord
    incoming: MemberRecord
    changes: list[FieldChange]
    match_type: MatchType

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "existing": self.existing.to_dict(include_meta=True),
            "incoming": self.incoming.to_dict(),
            "changes": [c.to_dict() for c in self.changes],
            "match_type": self.match_type.value,
        }


@dataclass
class Conflict:
    """Unmatched incoming record sharing its name with a master member."""

    incoming: MemberRecord
    existing: MemberRecord

    def to_dict(self) -> dict[str, Any]:
        return {
            "incoming": self.incoming.to_dict(),
            "existing": self.existing.to_dict(include_meta=True),
        }


@dataclass
class ReconciliationReport:
    """Outcome of reconciling one incoming roster against the master."""

    new_members: list[MemberRecord] = field(default_factory=list)
    changed_members: list[ChangedMember] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    unidentifiable_new: list[MemberRecord] = field(default_factory=list)
    unidentifiable_master: list[MemberRecord] = field(default_factory=list)
    unchanged_count: int = 0

    @property
    def incoming_count(self) -> int:
        """Incoming records accounted for across all buckets."""
        return (
            len(self.new_members)
            + len(self.changed_members)
            + len(self.conflicts)
            + len(self.unidentifiable_new)
            + self.unchanged_count
        )

    @property
    def has_changes(self) -> bool:
        return bool(self.new_members or self.changed_members or self.conflicts)

    def summary(self) -> dict[str, int]:
        return {
            "new": len(self.new_members),
            "changed": len(self.changed_members),
            "conflicts": len(self.conflicts),
            "unidentifiable_new": len(self.unidentifiable_new),
            "unidentifiable_master": len(self.unidentifiable_master),
            "unchanged": self.unchanged_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_members": [m.to_dict(include_meta=True) for m in self.new_members],
            "changed_members": [c.to_dict() for c in self.changed_members],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "unidentifiable_new": [m.to_dict() for m in self.unidentifiable_new],
            "unidentifiable_master": [m.to_dict(include_meta=True) for m in self.unidentifiable_master],
            "unchanged_count": self.unchanged_count,
            "summary": self.summary(),
        }


def build_id_index(master: Sequence[MemberRecord]) -> dict[str, int]:
    """Map every current and old ID part to the index of its master member.

    The first member to claim an ID part keeps it.
    """
    index: dict[str, int] = {}
    for position, member in enumerate(master):
        for part in split_id_parts(member.current_id) + split_id_parts(member.old_id):
            index.setdefault(part, position)
    return index


def _lookup(index: dict[str, int], member_id: str) -> int | None:
    for part in split_id_parts(member_id):
        if part in index:
            return index[part]
    return None


def diff_members(existing: MemberRecord, incoming: MemberRecord) -> list[FieldChange]:
    """Tracked fields whose trimmed values differ, in tracked-field order."""
    changes = []
    for column in TRACKED_FIELDS:
        old_value = existing.get(column).strip()
        new_value = incoming.get(column).strip()
        if old_value != new_value:
            changes.append(FieldChange(field=column, old_value=old_value, new_value=new_value))
    return changes


def classify_match(existing: MemberRecord, incoming: MemberRecord) -> MatchType:
    """``ID`` when the incoming current ID shares a part with the master's current ID."""
    incoming_parts = split_id_parts(incoming.current_id)
    if not incoming_parts:
        return MatchType.OLD_ID
    master_parts = set(split_id_parts(existing.current_id))
    if any(part in master_parts for part in incoming_parts):
        return MatchType.ID
    return MatchType.OLD_ID


def reconcile_members(
    incoming: Sequence[MemberRecord], master: Sequence[MemberRecord]
) -> ReconciliationReport:
    """
    Sort an incoming roster against the master roster.

    Args:
        incoming: Records from the freshly imported roster file
        master: Current master roster of the assembly

    Returns:
        ReconciliationReport; new members carry their assigned custom order
    """
    report = ReconciliationReport()
    id_index = build_id_index(master)

    by_name: dict[str, MemberRecord] = {}
    max_order = 0
    for member in master:
        if member.custom_order and member.custom_order > max_order:
            max_order = member.custom_order
        if not member.has_identifier:
            report.unidentifiable_master.append(member)
        if member.name_key:
            by_name[member.name_key] = member

    claimed: set[int] = set()
    next_order = max_order + 1

    for record in incoming:
        position = _lookup(id_index, record.current_id)
        if position is None:
            position = _lookup(id_index, record.old_id)
        if position is not None and position in claimed:
            logger.debug("Master member %d already claimed in this import", position)
            position = None

        if position is not None:
            claimed.add(position)
            existing = master[position]
            changes = diff_members(existing, record)
            if changes:
                report.changed_members.append(
                    ChangedMember(
                        member_id=existing.membership_number,
                        existing=existing,
                        incoming=record,
                        changes=changes,
                        match_type=classify_match(existing, record),
                    )
                )
            else:
                report.unchanged_count += 1
            continue

        name_key = record.name_key
        if name_key and name_key in by_name:
            report.conflicts.append(Conflict(incoming=record, existing=by_name[name_key]))
        elif not record.has_identifier:
            report.unidentifiable_new.append(record)
        else:
            record.custom_order = next_order
            next_order += 1
            report.new_members.append(record)

    return report


@dataclass
class ApplyResult:
    added: int = 0
    updated: int = 0
    conflicts_replaced: int = 0
    conflicts_kept: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "added": self.added,
            "updated": self.updated,
            "conflicts_replaced": self.conflicts_replaced,
            "conflicts_kept": self.conflicts_kept,
        }


class ReconciliationService:
    """Reconciles imported rosters with the stored master roster per assembly."""

    def __init__(self, state_store: StateStore) -> None:
        self.store = state_store

    def load_master(self, scope: str) -> list[MemberRecord]:
        return self.store.list_members(scope)

    def reconcile(self, scope: str, incoming: Sequence[MemberRecord]) -> ReconciliationReport:
        """Reconcile ``incoming`` against the stored roster of ``scope``."""
        master = self.load_master(scope)
        report = reconcile_members(incoming, master)
        logger.info(
            "Reconciled %d incoming members against %d in %s: %s",
            len(incoming),
            len(master),
            scope,
            report.summary(),
        )
        return report

    def apply_report(
        self,
        scope: str,
        report: ReconciliationReport,
        conflict_resolutions: dict[int, str] | None = None,
        source: str | None = None,
    ) -> ApplyResult:
        """
        Write a reconciliation report into the stored roster.

        Args:
            scope: Assembly whose roster is updated
            report: Report produced by ``reconcile`` for the same scope
            conflict_resolutions: Conflict index -> "use_new" or "keep_existing"
                (unresolved conflicts keep the existing member)
            source: Label recorded as first-seen source of new members

        Returns:
            ApplyResult with counts per action
        """
        resolutions = conflict_resolutions or {}
        result = ApplyResult()
        now = utc_now()

        for member in report.new_members:
            member.first_seen_date = member.first_seen_date or now
            member.first_seen_source = member.first_seen_source or source
            self.store.add_member(scope, member)
            result.added += 1

        for changed in report.changed_members:
            existing = changed.existing
            for change in changed.changes:
                existing.set(change.field, change.new_value)
            if existing.db_id is None:
                logger.warning("Changed member %s has no stored row, skipping", changed.member_id)
                continue
            self.store.update_member(existing)
            result.updated += 1

        for idx, conflict in enumerate(report.conflicts):
            choice = ConflictResolution(resolutions.get(idx, ConflictResolution.KEEP_EXISTING))
            if choice is ConflictResolution.KEEP_EXISTING or conflict.existing.db_id is None:
                result.conflicts_kept += 1
                continue
            existing = conflict.existing
            for column in TRACKED_FIELDS:
                existing.set(column, conflict.incoming.get(column))
            for column, value in conflict.incoming.attributes.items():
                existing.set(column, value)
            self.store.update_member(existing)
            result.conflicts_replaced += 1

        logger.info("Applied roster update to %s: %s", scope, result.to_dict())
        return result
