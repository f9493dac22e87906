"""Tests for roster reconciliation."""

import pytest

from tithebook.schemas.member_record import MemberRecord
from tithebook.services import (
    ConflictResolution,
    MatchType,
    ReconciliationService,
    build_id_index,
    reconcile_members,
)

from conftest import SAMPLE_ROSTER_ROWS


def incoming_row(index: int, **changes) -> MemberRecord:
    """A copy of a sample roster row with some columns replaced."""
    row = dict(SAMPLE_ROSTER_ROWS[index])
    row.pop("customOrder")
    row.update(changes)
    return MemberRecord.from_dict(row)


def new_row(first: str, surname: str, member_id: str = "") -> MemberRecord:
    return MemberRecord.from_dict(
        {"Membership Number": member_id, "First Name": first, "Surname": surname}
    )


@pytest.fixture
def incoming() -> list[MemberRecord]:
    return [
        incoming_row(0, **{"Membership Number": "TAC89JAM", "Phone Number": "0200000001"}),
        incoming_row(1),
        incoming_row(2, **{"Membership Number": ""}),
        incoming_row(3, **{"Membership Number": "TAC95ESI"}),
        new_row("Yaw", "Boateng", "TAC96YAW"),
        new_row("Akosua", "Addo"),
    ]


class TestBuildIdIndex:
    def test_indexes_every_id_part(self, sample_roster):
        index = build_id_index(sample_roster)
        assert index["TAC89JAM"] == 0
        assert index["A-12"] == 0
        assert index["OLD-001"] == 0
        assert index["OLD-003"] == 2
        assert len(index) == 6

    def test_first_claim_wins(self):
        master = [new_row("Kofi", "Mensah", "X1"), new_row("Ama", "Owusu", "X1")]
        assert build_id_index(master) == {"X1": 0}


class TestReconcileMembers:
    """Tests for sorting incoming records into buckets."""

    def test_every_record_in_one_bucket(self, incoming, sample_roster):
        report = reconcile_members(incoming, sample_roster)

        assert report.summary() == {
            "new": 1,
            "changed": 2,
            "conflicts": 1,
            "unidentifiable_new": 1,
            "unidentifiable_master": 1,
            "unchanged": 1,
        }
        assert report.incoming_count == len(incoming)
        assert report.has_changes is True

    def test_changed_by_current_id_part(self, incoming, sample_roster):
        report = reconcile_members(incoming, sample_roster)

        kofi = report.changed_members[0]
        assert kofi.existing is sample_roster[0]
        assert kofi.match_type is MatchType.ID
        assert kofi.member_id == "Kofi Mensah (TAC89JAM|A-12)"
        assert [c.field for c in kofi.changes] == ["Phone Number", "Membership Number"]
        assert kofi.changes[0].old_value == "0244000001"
        assert kofi.changes[0].new_value == "0200000001"

    def test_changed_by_old_id(self, incoming, sample_roster):
        report = reconcile_members(incoming, sample_roster)

        kwame = report.changed_members[1]
        assert kwame.existing is sample_roster[2]
        assert kwame.match_type is MatchType.OLD_ID
        assert kwame.to_dict()["match_type"] == "OldID"

    def test_conflict_on_same_name(self, incoming, sample_roster):
        report = reconcile_members(incoming, sample_roster)

        conflict = report.conflicts[0]
        assert conflict.existing is sample_roster[3]
        assert conflict.incoming.current_id == "TAC95ESI"

    def test_new_members_numbered_after_master(self, incoming, sample_roster):
        report = reconcile_members(incoming, sample_roster)

        assert [m.first_name for m in report.new_members] == ["Yaw"]
        assert report.new_members[0].custom_order == 5
        assert report.unidentifiable_new[0].first_name == "Akosua"
        assert report.unidentifiable_master[0].first_name == "Esi"

    def test_master_member_claimed_once(self, sample_roster):
        report = reconcile_members([incoming_row(1), incoming_row(1)], sample_roster)

        assert report.unchanged_count == 1
        assert len(report.conflicts) == 1

    def test_empty_master(self, incoming):
        report = reconcile_members(incoming, [])

        assert len(report.new_members) == 5
        assert [m.custom_order for m in report.new_members] == [1, 2, 3, 4, 5]
        assert len(report.unidentifiable_new) == 1

    def test_phone_only_change_is_one_diff(self, sample_roster):
        record = incoming_row(1, **{"Phone Number": "0209999999"})

        report = reconcile_members([record], sample_roster)

        assert report.summary()["changed"] == 1
        change = report.changed_members[0]
        assert change.existing is sample_roster[1]
        assert [c.field for c in change.changes] == ["Phone Number"]
        assert change.changes[0].old_value == "0244000002"
        assert change.changes[0].new_value == "0209999999"

    def test_trimmed_values_compare_equal(self, sample_roster):
        record = incoming_row(1, **{"Phone Number": " 0244000002 "})
        report = reconcile_members([record], sample_roster)
        assert report.unchanged_count == 1

    def test_to_dict(self, incoming, sample_roster):
        data = reconcile_members(incoming, sample_roster).to_dict()
        assert data["summary"]["new"] == 1
        assert data["new_members"][0]["customOrder"] == 5
        assert data["changed_members"][0]["changes"][0]["field"] == "Phone Number"


class TestReconciliationService:
    """Tests for reconciling against and updating the stored roster."""

    @pytest.fixture
    def service(self, store, sample_roster) -> ReconciliationService:
        for member in sample_roster:
            store.add_member("Central", member)
        return ReconciliationService(store)

    def test_apply_report(self, service, store, incoming):
        report = service.reconcile("Central", incoming)

        result = service.apply_report(
            "Central",
            report,
            conflict_resolutions={0: ConflictResolution.USE_NEW.value},
            source="roster-2026.csv",
        )

        assert result.to_dict() == {
            "added": 1,
            "updated": 2,
            "conflicts_replaced": 1,
            "conflicts_kept": 0,
        }
        members = store.list_members("Central")
        assert len(members) == 5
        assert members[0].get("Phone Number") == "0200000001"
        assert members[0].membership_number == "TAC89JAM"
        assert members[3].current_id == "TAC95ESI"
        assert members[4].first_name == "Yaw"
        assert members[4].custom_order == 5
        assert members[4].first_seen_date is not None

    def test_conflicts_kept_by_default(self, service, store, incoming):
        report = service.reconcile("Central", incoming)

        result = service.apply_report("Central", report)

        assert result.conflicts_kept == 1
        assert result.conflicts_replaced == 0
        esi = store.list_members("Central")[3]
        assert esi.current_id == ""

    def test_second_import_is_unchanged(self, service, incoming):
        service.apply_report("Central", service.reconcile("Central", incoming))

        report = service.reconcile("Central", incoming[:3])

        assert report.unchanged_count == 3
        assert report.has_changes is False

    def test_unknown_resolution_rejected(self, service, incoming):
        report = service.reconcile("Central", incoming)
        with pytest.raises(ValueError):
            service.apply_report("Central", report, conflict_resolutions={0: "merge"})
