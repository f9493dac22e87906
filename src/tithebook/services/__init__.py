"""Services operating on the stored assembly roster."""

from tithebook.services.reconciliation import (
    ApplyResult,
    ChangedMember,
    Conflict,
    ConflictResolution,
    FieldChange,
    MatchType,
    ReconciliationReport,
    ReconciliationService,
    build_id_index,
    reconcile_members,
)

__all__ = [
    "ApplyResult",
    "ChangedMember",
    "Conflict",
    "ConflictResolution",
    "FieldChange",
    "MatchType",
    "ReconciliationReport",
    "ReconciliationService",
    "build_id_index",
    "reconcile_members",
]
