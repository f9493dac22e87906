"""
State Store (SQLite-based).

Lightweight persistent DB for:
- The master member roster per assembly
- Learned amount corrections and name aliases
- Character substitution counts and regression model blobs
- Cached semantic matching verdicts
"""

from .sqlite_store import (
    GLOBAL_SCOPE,
    AmountCorrection,
    CharSubstitution,
    NameAlias,
    StateStore,
    StorageUnavailableError,
    utc_now,
)

__all__ = [
    "GLOBAL_SCOPE",
    "AmountCorrection",
    "CharSubstitution",
    "NameAlias",
    "StateStore",
    "StorageUnavailableError",
    "utc_now",
]
