"""
Versioned migrations for the learned-state tables.

Applied in order and tracked in a ``migrations`` table.
"""

from .runner import Migration, MigrationRunner, get_all_migrations

__all__ = ["Migration", "MigrationRunner", "get_all_migrations"]
