"""
Tithe Book → OCR Consolidation → Correction Learning → Roster Reconciliation

A deterministic, testable core that turns scanned tithe-register pages into
ordered, de-duplicated entries, corrects handwritten amounts from learned
user corrections, and reconciles member names and rosters against the
stored membership list.
"""

__version__ = "0.1.0"
