"""
CLI runner module.

Provides commands:
- extract: Read page photos into one sequenced, checked list
- sequence: Sequence page extractions saved as JSON
- reconcile: Compare a roster file with the stored roster
- match / correct / suggest: Name matching and amount learning
- export-corrections / import-corrections / status
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
