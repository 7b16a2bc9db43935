"""
puzzlemaster: package root

Purpose
- Hierarchical planning domain (Project → Plan → Phases → Job/Team/Actions)
  with validated entities and SQLite-backed persistence gateways.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Submodules are imported explicitly by callers; this module only exports
  package metadata.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
