"""
puzzlemaster: integration test package

Purpose
- Test package marker file for subprocess-level CLI checks.

Functional requirements
- Must not import heavy modules at import time; keep test collection fast.
- Offline; every store and log file lives under the test's tmp_path.
"""
