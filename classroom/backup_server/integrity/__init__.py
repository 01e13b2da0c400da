"""
Integrity module for the classroom backup server.

Validates database files before snapshotting, after snapshotting, and during
startup recovery.

Invariants:
    - Integrity checks never raise into their caller
    - Integrity checks never modify the file they inspect
"""

from .checker import IntegrityChecker, IntegrityReport

__all__ = ["IntegrityChecker", "IntegrityReport"]
