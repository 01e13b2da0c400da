"""
Scheduling and status for the classroom backup server.

Invariants:
    - One scheduled backup job per process
    - Status is in-memory and bounded
"""

from .scheduler import BackupScheduler
from .status import StatusRegistry

__all__ = ["BackupScheduler", "StatusRegistry"]
