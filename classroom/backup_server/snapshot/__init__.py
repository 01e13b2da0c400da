"""
Snapshot module for the classroom backup server.

This module handles local SQLite snapshots for:
- Startup recovery when the live database is lost or corrupt
- Off-box delivery (webhook, S3, email)
- Operator-initiated restores

Invariants:
    - Snapshots are consistent copies taken with the SQLite backup API
    - Snapshot filenames sort in creation order
    - Only the newest N snapshots are kept locally
"""

from .manager import Snapshot, SnapshotManager

__all__ = ["SnapshotManager", "Snapshot"]
