"""
Classroom backup server - Backup, recovery and delivery for the classroom
points database.

The classroom points application keeps all of its state in one SQLite file.
This package keeps that file safe:

    ┌──────────────┐   cron / operator   ┌──────────────────┐
    │  Scheduler   │────────────────────▶│  Backup pipeline │
    └──────────────┘                     └────────┬─────────┘
                                                  │
               integrity check -> snapshot -> verify -> rotate -> deliver
                                                  │
                        ┌─────────────────────────┼─────────────────────┐
                        ▼                         ▼                     ▼
                   ┌─────────┐              ┌─────────┐           ┌─────────┐
                   │ Webhook │              │   S3    │           │  Email  │
                   └─────────┘              └─────────┘           └─────────┘

    At startup the RestoreCoordinator walks current file -> newest local
    snapshot -> remote source -> fresh schema before anything is served.

Invariants:
    - The live database is only replaced by an atomic rename
    - A local snapshot is kept even when every delivery channel fails
    - At most one backup run is in flight at a time

How to change safely:
    - Snapshot filenames must stay sortable by creation time
    - Schema changes must be additive so old snapshots stay restorable

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
