"""
Restore module for the classroom backup server.

Startup recovery walks a fixed fallback chain (current file, newest local
snapshot, remote source, fresh schema) and stops at the first valid result.

Invariants:
    - Recovery completes before the database is served
    - The only fatal outcome is RestoreExhaustedError
"""

from .coordinator import (
    RestoreCoordinator,
    RestoreDecision,
    RestoreOutcome,
    RestoreState,
    install_database_file,
)
from .remote import HttpRemoteSource, RemoteSource, S3RemoteSource, build_remote_source

__all__ = [
    "RestoreCoordinator",
    "RestoreDecision",
    "RestoreOutcome",
    "RestoreState",
    "install_database_file",
    "RemoteSource",
    "HttpRemoteSource",
    "S3RemoteSource",
    "build_remote_source",
]
