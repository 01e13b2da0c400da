"""
Error types for the classroom backup server.

This module defines the exceptions raised by the backup subsystem:
- BackupError: Base exception
- SourceMissingError: No live database to snapshot
- DeliveryChannelError: A delivery channel failed (and its specific forms)
- RestoreExhaustedError: Startup recovery could not produce a database
- BackupAlreadyRunningError: A pipeline run is already in flight
- SnapshotNotFoundError / InvalidSnapshotError: Operator restore problems

Integrity failures are not raised; the integrity checker returns a boolean
and the pipeline records an "integrity-failed" outcome instead.

Invariants:
    - All errors inherit from BackupError
    - Every error carries a stable code for programmatic handling
    - Delivery errors never escape the dispatcher; they become channel results
"""

from __future__ import annotations

from typing import Any


class BackupError(Exception):
    """Base exception for all backup subsystem errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "BACKUP_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "error_code": self.code, "details": self.details}


class SourceMissingError(BackupError):
    """The live database file does not exist, so there is nothing to snapshot."""

    code = "SOURCE_MISSING"

    def __init__(self, path: str) -> None:
        super().__init__(f"Database file not found: {path}", details={"path": path})
        self.path = path


class DeliveryChannelError(BackupError):
    """A delivery channel failed to push a snapshot off-box.

    Raised inside a channel and converted to a failed ChannelResult by the
    dispatcher. Sibling channels and the local snapshot are unaffected.
    """

    code = "DELIVERY_CHANNEL_FAILED"

    def __init__(
        self,
        message: str,
        channel: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details={"channel": channel, **(details or {})})
        self.channel = channel


class AttachmentTooLargeError(DeliveryChannelError):
    """Snapshot exceeds the configured maximum email attachment size."""

    code = "ATTACHMENT_TOO_LARGE"

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        super().__init__(
            f"Snapshot is {size_bytes} bytes, above the {max_bytes} byte attachment limit",
            channel="email",
            details={"size_bytes": size_bytes, "max_bytes": max_bytes},
        )
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class NoRecipientConfiguredError(DeliveryChannelError):
    """Email delivery was requested but BACKUP_TO_EMAIL is not set."""

    code = "NO_RECIPIENT_CONFIGURED"

    def __init__(self) -> None:
        super().__init__(
            "Email delivery requested but no recipient configured (set BACKUP_TO_EMAIL)",
            channel="email",
        )


class RestoreExhaustedError(BackupError):
    """Every recovery path failed, including fresh initialization.

    This is the only fatal backup error: without a database there is
    nothing to serve, so the process should exit.
    """

    code = "RESTORE_EXHAUSTED"


class BackupAlreadyRunningError(BackupError):
    """A backup pipeline run is already in flight."""

    code = "BACKUP_IN_PROGRESS"

    def __init__(self) -> None:
        super().__init__("A backup run is already in progress")


class SnapshotNotFoundError(BackupError):
    """Requested snapshot does not exist in the backup directory."""

    code = "SNAPSHOT_NOT_FOUND"

    def __init__(self, name: str) -> None:
        super().__init__(f"Snapshot not found: {name}", details={"snapshot": name})


class InvalidSnapshotError(BackupError):
    """Requested snapshot fails the integrity check and cannot be restored."""

    code = "INVALID_SNAPSHOT"

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(
            f"Snapshot {name} failed integrity check: {reason}",
            details={"snapshot": name, "reason": reason},
        )
