"""
CLI tools for classroom backup administration.

This module provides command-line tools for:
- backup: Run the backup pipeline with a chosen set of channels
- restore: Replace the live database with a snapshot
- check: Verify database and snapshot integrity
- email-test / email-config: Inspect the SMTP setup

Invariants:
    - Tools work offline (no running server required)
    - All operations are logged for audit
"""

from .backup_cli import build_parser, main

__all__ = ["build_parser", "main"]
