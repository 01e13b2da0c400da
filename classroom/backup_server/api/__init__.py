"""
API module for the classroom backup server.

Invariants:
    - The API is a thin layer over BackupSubsystem
    - No business logic lives in request handlers
"""

from .http_server import create_http_app, start_http_server

__all__ = ["create_http_app", "start_http_server"]
