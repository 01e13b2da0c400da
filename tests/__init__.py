"""
Classroom backup server test suite.

This package contains:
- unit/: Unit tests (no network; SMTP, S3 and HTTP peers are mocked)
- integration/: Integration tests (real SQLite files, full pipeline and
  startup recovery flows)
"""
