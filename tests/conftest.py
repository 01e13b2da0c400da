"""
Shared fixtures for the classroom backup server tests.
"""

import sqlite3
from pathlib import Path

import pytest

from classroom.backup_server.database import ClassroomDatabase


def _make_database(path: Path, students: int = 3) -> Path:
    db = ClassroomDatabase(path)
    db.initialize_schema()
    conn = sqlite3.connect(str(path))
    try:
        for i in range(students):
            conn.execute("INSERT INTO students (name, points) VALUES (?, ?)", (f"student {i}", i * 10))
            conn.execute(
                "INSERT INTO point_logs (student_id, points_change, reason) VALUES (?, ?, ?)",
                (i + 1, 5, "homework"),
            )
        conn.commit()
    finally:
        conn.close()
    return path


def _corrupt_database(path: Path) -> Path:
    """Keep the SQLite header but overwrite every page after the first."""
    data = bytearray(path.read_bytes())
    page_size = int.from_bytes(data[16:18], "big") or 4096
    for offset in range(page_size, len(data)):
        data[offset] = 0xA5
    path.write_bytes(bytes(data))
    return path


@pytest.fixture
def make_database():
    """Factory creating a populated classroom database at a path."""
    return _make_database


@pytest.fixture
def corrupt_database():
    """Factory corrupting an existing database file in place."""
    return _corrupt_database
