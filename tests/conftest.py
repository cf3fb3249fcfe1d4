# Copyright (c) Syntropy Systems
"""Pytest fixtures for quorum tests."""

import os
import sqlite3
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

# Store original cwd at module load time
_original_cwd = Path.cwd()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def quorum_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary quorum project directory."""
    from quorum.db import init_db

    quorum_dir = temp_dir / ".quorum"
    quorum_dir.mkdir()
    runs_dir = quorum_dir / "runs"
    runs_dir.mkdir()

    # Initialize database
    db_path = quorum_dir / "quorum.db"
    init_db(db_path)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(quorum_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from quorum.db import get_connection

    db_path = quorum_project / ".quorum" / "quorum.db"
    conn = get_connection(db_path)
    yield conn
    conn.close()
