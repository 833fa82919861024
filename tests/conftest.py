"""Pytest configuration and fixtures for matrixci tests"""
import os
import sys
import tempfile
from pathlib import Path

import pytest

from matrixci.data import SqliteData
from matrixci.step import Step

PY = sys.executable


def record_step(log_path, label, exit_code=0, name=None):
    """A step that appends `label` to log_path and exits with exit_code."""
    code = (
        "import sys\n"
        f"open({str(log_path)!r}, 'a').write({label!r} + '\\n')\n"
        f"sys.exit({exit_code})\n"
    )
    return Step(command=(PY, "-c", code), name=name or label)


def read_log(log_path):
    path = Path(log_path)
    if not path.exists():
        return []
    return path.read_text().splitlines()


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clean_env():
    """Ambient environment without variables the tests assert on"""
    return {k: v for k, v in os.environ.items() if k not in ("RUSTFLAGS", "MATRIXCI_PROBE")}


@pytest.fixture
def test_db(temp_dir):
    """Provide a test database"""
    data = SqliteData(db_path=str(temp_dir / "test.db"))
    yield data
    data.close()


@pytest.fixture
def matrixci_project(temp_dir):
    """Provide a temporary project directory with .git and .matrixci folders"""
    (temp_dir / ".git").mkdir()
    (temp_dir / ".matrixci").mkdir()
    yield temp_dir
