"""
Pytest configuration and shared fixtures for crossprov tests.
"""

from pathlib import Path
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def no_sleep():
    """Make retry delays instant; the mock records requested delays."""
    with patch("time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture
def write_file(tmp_path):
    """Write bytes to a file under tmp_path and return its path."""

    def _write(name: str, content: bytes) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _write


@pytest.fixture
def clean_environ(monkeypatch):
    """Remove CROSSPROV_* overrides inherited from the host."""
    import os

    for key in list(os.environ):
        if key.startswith("CROSSPROV_"):
            monkeypatch.delenv(key)
