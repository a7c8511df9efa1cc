"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# Test data directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def fixtures_dir() -> Path:
    """Directory holding test data files."""
    return FIXTURES_DIR


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch: pytest.MonkeyPatch):
    """Load configuration from a CMDEXEC_*-free environment for every test."""
    from cmdexec.config import reload_config

    for name in list(os.environ):
        if name.startswith("CMDEXEC_"):
            monkeypatch.delenv(name)
    reload_config()
    yield
    reload_config()
