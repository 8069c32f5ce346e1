"""Shared fixtures for the test suite."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """Provide an empty project workspace."""

    path = tmp_path / "workspace"
    path.mkdir()
    return path
