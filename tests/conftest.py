"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from binaries import write_file


@pytest.fixture
def prefix(tmp_path: Path) -> Path:
    """An empty install prefix for packaging tests."""
    root = tmp_path / "host_env"
    root.mkdir()
    return root


@pytest.fixture
def install(prefix: Path) -> Callable[..., Path]:
    """Write a file below the test prefix."""

    def _install(relative: str, data: bytes | str, *, executable: bool = False) -> Path:
        return write_file(prefix / relative, data, executable=executable)

    return _install
