"""Shared fixtures for the pgtmp test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from pgtmp.config import PgtmpConfig
from pgtmp.errors import ToolNotFoundError
from pgtmp.tools import get_locator


def postgres_available() -> bool:
    """True if both initdb and pg_ctl can be located."""
    locator = get_locator()
    try:
        locator.find("initdb")
        locator.find("pg_ctl")
    except ToolNotFoundError:
        return False
    return True


requires_postgres = pytest.mark.skipif(
    not postgres_available(), reason="PostgreSQL (initdb, pg_ctl) is not installed"
)


@pytest.fixture
def pool_root(tmp_path: Path) -> Path:
    """Isolated pool root for each test."""
    root = tmp_path / "pool"
    root.mkdir()
    return root


@pytest.fixture
def config(pool_root: Path) -> PgtmpConfig:
    """Default configuration pointed at the isolated pool root."""
    cfg = PgtmpConfig()
    cfg.pool.root = str(pool_root)
    return cfg

