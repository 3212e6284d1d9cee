# tests/conftest.py
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure project root importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from repogrowth.db import apply_schema, get_connection  # noqa: E402
from repogrowth.models import GrowthConfig  # noqa: E402
from repogrowth.repositories import create_repository  # noqa: E402

OWNER = "owner-1"
T0 = "2024-05-01T09:00:00Z"


@pytest.fixture
def conn():
    # check_same_thread=False so TestClient's worker thread can share it.
    con = get_connection(":memory:", check_same_thread=False)
    apply_schema(con)
    try:
        yield con
    finally:
        con.close()


@pytest.fixture
def make_repo(conn):
    """Factory: make_repo(name="Rustaceans", **growth_overrides) -> Repository."""
    counter = {"n": 0}

    def _make(name: str | None = None, owner: str = OWNER, **growth):
        counter["n"] += 1
        cfg = {
            "snowball_enabled": True,
            "forward_threshold": 3,
            "quality_threshold": 0.7,
            "digest_frequency": "weekly",
        }
        cfg.update(growth)
        return create_repository(
            conn,
            name or f"Repo {counter['n']}",
            owner,
            growth=GrowthConfig(**cfg),
            now=T0,
        )

    return _make


@pytest.fixture
def repo(make_repo):
    return make_repo("Rustaceans")
