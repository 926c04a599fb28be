# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the plantree test suite.

Provides:
- A temporary workspace with plans/ and .plantree/
- A plan-writing helper
- PlanStore / ClaimStore instances bound to the workspace
- A controllable UTC clock for lease expiry tests
"""

from __future__ import annotations

import textwrap
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from plantree.core.claims import ClaimStore
from plantree.core.plans import PlanStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create a workspace root with empty plans/ and .plantree/ directories."""
    (tmp_path / "plans").mkdir()
    (tmp_path / ".plantree").mkdir()
    return tmp_path


@pytest.fixture
def write_plan(workspace: Path) -> Callable[..., Path]:
    """Write a plan file under plans/ (body is dedented).

    Example:
        def test_something(write_plan):
            path = write_plan("auth.md", '''
                Plan-ID: AUTH
                - [ ] Add login
            ''')
    """

    def _write(name: str, body: str, subdir: str | None = None) -> Path:
        directory = workspace / "plans"
        if subdir:
            directory = directory / subdir
            directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_text(textwrap.dedent(body).lstrip("\n"), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def plan_store(workspace: Path) -> PlanStore:
    return PlanStore(workspace / "plans")


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def claim_store(workspace: Path, fake_clock: FakeClock) -> ClaimStore:
    """ClaimStore on the workspace ledger, driven by fake_clock."""
    return ClaimStore(workspace / ".plantree", default_lease_seconds=60, clock=fake_clock)
