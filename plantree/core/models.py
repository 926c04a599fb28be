"""Data models for the plantree orchestrator.

Plans and tasks are value objects rebuilt from the plan files on every
invocation. Claims are persisted in the ledger managed by ClaimStore.
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


# --- Plan Models ---


class Task(BaseModel):
    """One checklist line within a plan."""

    id: str  # e.g., "AUTH_PLAN#3"
    plan_id: str
    plan_path: Path
    text: str
    checked: bool = False
    line_index: int  # 0-based line number in the plan document
    human_only: bool = False  # [human] / [manual] label

    @property
    def index(self) -> int:
        """1-based position among the plan's checklist lines."""
        return int(self.id.rsplit("#", 1)[1])


class Plan(BaseModel):
    """A plan document: checklist tasks plus identity/dependency headers."""

    id: str
    path: Path
    depends_on: set[str] = Field(default_factory=set)
    full_text: str = ""
    tasks: list[Task] = Field(default_factory=list)

    @property
    def pending_tasks(self) -> list[Task]:
        return [t for t in self.tasks if not t.checked]

    @property
    def is_complete(self) -> bool:
        """A plan is complete iff none of its tasks are unchecked."""
        return not self.pending_tasks


# --- Claim Models ---


class Claim(BaseModel):
    """Time-bounded ownership record for a task."""

    task_id: str
    owner: str
    claimed_at: datetime = Field(default_factory=utc_now)
    lease_seconds: int = Field(default=1800, gt=0)
    note: str | None = None

    @property
    def expires_at(self) -> datetime:
        return self.claimed_at + timedelta(seconds=self.lease_seconds)

    def is_expired(self, now: datetime) -> bool:
        """Unexpired while now - claimed_at < lease_seconds."""
        return (now - self.claimed_at).total_seconds() >= self.lease_seconds


class ClaimLedger(BaseModel):
    """On-disk ledger: task_id -> Claim."""

    version: int = 1
    claims: dict[str, Claim] = Field(default_factory=dict)
