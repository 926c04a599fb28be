"""Task readiness: joins the dependency graph with active claims.

A task is ready iff:
1. it is unchecked,
2. it is not labelled human-only,
3. every plan its plan transitively depends on is complete,
4. no unexpired claim exists for it (regardless of owner).
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from plantree.core.graph import DependencyGraph
from plantree.core.models import Claim, Task


class TaskState(str, Enum):
    """Display/selection state of a task."""

    DONE = "done"
    READY = "ready"
    CLAIMED = "claimed"
    BLOCKED = "blocked"
    HUMAN = "human"


@dataclass
class TaskStatus:
    """A task with its computed state."""

    task: Task
    state: TaskState
    owner: str | None = None  # Set when CLAIMED
    blocked_by: list[str] = field(default_factory=list)  # Set when BLOCKED

    @property
    def label(self) -> str:
        if self.state == TaskState.CLAIMED:
            return f"claimed:{self.owner}"
        return self.state.value


@dataclass
class ReadyDiagnostics:
    """Why (or why not) work is available for an owner."""

    open_plans: int = 0
    open_tasks: int = 0
    ready_tasks: int = 0
    blocked_by_dependencies: int = 0
    claimed_by_other_owner: int = 0
    claimed_by_self: int = 0
    human_only: int = 0

    def summary(self) -> str:
        if self.open_tasks == 0:
            return "All checklist items are complete."
        return (
            f"Open tasks: {self.open_tasks} across {self.open_plans} plan(s). "
            f"Ready: {self.ready_tasks}. "
            f"Blocked by dependencies: {self.blocked_by_dependencies}. "
            f"Claimed by other owners: {self.claimed_by_other_owner}. "
            f"Claimed by this owner: {self.claimed_by_self}. "
            f"Human-only: {self.human_only}."
        )


class TaskSelector:
    """Computes the ready set from a graph and a snapshot of active claims.

    Take one ``ClaimStore.active_claims()`` snapshot per selection so the whole
    ready set is computed against a consistent view of the ledger.
    """

    def __init__(self, graph: DependencyGraph, active_claims: Mapping[str, Claim]):
        self.graph = graph
        self.active_claims = active_claims

    def status_of(self, task: Task) -> TaskStatus:
        if task.checked:
            return TaskStatus(task, TaskState.DONE)
        claim = self.active_claims.get(task.id)
        if claim is not None:
            return TaskStatus(task, TaskState.CLAIMED, owner=claim.owner)
        blockers = self.graph.incomplete_dependencies(task.plan_id)
        if blockers:
            return TaskStatus(task, TaskState.BLOCKED, blocked_by=blockers)
        if task.human_only:
            return TaskStatus(task, TaskState.HUMAN)
        return TaskStatus(task, TaskState.READY)

    def statuses(self) -> list[TaskStatus]:
        """Status for every task, in plan-id then checklist order."""
        return [self.status_of(task) for plan in self.graph.plans for task in plan.tasks]

    def is_ready(self, task: Task) -> bool:
        return self.status_of(task).state == TaskState.READY

    def ready_tasks(self) -> list[Task]:
        return [s.task for s in self.statuses() if s.state == TaskState.READY]

    def orphaned_claims(self) -> list[Claim]:
        """Active claims for task ids that no longer exist."""
        return [
            claim
            for task_id, claim in sorted(self.active_claims.items())
            if task_id not in self.graph.tasks_by_id
        ]

    def diagnostics(self, owner: str | None = None) -> ReadyDiagnostics:
        diag = ReadyDiagnostics()
        open_plans: set[str] = set()
        for status in self.statuses():
            if status.state == TaskState.DONE:
                continue
            diag.open_tasks += 1
            open_plans.add(status.task.plan_id)
            if status.state == TaskState.READY:
                diag.ready_tasks += 1
            elif status.state == TaskState.BLOCKED:
                diag.blocked_by_dependencies += 1
            elif status.state == TaskState.HUMAN:
                diag.human_only += 1
            elif status.owner == owner:
                diag.claimed_by_self += 1
            else:
                diag.claimed_by_other_owner += 1
        diag.open_plans = len(open_plans)
        return diag
