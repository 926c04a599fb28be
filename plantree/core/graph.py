"""Plan dependency graph using NetworkX.

Edge A -> B means plan A lists B in its ``Depends-On`` header, i.e. B must be
complete before A's tasks become ready. The relation must be acyclic and every
target must be a known plan.
"""

from collections.abc import Sequence

import networkx as nx

from plantree.core.models import Plan, Task


class GraphError(Exception):
    """Invalid plan dependency graph."""

    pass


class MissingDependencyError(GraphError):
    """A Depends-On entry names a plan that does not exist."""

    def __init__(self, plan_id: str, missing: str, path: str | None = None):
        self.plan_id = plan_id
        self.missing = missing
        self.path = path
        where = f" ({path})" if path else ""
        super().__init__(f"Plan {plan_id} depends on missing plan {missing}{where}")


class DependencyCycleError(GraphError):
    """Depends-On edges form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        path = " -> ".join([*cycle, cycle[0]])
        super().__init__(f"Dependency cycle: {path}")


class UnknownTaskError(KeyError):
    """Task ID does not exist in any loaded plan."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"Unknown task id {self.task_id}"


def _rotate_cycle(cycle: list[str]) -> list[str]:
    """Rotate so the smallest ID leads; keeps reports stable across runs."""
    start = cycle.index(min(cycle))
    return cycle[start:] + cycle[:start]


class DependencyGraph:
    """Validated view over a set of plans.

    Performance Notes:
    - plans_by_id / tasks_by_id give O(1) lookups
    - the networkx graph is built once per instance; plans are value objects
      reloaded per command so there is nothing to invalidate
    """

    # Limit cycle enumeration on pathological graphs
    MAX_CYCLES_TO_REPORT = 100

    def __init__(self, plans: Sequence[Plan]):
        self.plans: list[Plan] = sorted(plans, key=lambda p: p.id)
        self.plans_by_id: dict[str, Plan] = {p.id: p for p in self.plans}
        self.tasks_by_id: dict[str, Task] = {t.id: t for p in self.plans for t in p.tasks}
        self._graph = self._to_networkx()

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph; edges to unknown plans are left out."""
        G = nx.DiGraph()
        for plan in self.plans:
            G.add_node(plan.id)
        for plan in self.plans:
            for dep in sorted(plan.depends_on):
                if dep in self.plans_by_id:
                    G.add_edge(plan.id, dep)
        return G

    # --- Validation ---

    def missing_dependencies(self) -> list[MissingDependencyError]:
        return [
            MissingDependencyError(plan.id, dep, str(plan.path))
            for plan in self.plans
            for dep in sorted(plan.depends_on)
            if dep not in self.plans_by_id
        ]

    def cycles(self) -> list[list[str]]:
        """Enumerate dependency cycles as ordered Plan ID lists."""
        found: list[list[str]] = []
        for cycle_count, cycle in enumerate(nx.simple_cycles(self._graph), start=1):
            if cycle_count > self.MAX_CYCLES_TO_REPORT:
                break
            found.append(_rotate_cycle(list(cycle)))
        return sorted(found)

    def problems(self) -> list[GraphError]:
        """Return every validation problem (missing targets first, then cycles)."""
        problems: list[GraphError] = list(self.missing_dependencies())
        problems.extend(DependencyCycleError(c) for c in self.cycles())
        return problems

    def validate(self) -> None:
        """Raise the first GraphError found, if any."""
        problems = self.problems()
        if problems:
            raise problems[0]

    # --- Completion predicates ---

    def get_task(self, task_id: str) -> Task:
        try:
            return self.tasks_by_id[task_id]
        except KeyError:
            raise UnknownTaskError(task_id) from None

    def is_plan_complete(self, plan_id: str) -> bool:
        """True iff the plan exists and has no unchecked tasks."""
        plan = self.plans_by_id.get(plan_id)
        return plan is not None and plan.is_complete

    def dependencies_of(self, plan_id: str) -> set[str]:
        """Transitive Depends-On closure (known plans only)."""
        if plan_id not in self._graph:
            return set()
        return set(nx.descendants(self._graph, plan_id))

    def incomplete_dependencies(self, plan_id: str) -> list[str]:
        """Plans that still block ``plan_id``, including missing direct targets."""
        plan = self.plans_by_id.get(plan_id)
        if plan is None:
            return []
        blockers = {dep for dep in plan.depends_on if dep not in self.plans_by_id}
        blockers.update(d for d in self.dependencies_of(plan_id) if not self.is_plan_complete(d))
        blockers.discard(plan_id)
        return sorted(blockers)

    def dependencies_complete(self, plan_id: str) -> bool:
        return plan_id in self.plans_by_id and not self.incomplete_dependencies(plan_id)

    @property
    def task_count(self) -> int:
        return len(self.tasks_by_id)
