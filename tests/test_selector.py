"""Tests for task readiness."""

import pytest

from plantree.core.completion import CompletionMarker
from plantree.core.selector import TaskSelector, TaskState


@pytest.fixture
def ab_plans(write_plan):
    """Plan A depends on plan B; each has one unchecked item."""
    write_plan("b.md", "Plan-ID: B\n- [ ] build base\n")
    write_plan("a.md", "Plan-ID: A\nDepends-On: B\n- [ ] build on top\n")


class TestReadiness:
    """Tests for the readiness predicate."""

    def test_dependent_plan_blocked_until_dependency_complete(
        self, ab_plans, plan_store, claim_store
    ):
        """A#1 is not ready while B#1 is open; it becomes ready after B#1 completes."""
        graph = plan_store.load_graph()
        selector = TaskSelector(graph, claim_store.active_claims())
        assert [t.id for t in selector.ready_tasks()] == ["B#1"]
        assert selector.status_of(graph.get_task("A#1")).blocked_by == ["B"]

        CompletionMarker().mark(graph.get_task("B#1"))

        graph = plan_store.load_graph()
        selector = TaskSelector(graph, claim_store.active_claims())
        assert [t.id for t in selector.ready_tasks()] == ["A#1"]

    def test_claimed_task_not_ready_for_anyone(self, ab_plans, plan_store, claim_store):
        claim_store.claim("B#1", "alice")
        graph = plan_store.load_graph()
        selector = TaskSelector(graph, claim_store.active_claims())

        assert selector.ready_tasks() == []
        status = selector.status_of(graph.get_task("B#1"))
        assert status.state == TaskState.CLAIMED
        assert status.label == "claimed:alice"

    def test_expired_claim_makes_task_ready(self, ab_plans, plan_store, claim_store, fake_clock):
        claim_store.claim("B#1", "alice")
        fake_clock.advance(61)
        selector = TaskSelector(plan_store.load_graph(), claim_store.active_claims())
        assert [t.id for t in selector.ready_tasks()] == ["B#1"]

    def test_human_only_never_ready(self, write_plan, plan_store):
        write_plan("h.md", "Plan-ID: H\n- [ ] [human] approve\n- [ ] automate\n")
        selector = TaskSelector(plan_store.load_graph(), {})

        states = [s.state for s in selector.statuses()]
        assert states == [TaskState.HUMAN, TaskState.READY]

    def test_ready_order_plan_then_index(self, write_plan, plan_store):
        write_plan("z.md", "Plan-ID: Z\n- [ ] z1\n")
        write_plan("m.md", "Plan-ID: M\n- [x] m1\n- [ ] m2\n- [ ] m3\n")
        selector = TaskSelector(plan_store.load_graph(), {})
        assert [t.id for t in selector.ready_tasks()] == ["M#2", "M#3", "Z#1"]


class TestDiagnostics:
    """Tests for no-ready-work diagnostics."""

    def test_counts(self, ab_plans, write_plan, plan_store, claim_store):
        write_plan("c.md", "Plan-ID: C\n- [ ] mine\n- [ ] theirs\n- [ ] [manual] by hand\n")
        claim_store.claim("C#1", "me")
        claim_store.claim("C#2", "other")

        selector = TaskSelector(plan_store.load_graph(), claim_store.active_claims())
        diag = selector.diagnostics("me")

        assert diag.open_plans == 3
        assert diag.open_tasks == 5
        assert diag.ready_tasks == 1
        assert diag.blocked_by_dependencies == 1
        assert diag.claimed_by_self == 1
        assert diag.claimed_by_other_owner == 1
        assert diag.human_only == 1
        assert "Ready: 1" in diag.summary()

    def test_all_complete_summary(self, write_plan, plan_store):
        write_plan("d.md", "- [x] done\n")
        diag = TaskSelector(plan_store.load_graph(), {}).diagnostics()
        assert diag.summary() == "All checklist items are complete."

    def test_orphaned_claims(self, ab_plans, plan_store, claim_store):
        claim_store.claim("OLD#1", "alice")
        selector = TaskSelector(plan_store.load_graph(), claim_store.active_claims())
        assert [c.task_id for c in selector.orphaned_claims()] == ["OLD#1"]
