"""Tests for plan discovery and parsing."""

from pathlib import Path

import pytest

from plantree.core.plans import (
    PlanParseError,
    PlanStore,
    derive_plan_id,
    parse_checklist_line,
    parse_plan,
    parse_plan_text,
    parse_task_labels,
)


class TestDerivePlanId:
    """Tests for filename-derived Plan IDs."""

    def test_uppercases_and_collapses_separators(self):
        """Runs of non-alphanumerics collapse to one underscore."""
        assert derive_plan_id(Path("my-plan v2.md")) == "MY_PLAN_V2"

    def test_extension_stripped(self):
        assert derive_plan_id(Path("plans/auth.txt")) == "AUTH"


class TestChecklistLines:
    """Tests for checklist line recognition."""

    def test_pending_item(self):
        item = parse_checklist_line("- [ ] Write tests")
        assert item is not None
        assert item.checked is False
        assert item.text == "Write tests"

    def test_checked_item_upper_and_lower(self):
        """Both [x] and [X] count as done."""
        assert parse_checklist_line("- [x] done").checked is True
        assert parse_checklist_line("- [X] done").checked is True

    def test_indented_item_keeps_indent(self):
        item = parse_checklist_line("    - [ ] nested")
        assert item.indent == "    "
        assert item.text == "nested"

    def test_plain_bullet_is_not_a_task(self):
        assert parse_checklist_line("- just a bullet") is None
        assert parse_checklist_line("Some prose") is None

    def test_invalid_marker_raises(self):
        """A checklist-shaped line with an unknown marker is an error."""
        with pytest.raises(ValueError, match=r"\[\?\]"):
            parse_checklist_line("- [?] unsure")

    def test_trailing_cr_ignored(self):
        item = parse_checklist_line("- [ ] windows line\r")
        assert item.text == "windows line"


class TestTaskLabels:
    """Tests for [human]/[manual]/[agent] labels."""

    def test_human_label_marks_human_only(self):
        assert parse_task_labels(" [human] Review copy") == ("Review copy", True)

    def test_manual_label_case_insensitive(self):
        assert parse_task_labels("[MANUAL] Deploy") == ("Deploy", True)

    def test_agent_label_stripped_only(self):
        assert parse_task_labels("[agent] Refactor") == ("Refactor", False)

    def test_repeated_labels(self):
        assert parse_task_labels("[agent] [human] Both") == ("Both", True)


class TestParsePlanText:
    """Tests for whole-document parsing."""

    def test_headers_and_tasks(self):
        """Plan-ID and Depends-On headers are read; tasks are numbered in order."""
        text = (
            "# Auth\n"
            "Plan-ID: AUTH\n"
            "Depends-On: DB, USERS\n"
            "\n"
            "- [x] Add table\n"
            "Some notes\n"
            "- [ ] Add login\n"
        )
        plan = parse_plan_text(text, Path("plans/auth.md"))

        assert plan.id == "AUTH"
        assert plan.depends_on == {"DB", "USERS"}
        assert [t.id for t in plan.tasks] == ["AUTH#1", "AUTH#2"]
        assert plan.tasks[0].checked is True
        assert plan.tasks[1].line_index == 6
        assert plan.tasks[1].index == 2
        assert plan.full_text == text

    def test_plan_id_derived_when_missing(self):
        plan = parse_plan_text("- [ ] one\n", Path("plans/data-pipeline.md"))
        assert plan.id == "DATA_PIPELINE"
        assert plan.tasks[0].id == "DATA_PIPELINE#1"

    def test_no_dependency_markers(self):
        """none / n/a / - mean no dependency."""
        text = "Depends-On: none\nDepends-On: N/A, -\n- [ ] x\n"
        plan = parse_plan_text(text, Path("p.md"))
        assert plan.depends_on == set()

    def test_repeated_depends_on_merged(self):
        text = "Depends-On: A\nDepends-On: B\n- [ ] x\n"
        assert parse_plan_text(text, Path("p.md")).depends_on == {"A", "B"}

    def test_header_after_checklist_rejected(self):
        """Headers after the first checklist line are a parse error with a line number."""
        text = "- [ ] first\nDepends-On: OTHER\n"
        with pytest.raises(PlanParseError) as exc_info:
            parse_plan_text(text, Path("plans/late.md"))
        assert exc_info.value.line == 2
        assert "late.md:2" in str(exc_info.value)

    def test_empty_plan_id_rejected(self):
        with pytest.raises(PlanParseError, match="Empty"):
            parse_plan_text("Plan-ID:\n- [ ] x\n", Path("p.md"))

    def test_conflicting_plan_ids_rejected(self):
        with pytest.raises(PlanParseError, match="Conflicting"):
            parse_plan_text("Plan-ID: A\nPlan-ID: B\n", Path("p.md"))

    def test_invalid_marker_reports_line(self):
        with pytest.raises(PlanParseError) as exc_info:
            parse_plan_text("Plan-ID: A\n\n- [-] maybe\n", Path("p.md"))
        assert exc_info.value.line == 3

    def test_human_only_task(self):
        plan = parse_plan_text("- [ ] [human] Sign off\n", Path("p.md"))
        assert plan.tasks[0].human_only is True
        assert plan.tasks[0].text == "Sign off"

    def test_crlf_line_indices(self):
        """CRLF files keep LF-based line indices."""
        plan = parse_plan_text("Plan-ID: W\r\n\r\n- [ ] a\r\n- [ ] b\r\n", Path("w.md"))
        assert [t.line_index for t in plan.tasks] == [2, 3]
        assert plan.tasks[1].text == "b"


class TestPlanStore:
    """Tests for plan discovery and loading."""

    def test_discovers_md_and_txt_sorted(self, workspace, write_plan):
        write_plan("b.txt", "- [ ] b\n")
        write_plan("a.md", "- [ ] a\n")
        (workspace / "plans" / "notes.json").write_text("{}")

        store = PlanStore(workspace / "plans")
        assert [p.name for p in store.discover()] == ["a.md", "b.txt"]

    def test_archive_scanned_recursively(self, workspace, write_plan):
        """Plans under plans/done/** stay loadable so dependencies resolve."""
        write_plan("old.md", "Plan-ID: OLD\n- [x] done\n", subdir="done/2024")
        write_plan("new.md", "Depends-On: OLD\n- [ ] next\n")

        store = PlanStore(workspace / "plans")
        plans = {p.id: p for p in store.load()}

        assert set(plans) == {"OLD", "NEW"}
        assert store.is_archived(plans["OLD"].path)
        assert not store.is_archived(plans["NEW"].path)

    def test_nested_non_archive_dirs_ignored(self, workspace, write_plan):
        write_plan("skip.md", "- [ ] x\n", subdir="drafts")
        assert PlanStore(workspace / "plans").discover() == []

    def test_duplicate_plan_id_rejected(self, write_plan, plan_store):
        write_plan("one.md", "Plan-ID: SAME\n- [ ] a\n")
        write_plan("two.md", "Plan-ID: SAME\n- [ ] b\n")

        with pytest.raises(PlanParseError, match="Duplicate Plan-ID 'SAME'"):
            plan_store.load()

    def test_missing_plans_dir_is_empty(self, tmp_path):
        assert PlanStore(tmp_path / "nope").load() == []

    def test_parse_plan_invalid_utf8(self, workspace):
        path = workspace / "plans" / "bad.md"
        path.write_bytes(b"- [ ] \xff\xfe\n")
        with pytest.raises(PlanParseError, match="UTF-8"):
            parse_plan(path)

    def test_load_graph(self, write_plan, plan_store):
        write_plan("a.md", "Plan-ID: A\n- [ ] a\n")
        graph = plan_store.load_graph()
        assert graph.task_count == 1
        assert graph.get_task("A#1").text == "a"
