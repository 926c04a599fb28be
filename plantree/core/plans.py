"""Plan document discovery and parsing.

Plan files are plain text / markdown documents:

    Plan-ID: AUTH_PLAN
    Depends-On: USER_MODEL_PLAN, DB_PLAN

    - [x] Add user table
    - [ ] Add login endpoint
    - [ ] [human] Review token lifetime with security

Headers must appear before the first checklist line. Task IDs are
``{plan_id}#{n}`` where n is the 1-based index among checklist lines.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from plantree.core.graph import DependencyGraph
from plantree.core.models import Plan, Task

logger = logging.getLogger(__name__)

PLAN_ID_HEADER = "Plan-ID:"
DEPENDS_ON_HEADER = "Depends-On:"

# Depends-On values that mean "no dependency"
NO_DEPENDENCY_MARKERS = frozenset({"none", "null", "n/a", "-"})

HUMAN_LABELS = ("[human]", "[manual]")
AGENT_LABEL = "[agent]"

# "- [m] text" where m is any single character; m decides validity
_CHECKLIST_RE = re.compile(r"^(?P<indent>\s*)- \[(?P<mark>.)\](?P<rest>(?:\s.*)?)$")


class PlanParseError(Exception):
    """Malformed plan header or checklist line."""

    def __init__(self, message: str, path: Path | None = None, line: int | None = None):
        self.path = path
        self.line = line
        location = ""
        if path is not None:
            location = f"{path}:{line}: " if line is not None else f"{path}: "
        super().__init__(f"{location}{message}")


@dataclass
class ChecklistLine:
    """Parsed checklist line."""

    indent: str
    checked: bool
    text: str
    human_only: bool


def split_lines(text: str) -> list[str]:
    """Split on LF only, keeping any CR so line indices match byte layout."""
    return text.split("\n")


def derive_plan_id(path: Path) -> str:
    """Derive a Plan ID from a filename.

    Strips the extension, uppercases, and collapses each run of
    non-alphanumeric characters into a single underscore:
    ``my-plan v2.md`` -> ``MY_PLAN_V2``.
    """
    stem = path.stem or "UNNAMED_PLAN"
    return re.sub(r"[^A-Za-z0-9]+", "_", stem).upper()


def _strip_label(text: str, label: str) -> str | None:
    if text[: len(label)].lower() == label:
        return text[len(label) :].lstrip()
    return None


def parse_task_labels(raw: str) -> tuple[str, bool]:
    """Strip leading [human]/[manual]/[agent] labels.

    Returns (text, human_only).
    """
    text = raw.strip()
    human_only = False
    while True:
        for label in HUMAN_LABELS:
            rest = _strip_label(text, label)
            if rest is not None:
                human_only = True
                text = rest
                break
        else:
            rest = _strip_label(text, AGENT_LABEL)
            if rest is None:
                break
            text = rest
    return text.strip(), human_only


def parse_checklist_line(line: str) -> ChecklistLine | None:
    """Parse one line as a checklist item.

    Returns None when the line is not shaped like a checklist item.

    Raises:
        ValueError: If the line is checklist-shaped but the marker is not
            one of ' ', 'x', 'X'.
    """
    match = _CHECKLIST_RE.match(line.rstrip("\r"))
    if not match:
        return None
    mark = match.group("mark")
    if mark == " ":
        checked = False
    elif mark in ("x", "X"):
        checked = True
    else:
        raise ValueError(f"Invalid checklist marker '[{mark}]' (expected '[ ]' or '[x]')")
    text, human_only = parse_task_labels(match.group("rest"))
    return ChecklistLine(
        indent=match.group("indent"),
        checked=checked,
        text=text,
        human_only=human_only,
    )


def _parse_depends_on(value: str) -> set[str]:
    deps = set()
    for raw in value.split(","):
        dep = raw.strip()
        if dep and dep.lower() not in NO_DEPENDENCY_MARKERS:
            deps.add(dep)
    return deps


def parse_plan_text(text: str, path: Path) -> Plan:
    """Parse plan document text into a Plan.

    Raises:
        PlanParseError: On a malformed header or checklist line.
    """
    plan_id: str | None = None
    depends_on: set[str] = set()
    parsed: list[tuple[int, ChecklistLine]] = []

    for idx, raw_line in enumerate(split_lines(text)):
        line_no = idx + 1
        stripped = raw_line.strip()

        if stripped.startswith(PLAN_ID_HEADER) or stripped.startswith(DEPENDS_ON_HEADER):
            if parsed:
                header = stripped.split(":", 1)[0]
                raise PlanParseError(
                    f"'{header}:' header must appear before the first checklist line",
                    path,
                    line_no,
                )
            if stripped.startswith(PLAN_ID_HEADER):
                value = stripped[len(PLAN_ID_HEADER) :].strip()
                if not value:
                    raise PlanParseError("Empty 'Plan-ID:' header", path, line_no)
                if plan_id is not None and value != plan_id:
                    raise PlanParseError(
                        f"Conflicting 'Plan-ID:' headers ({plan_id} vs {value})",
                        path,
                        line_no,
                    )
                plan_id = value
            else:
                depends_on |= _parse_depends_on(stripped[len(DEPENDS_ON_HEADER) :])
            continue

        try:
            item = parse_checklist_line(raw_line)
        except ValueError as e:
            raise PlanParseError(str(e), path, line_no) from e
        if item is not None:
            parsed.append((idx, item))

    resolved_id = plan_id or derive_plan_id(path)

    tasks = [
        Task(
            id=f"{resolved_id}#{n}",
            plan_id=resolved_id,
            plan_path=path,
            text=item.text,
            checked=item.checked,
            line_index=idx,
            human_only=item.human_only,
        )
        for n, (idx, item) in enumerate(parsed, start=1)
    ]

    return Plan(
        id=resolved_id,
        path=path,
        depends_on=depends_on,
        full_text=text,
        tasks=tasks,
    )


def read_plan_text(path: Path) -> str:
    """Read a plan file without newline translation."""
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def parse_plan(path: Path) -> Plan:
    """Read and parse a plan file."""
    try:
        text = read_plan_text(path)
    except OSError as e:
        raise PlanParseError(f"Failed reading plan file: {e}", path) from e
    except UnicodeDecodeError as e:
        raise PlanParseError(f"Plan file is not valid UTF-8: {e}", path) from e
    return parse_plan_text(text, path)


class PlanStore:
    """Discovers and loads plan documents.

    Active plans live at the top level of ``plans_dir``; finished plans may be
    archived anywhere below ``archive_dir``. Archived plans are loaded too so
    dependencies on finished work still resolve.
    """

    PLAN_SUFFIXES = (".md", ".txt")

    def __init__(self, plans_dir: Path, archive_dir: Path | None = None):
        self.plans_dir = Path(plans_dir)
        self.archive_dir = Path(archive_dir) if archive_dir else self.plans_dir / "done"

    def _is_plan_file(self, path: Path) -> bool:
        return path.is_file() and path.suffix.lower() in self.PLAN_SUFFIXES

    def discover(self) -> list[Path]:
        """Return sorted plan file paths (top-level + archived)."""
        paths: set[Path] = set()
        if self.plans_dir.is_dir():
            paths.update(p for p in self.plans_dir.iterdir() if self._is_plan_file(p))
        if self.archive_dir.is_dir():
            paths.update(p for p in self.archive_dir.rglob("*") if self._is_plan_file(p))
        return sorted(paths)

    def is_archived(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.archive_dir.resolve())
        except ValueError:
            return False
        return True

    def load(self) -> list[Plan]:
        """Parse every discovered plan file.

        Raises:
            PlanParseError: On any malformed file or duplicate Plan ID.
        """
        plans: list[Plan] = []
        seen: dict[str, Path] = {}
        for path in self.discover():
            plan = parse_plan(path)
            if plan.id in seen:
                raise PlanParseError(
                    f"Duplicate Plan-ID '{plan.id}' (also declared in {seen[plan.id]})",
                    path,
                )
            seen[plan.id] = path
            plans.append(plan)
        logger.debug(f"Loaded {len(plans)} plans from {self.plans_dir}")
        return plans

    def load_graph(self) -> DependencyGraph:
        """Load all plans and build the dependency graph (not yet validated)."""
        return DependencyGraph(self.load())
