"""In-place checklist completion and plan archiving.

CompletionMarker flips exactly one ``- [ ]`` to ``- [x]``. The plan file is
re-read fresh, the target line is verified against the task before writing,
and every other byte of the file is preserved (including CRLF line endings).
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from plantree.core.models import Task
from plantree.core.plans import (
    PlanParseError,
    parse_checklist_line,
    parse_plan,
    read_plan_text,
    split_lines,
)

logger = logging.getLogger(__name__)

UNCHECKED_MARKER = "- [ ]"
CHECKED_MARKER = "- [x]"


class CompletionError(Exception):
    """Target line no longer matches the expected unchecked checklist item."""

    pass


def _atomic_write_text(path: Path, text: str) -> None:
    """Atomic write via temp file + replace, keeping the file mode."""
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        shutil.copymode(path, temp_path)
        os.replace(temp_path, str(path))
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class CompletionMarker:
    """Marks tasks done by rewriting their single checklist line."""

    def mark(self, task: Task, note: str | None = None) -> Path:
        """Flip the task's checklist marker from [ ] to [x].

        Args:
            task: Task loaded from the plan (line_index and text are verified).
            note: Optional note appended to the same line as ``(note: ...)``.

        Returns:
            Path of the rewritten plan file.

        Raises:
            CompletionError: If the line is missing, already checked, or no
                longer holds this task's text.
        """
        path = Path(task.plan_path)
        try:
            text = read_plan_text(path)
        except OSError as e:
            raise CompletionError(f"Failed to read {path}: {e}") from e

        lines = split_lines(text)
        if task.line_index >= len(lines):
            raise CompletionError(
                f"Task {task.id} references missing line {task.line_index + 1} in {path}"
            )

        line = lines[task.line_index]
        cr = "\r" if line.endswith("\r") else ""
        body = line[:-1] if cr else line

        try:
            item = parse_checklist_line(body)
        except ValueError:
            item = None
        if item is None or item.checked:
            raise CompletionError(
                f"Task {task.id} does not point to an unchecked checklist item "
                f"at {path}:{task.line_index + 1}"
            )
        if item.text != task.text:
            raise CompletionError(
                f"Task {task.id} line changed since it was loaded "
                f"(expected '{task.text}', found '{item.text}') at {path}:{task.line_index + 1}"
            )

        marker_at = len(item.indent)
        updated = body[:marker_at] + CHECKED_MARKER + body[marker_at + len(UNCHECKED_MARKER) :]
        if note and note.strip():
            one_line = " ".join(note.split())
            updated = f"{updated.rstrip()} (note: {one_line})"
        lines[task.line_index] = updated + cr

        _atomic_write_text(path, "\n".join(lines))
        logger.info(f"Marked {task.id} complete in {path}")
        return path


def _unique_destination(archive_dir: Path, plan_path: Path) -> Path:
    candidate = archive_dir / plan_path.name
    suffix = 1
    while candidate.exists():
        candidate = archive_dir / f"{plan_path.stem}_{suffix}{plan_path.suffix}"
        suffix += 1
    return candidate


def archive_completed_plan(plan_path: Path, archive_dir: Path) -> Path | None:
    """Move a fully completed plan into the archive directory.

    Returns:
        The archived path, or None when the plan is open, empty, already
        archived, or gone.
    """
    plan_path = Path(plan_path)
    archive_dir = Path(archive_dir)
    if not plan_path.exists():
        return None
    try:
        plan_path.resolve().relative_to(archive_dir.resolve())
        return None
    except ValueError:
        pass

    try:
        plan = parse_plan(plan_path)
    except PlanParseError as e:
        logger.warning(f"Not archiving {plan_path}: {e}")
        return None
    if not plan.tasks or not plan.is_complete:
        return None

    archive_dir.mkdir(parents=True, exist_ok=True)
    destination = _unique_destination(archive_dir, plan_path)
    shutil.move(str(plan_path), str(destination))
    logger.info(f"Archived completed plan {plan.id} to {destination}")
    return destination
