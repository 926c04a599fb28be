"""Rich tables for task status, validation problems and run summaries.

All user-controlled strings (task text, owners, paths) are escaped to prevent
Rich markup injection.
"""

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from plantree.core.graph import GraphError
from plantree.core.loop import RunSummary
from plantree.core.models import Claim
from plantree.core.selector import TaskState, TaskStatus


class StatusTableRenderer:
    """Renders task statuses as a Rich table."""

    STATE_STYLES = {
        TaskState.DONE: "green",
        TaskState.READY: "yellow",
        TaskState.CLAIMED: "blue",
        TaskState.BLOCKED: "dim",
        TaskState.HUMAN: "magenta",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render(self, statuses: list[TaskStatus], title: str = "Tasks") -> Table:
        table = Table(title=title)
        table.add_column("Task", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Text")
        table.add_column("Blocked by", style="dim")

        for status in statuses:
            style = self.STATE_STYLES.get(status.state, "")
            table.add_row(
                escape(status.task.id),
                f"[{style}]{escape(status.label)}[/]" if style else escape(status.label),
                escape(status.task.text),
                escape(", ".join(status.blocked_by)),
            )
        return table

    def render_orphans(self, orphans: list[Claim]) -> None:
        for claim in orphans:
            self.console.print(
                f"[yellow]Warning:[/yellow] orphaned claim on unknown task "
                f"{escape(claim.task_id)} (owner {escape(claim.owner)})"
            )


class ValidationRenderer:
    """Prints graph problems, one per line."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_problems(self, problems: list[GraphError]) -> None:
        for problem in problems:
            self.console.print(f"[red]Error:[/red] {escape(str(problem))}")


class RunSummaryRenderer:
    """Renders the end-of-run summary."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render(self, summary: RunSummary) -> Table:
        reason = summary.halt_reason.value if summary.halt_reason else "interrupted"
        table = Table(title=f"Run summary ({escape(reason)})")
        table.add_column("Outcome", style="bold")
        table.add_column("Count", justify="right")
        table.add_column("Tasks")

        rows = [
            ("[green]completed[/]", summary.completed),
            ("[cyan]succeeded[/]", summary.succeeded),
            ("[red]failed[/]", summary.failed),
            ("[yellow]abandoned[/]", summary.abandoned),
            ("[dim]conflicts[/]", summary.conflicts),
        ]
        for label, task_ids in rows:
            table.add_row(label, str(len(task_ids)), escape(", ".join(task_ids)))

        table.caption = f"{summary.steps} step(s) in {summary.elapsed_seconds:.0f}s"
        return table
