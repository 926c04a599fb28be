"""CLI entry point for plantree.

Commands:
- plan init: Create .plantree/config.yaml and plans/
- plan validate: Check plan files and the dependency graph
- plan list: Show task statuses (--ready for the ready set)
- plan claim / release / complete: Manual lease and checklist operations
- plan run: Drive the supervised execution loop
- plan version: Show version information
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from plantree import __version__
from plantree.agent.process import registry
from plantree.agent.supervisor import ProcessSupervisor
from plantree.cli_ui.renderer import RunSummaryRenderer, StatusTableRenderer, ValidationRenderer
from plantree.core.claims import ClaimStore, ClaimStoreError
from plantree.core.completion import CompletionError, CompletionMarker, archive_completed_plan
from plantree.core.config import (
    CONFIG_FILENAME,
    DEFAULT_CONFIG_YAML,
    ConfigError,
    PlanTreeConfig,
    discover_root,
    load_config,
    state_dir,
)
from plantree.core.graph import DependencyGraph, GraphError, UnknownTaskError
from plantree.core.loop import ExecutionLoop
from plantree.core.plans import PlanParseError, PlanStore
from plantree.core.selector import TaskSelector, TaskState
from plantree.core.template import CommandTemplate, TemplateError

console = Console(soft_wrap=True)
err_console = Console(stderr=True)

EXIT_INTERRUPTED = 130


@dataclass
class CliContext:
    root: Path
    verbose: bool = False


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )


def _fail(message: str, code: int = 1) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(code)


def _emit(line: str) -> None:
    console.print(line, markup=False, highlight=False, soft_wrap=True)


def _emit_error(line: str) -> None:
    err_console.print(line, markup=False, highlight=False, soft_wrap=True)


def _load_config(ctx: CliContext) -> PlanTreeConfig:
    try:
        return load_config(ctx.root)
    except ConfigError as e:
        _fail(str(e))


def _plan_store(config: PlanTreeConfig) -> PlanStore:
    return PlanStore(config.plans_dir, config.archive_dir)


def _claim_store(ctx: CliContext, config: PlanTreeConfig) -> ClaimStore:
    return ClaimStore(
        state_dir(ctx.root),
        default_lease_seconds=config.lease_seconds,
        lock_timeout=config.lock_timeout_seconds,
    )


def _load_graph(config: PlanTreeConfig) -> DependencyGraph:
    """Load and validate the plan graph, exiting 1 on any problem."""
    try:
        graph = _plan_store(config).load_graph()
        graph.validate()
    except (PlanParseError, GraphError) as e:
        _fail(str(e))
    return graph


def _active_claims(claims: ClaimStore) -> dict:
    try:
        return claims.active_claims()
    except ClaimStoreError as e:
        _fail(str(e))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace root (default: nearest directory with .plantree/ or plans/)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, root: Path | None, verbose: bool) -> None:
    """plantree - plan-driven task orchestrator.

    Turns checklist plans into a dependency graph of tasks, leases tasks to
    workers, and supervises an agent process per task.
    """
    _configure_logging(verbose)
    ctx.obj = CliContext(root=(root or discover_root()).resolve(), verbose=verbose)


@main.command()
@click.pass_obj
def init(ctx: CliContext) -> None:
    """Initialize a plantree workspace."""
    config_dir = state_dir(ctx.root)
    config_path = config_dir / CONFIG_FILENAME
    plans_dir = ctx.root / "plans"

    if config_path.exists():
        console.print("[yellow]Workspace already initialized[/yellow]")
    else:
        config_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(DEFAULT_CONFIG_YAML)
        console.print(f"[green]Created[/green] {escape(str(config_path))}")

    if not plans_dir.exists():
        plans_dir.mkdir(parents=True)
        console.print(f"[green]Created[/green] {escape(str(plans_dir))}")


@main.command()
@click.pass_obj
def validate(ctx: CliContext) -> None:
    """Validate plan files and the dependency graph."""
    config = _load_config(ctx)
    try:
        graph = _plan_store(config).load_graph()
    except PlanParseError as e:
        _fail(str(e))

    problems = graph.problems()
    if problems:
        ValidationRenderer(console).render_problems(problems)
        sys.exit(1)

    claims = _claim_store(ctx, config)
    selector = TaskSelector(graph, _active_claims(claims))
    StatusTableRenderer(console).render_orphans(selector.orphaned_claims())

    console.print(
        f"[green]OK:[/green] {len(graph.plans)} plans, {graph.task_count} tasks, "
        "dependency graph valid"
    )


@main.command("list")
@click.option("--ready", "ready_only", is_flag=True, help="Only show ready tasks")
@click.pass_obj
def list_tasks(ctx: CliContext, ready_only: bool) -> None:
    """List tasks with their status."""
    config = _load_config(ctx)
    graph = _load_graph(config)
    claims = _claim_store(ctx, config)
    selector = TaskSelector(graph, _active_claims(claims))

    statuses = selector.statuses()
    if ready_only:
        statuses = [s for s in statuses if s.state == TaskState.READY]

    renderer = StatusTableRenderer(console)
    if statuses:
        console.print(renderer.render(statuses, title="Ready tasks" if ready_only else "Tasks"))
    else:
        console.print("No ready tasks." if ready_only else "No tasks found.")
    renderer.render_orphans(selector.orphaned_claims())


@main.command()
@click.argument("task_id")
@click.option("--owner", required=True, help="Claim owner identifier")
@click.option("--lease-seconds", type=click.IntRange(min=1), default=None, help="Lease length")
@click.option("--note", default=None, help="Note stored with the claim")
@click.pass_obj
def claim(
    ctx: CliContext, task_id: str, owner: str, lease_seconds: int | None, note: str | None
) -> None:
    """Claim TASK_ID for OWNER."""
    config = _load_config(ctx)
    graph = _load_graph(config)
    claims = _claim_store(ctx, config)

    try:
        task = graph.get_task(task_id)
    except UnknownTaskError as e:
        _fail(str(e))

    status = TaskSelector(graph, _active_claims(claims)).status_of(task)
    if status.state == TaskState.DONE:
        _fail(f"Task {task_id} is already complete")
    if status.state == TaskState.HUMAN:
        _fail(f"Task {task_id} is human-only")
    if status.state == TaskState.BLOCKED:
        _fail(f"Task {task_id} is blocked by {', '.join(status.blocked_by)}")

    try:
        result = claims.claim(task_id, owner, lease_seconds=lease_seconds, note=note)
    except ClaimStoreError as e:
        _fail(str(e))

    verb = "Renewed" if result.renewed else "Claimed"
    expires = result.claim.expires_at.isoformat(timespec="seconds")
    console.print(
        f"[green]{verb}[/green] {escape(task_id)} for {escape(owner)} (expires {expires})"
    )
    if result.reclaimed is not None:
        console.print(
            f"[yellow]Reclaimed expired lease from {escape(result.reclaimed.previous_owner)}[/yellow]"
        )


@main.command()
@click.argument("task_id")
@click.option("--owner", default=None, help="Owner releasing the claim")
@click.option("--force", is_flag=True, help="Release even if another owner holds it")
@click.pass_obj
def release(ctx: CliContext, task_id: str, owner: str | None, force: bool) -> None:
    """Release the claim on TASK_ID."""
    config = _load_config(ctx)
    claims = _claim_store(ctx, config)
    try:
        released = claims.release(task_id, owner, force=force)
    except ClaimStoreError as e:
        _fail(str(e))

    if released:
        console.print(f"[green]Released[/green] {escape(task_id)}")
    else:
        console.print(f"[yellow]No active claim on {escape(task_id)}[/yellow]")


@main.command()
@click.argument("task_id")
@click.option("--owner", default=None, help="Owner completing the task")
@click.option("--note", default=None, help="Note appended to the checklist line")
@click.option("--force", is_flag=True, help="Complete even if another owner holds the claim")
@click.pass_obj
def complete(
    ctx: CliContext, task_id: str, owner: str | None, note: str | None, force: bool
) -> None:
    """Mark TASK_ID done and resolve its claim."""
    config = _load_config(ctx)
    graph = _load_graph(config)
    claims = _claim_store(ctx, config)

    try:
        task = graph.get_task(task_id)
    except UnknownTaskError as e:
        _fail(str(e))
    if task.checked:
        _fail(f"Task {task_id} is already complete")

    # The plan file is only rewritten once ownership is confirmed under the lock
    marked: list[Path] = []
    try:
        claims.complete(
            task_id,
            owner,
            note=note,
            force=force,
            on_resolve=lambda: marked.append(CompletionMarker().mark(task, note=note)),
        )
    except (CompletionError, ClaimStoreError) as e:
        _fail(str(e))
    path = marked[0]

    console.print(f"[green]Completed[/green] {escape(task_id)} in {escape(str(path))}")

    if config.archive_completed_plans:
        archived = archive_completed_plan(path, config.archive_dir)
        if archived is not None:
            console.print(f"Archived plan {escape(task.plan_id)} to {escape(str(archived))}")


@main.command()
@click.option("--owner", default=None, help="Claim owner for this worker")
@click.option("--watch/--no-watch", default=None, help="Keep polling when no work is ready")
@click.option("--max-steps", type=click.IntRange(min=0), default=None)
@click.option("--max-minutes", type=click.FloatRange(min=0), default=None)
@click.option("--sleep-seconds", type=click.FloatRange(min=0), default=None)
@click.option("--idle-timeout-seconds", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option("--max-idle-restarts", type=click.IntRange(min=0), default=None)
@click.option("--exec", "exec_template", default=None, help="Agent command template")
@click.option(
    "--auto-complete-on-success/--no-auto-complete",
    "auto_complete_on_success",
    default=None,
    help="Mark the task done when the agent exits 0",
)
@click.pass_obj
def run(
    ctx: CliContext,
    owner: str | None,
    watch: bool | None,
    max_steps: int | None,
    max_minutes: float | None,
    sleep_seconds: float | None,
    idle_timeout_seconds: float | None,
    max_idle_restarts: int | None,
    exec_template: str | None,
    auto_complete_on_success: bool | None,
) -> None:
    """Run the supervised execution loop.

    Exit codes: 0 no ready work, 3 guardrail stop, 130 interrupted, 1 error.

    Example:
        plan run --owner agent:1 --max-steps 5 --exec "my-agent --task {task_id}"
    """
    config = _load_config(ctx)
    overrides = {
        key: value
        for key, value in {
            "owner": owner,
            "watch": watch,
            "max_steps": max_steps,
            "max_minutes": max_minutes,
            "sleep_seconds": sleep_seconds,
            "idle_timeout_seconds": idle_timeout_seconds,
            "max_idle_restarts": max_idle_restarts,
            "exec_template": exec_template,
            "auto_complete_on_success": auto_complete_on_success,
        }.items()
        if value is not None
    }
    settings = config.run.model_copy(update=overrides)

    try:
        template = CommandTemplate.parse(settings.exec_template, resume=settings.resume_exec)
    except TemplateError as e:
        _fail(f"Invalid --exec template: {e}")

    # Startup validation: graph problems are fatal before anything is claimed
    _load_graph(config)

    supervisor = ProcessSupervisor(
        idle_timeout_seconds=settings.idle_timeout_seconds,
        max_idle_restarts=settings.max_idle_restarts,
        continue_flag=settings.continue_flag,
        resume_prompt=settings.render_resume_prompt(),
        heartbeat_seconds=settings.heartbeat_seconds,
        emit=_emit,
        emit_error=_emit_error,
        cwd=ctx.root,
    )
    loop = ExecutionLoop(
        plan_store=_plan_store(config),
        claim_store=_claim_store(ctx, config),
        supervisor=supervisor,
        template=template,
        settings=settings,
        lease_seconds=config.lease_seconds,
        archive_dir=config.archive_dir if config.archive_completed_plans else None,
        emit=_emit,
    )

    registry.install_signal_handlers()
    try:
        summary = loop.run()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; agent process tree terminated[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except (PlanParseError, GraphError, ClaimStoreError) as e:
        _fail(str(e))

    console.print(RunSummaryRenderer(console).render(summary))
    sys.exit(summary.exit_code)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"plantree v{__version__}")
    console.print("Plan-driven task orchestrator")


if __name__ == "__main__":
    main()
