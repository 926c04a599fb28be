"""Execution loop: the guardrail state machine driving one worker.

    SELECT -> CLAIM -> EXECUTE -> OBSERVE -> {COMPLETE | RETRY_NEXT | HALT}

Every SELECT reloads plans from disk and takes one snapshot of the active
claims, so edits by humans or other workers are picked up between steps.
Tasks that failed, were abandoned, lost a claim race or were left for manual
completion go into a run-scoped skip set and are not selected again in this
run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field
from rich.console import Console

from plantree.agent.supervisor import (
    ExecutionOutcome,
    OutcomeStatus,
    ProcessSpawnError,
    ProcessSupervisor,
)
from plantree.core.claims import ClaimConflict, ClaimStore, ClaimStoreError
from plantree.core.completion import CompletionError, CompletionMarker, archive_completed_plan
from plantree.core.config import RunSettings
from plantree.core.models import Plan, Task
from plantree.core.plans import PlanParseError, PlanStore, parse_plan
from plantree.core.selector import TaskSelector
from plantree.core.template import CommandTemplate

logger = logging.getLogger(__name__)

_console = Console(highlight=False, soft_wrap=True)


def _print(line: str) -> None:
    _console.print(line, markup=False)


class LoopState(str, Enum):
    SELECT = "select"
    CLAIM = "claim"
    EXECUTE = "execute"
    OBSERVE = "observe"
    COMPLETE = "complete"
    RETRY_NEXT = "retry_next"
    HALT = "halt"


class HaltReason(str, Enum):
    """Why the loop stopped."""

    NO_READY_WORK = "no_ready_work"
    MAX_STEPS = "max_steps"
    MAX_MINUTES = "max_minutes"
    CONSECUTIVE_FAILURES = "consecutive_failures"

    @property
    def is_guardrail(self) -> bool:
        return self != HaltReason.NO_READY_WORK


class GuardrailExhausted(Exception):
    """A configured run limit was reached. Expected stop, not a failure."""

    def __init__(self, reason: HaltReason, message: str):
        self.reason = reason
        super().__init__(message)


class RunSummary(BaseModel):
    """What one ``run`` did."""

    completed: list[str] = Field(default_factory=list)  # Marked [x] and claim resolved
    succeeded: list[str] = Field(default_factory=list)  # Exit 0, left for manual completion
    failed: list[str] = Field(default_factory=list)
    abandoned: list[str] = Field(default_factory=list)  # Idle restarts exhausted
    conflicts: list[str] = Field(default_factory=list)  # Lost the claim race
    steps: int = 0
    halt_reason: HaltReason | None = None
    halt_message: str | None = None
    diagnostics: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        """0 for drained work, 3 for a guardrail stop."""
        if self.halt_reason is not None and self.halt_reason.is_guardrail:
            return 3
        return 0


@dataclass
class ConsecutiveFailureBreaker:
    """Stops a run after N task failures in a row (0 disables)."""

    max_failures: int = 3
    failures: int = 0

    def record_failure(self) -> None:
        self.failures += 1

    def record_success(self) -> None:
        self.failures = 0

    def is_open(self) -> bool:
        return self.max_failures > 0 and self.failures >= self.max_failures


def template_values(task: Task, plan: Plan) -> dict[str, object]:
    """Values for every ``--exec`` placeholder."""
    pending = plan.pending_tasks
    return {
        "task_id": task.id,
        "task_text": task.text,
        "plan_id": plan.id,
        "plan_path": str(plan.path),
        "plan_text": plan.full_text,
        "pending_count": len(pending),
        "open_tasks": "\n".join(f"- [ ] {t.text}" for t in pending),
    }


class ExecutionLoop:
    """Select, claim, execute and observe tasks until a halt condition."""

    # Heartbeat renewals run between output lines; never block on the ledger long
    HEARTBEAT_LOCK_TIMEOUT_SECONDS = 1.0

    def __init__(
        self,
        plan_store: PlanStore,
        claim_store: ClaimStore,
        supervisor: ProcessSupervisor,
        template: CommandTemplate,
        settings: RunSettings,
        lease_seconds: int | None = None,
        marker: CompletionMarker | None = None,
        archive_dir: Path | None = None,
        emit: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            archive_dir: When set, plans that become fully checked after an
                auto-completion are moved here.
        """
        self.plan_store = plan_store
        self.claims = claim_store
        self.supervisor = supervisor
        self.template = template
        self.settings = settings
        self.owner = settings.owner
        self.lease_seconds = lease_seconds or claim_store.default_lease_seconds
        self.marker = marker or CompletionMarker()
        self.archive_dir = archive_dir
        self.emit = emit or _print
        self._clock = clock
        self._sleep = sleep

        self.breaker = ConsecutiveFailureBreaker(settings.max_consecutive_failures)
        self._skipped: set[str] = set()
        self._held: Task | None = None
        self._started = 0.0

    # --- Guardrails ---

    def _check_guardrails(self, summary: RunSummary) -> None:
        """Raise GuardrailExhausted when a run limit has been reached."""
        if summary.steps >= self.settings.max_steps:
            raise GuardrailExhausted(
                HaltReason.MAX_STEPS, f"reached max steps ({self.settings.max_steps})"
            )
        elapsed = self._clock() - self._started
        if elapsed >= self.settings.max_minutes * 60:
            raise GuardrailExhausted(
                HaltReason.MAX_MINUTES,
                f"reached max runtime ({self.settings.max_minutes:g} minutes)",
            )
        if self.breaker.is_open():
            raise GuardrailExhausted(
                HaltReason.CONSECUTIVE_FAILURES,
                f"circuit breaker: {self.breaker.failures} consecutive failures",
            )

    # --- States ---

    def _select(self, summary: RunSummary) -> tuple[Task, Plan] | None:
        graph = self.plan_store.load_graph()
        graph.validate()
        selector = TaskSelector(graph, self.claims.active_claims())
        for task in selector.ready_tasks():
            if task.id not in self._skipped:
                return task, graph.plans_by_id[task.plan_id]

        diagnostics = selector.diagnostics(self.owner)
        summary.diagnostics = diagnostics.summary()
        return None

    def _claim(self, task: Task, summary: RunSummary) -> bool:
        try:
            result = self.claims.claim(task.id, self.owner, lease_seconds=self.lease_seconds)
        except ClaimConflict as e:
            logger.info(f"Claim conflict on {task.id}: {e}")
            self.emit(f"Skipping {task.id}: claimed by {e.current_owner}")
            self._skipped.add(task.id)
            summary.conflicts.append(task.id)
            return False
        self._held = task
        summary.steps += 1
        if result.reclaimed is not None:
            self.emit(
                f"Reclaimed {task.id} from {result.reclaimed.previous_owner} (lease expired)"
            )
        self.emit(f"Step {summary.steps}: claimed task {task.id} ({task.text})")
        return True

    def _renew(self, task: Task, lock_timeout: float | None = None) -> bool:
        try:
            self.claims.renew(task.id, self.owner, lock_timeout=lock_timeout)
        except ClaimStoreError as e:
            logger.warning(f"Lease renewal for {task.id} failed: {e}")
            return False
        return True

    def _execute(self, task: Task, plan: Plan) -> ExecutionOutcome:
        command = self.template.render(template_values(task, plan))
        self.emit(f"Executing: {command.display()}")
        self.emit("==============================")
        self.emit(f"Task Output: {task.id}")
        self.emit("==============================")

        last_renewal = self._clock()

        def on_restart(restart: int) -> None:
            nonlocal last_renewal
            self._renew(task)
            last_renewal = self._clock()

        def on_heartbeat(elapsed: float) -> None:
            nonlocal last_renewal
            # Runs inside the supervision loop; a busy ledger is retried next beat
            if self._clock() - last_renewal >= self.lease_seconds / 2:
                if self._renew(task, lock_timeout=self.HEARTBEAT_LOCK_TIMEOUT_SECONDS):
                    last_renewal = self._clock()

        try:
            outcome = self.supervisor.run(command, on_restart=on_restart, on_heartbeat=on_heartbeat)
        except ProcessSpawnError as e:
            logger.error(str(e))
            outcome = ExecutionOutcome(status=OutcomeStatus.FAILURE, detail=str(e))
        self.emit("==============================")
        code = "n/a" if outcome.exit_code is None else str(outcome.exit_code)
        self.emit(f"Command exit code: {code} ({outcome.status.value})")
        return outcome

    def _release(self, task: Task) -> None:
        try:
            self.claims.release(task.id, self.owner)
        except ClaimStoreError as e:
            logger.warning(f"Could not release claim on {task.id}: {e}")
        self._held = None

    def _complete(self, task: Task, summary: RunSummary) -> bool:
        """Resolve a successful task. Returns False if completion failed."""
        if not self.settings.auto_complete_on_success:
            self._held = None
            self._skipped.add(task.id)
            summary.succeeded.append(task.id)
            self.emit(f"Execution finished for {task.id}; claim kept for manual completion")
            return True

        def mark_fresh() -> None:
            current = parse_plan(task.plan_path)
            fresh = next((t for t in current.tasks if t.id == task.id), None)
            if fresh is None or fresh.text != task.text:
                raise CompletionError(f"Task {task.id} changed in {task.plan_path} during the run")
            if fresh.checked:
                logger.info(f"{task.id} was already checked by the agent")
            else:
                self.marker.mark(fresh)

        try:
            self.claims.complete(task.id, self.owner, on_resolve=mark_fresh)
        except ClaimConflict as e:
            # Lease expired mid-run and was taken over; the plan file is untouched
            self._held = None
            logger.error(f"Completing {task.id} failed: {e}")
            self.emit(f"Could not complete {task.id}: lost claim to {e.current_owner}")
            return False
        except (CompletionError, PlanParseError, ClaimStoreError) as e:
            logger.error(f"Completing {task.id} failed: {e}")
            self.emit(f"Could not complete {task.id}: {e}")
            return False

        self._held = None
        self._skipped.add(task.id)
        summary.completed.append(task.id)
        self.emit(f"Completed {task.id}")

        if self.archive_dir is not None:
            archived = archive_completed_plan(task.plan_path, self.archive_dir)
            if archived is not None:
                self.emit(f"Archived completed plan {task.plan_id} to {archived}")
        return True

    def _retry_next(self, task: Task, outcome: ExecutionOutcome | None, summary: RunSummary) -> None:
        if self._held is not None:
            self._release(task)
        self._skipped.add(task.id)
        self.breaker.record_failure()
        if outcome is not None and outcome.status == OutcomeStatus.ABORTED:
            summary.abandoned.append(task.id)
            self.emit(f"Abandoned {task.id} for this run: {outcome.detail}")
        else:
            summary.failed.append(task.id)
            self.emit(f"Task {task.id} failed (consecutive failures: {self.breaker.failures})")

    # --- Driver ---

    def run(self) -> RunSummary:
        """Drive the state machine until HALT.

        Returns:
            RunSummary with halt reason and per-task outcomes.

        Raises:
            PlanParseError, GraphError: If plans become invalid mid-run.
        """
        self._started = self._clock()
        summary = RunSummary()
        state = LoopState.SELECT
        selected: tuple[Task, Plan] | None = None
        outcome: ExecutionOutcome | None = None

        try:
            while state != LoopState.HALT:
                logger.debug(f"Loop state: {state.value}")
                if state == LoopState.SELECT:
                    try:
                        self._check_guardrails(summary)
                    except GuardrailExhausted as e:
                        summary.halt_reason = e.reason
                        summary.halt_message = str(e)
                        self.emit(f"Stopping: {e}")
                        state = LoopState.HALT
                        continue

                    selected = self._select(summary)
                    if selected is not None:
                        state = LoopState.CLAIM
                    elif self.settings.watch:
                        self.emit(f"No ready tasks. Sleeping {self.settings.sleep_seconds:g}s...")
                        self._sleep(self.settings.sleep_seconds)
                    else:
                        summary.halt_reason = HaltReason.NO_READY_WORK
                        summary.halt_message = "no ready tasks"
                        self.emit("No ready tasks. Exiting.")
                        if summary.diagnostics:
                            self.emit(summary.diagnostics)
                        state = LoopState.HALT

                elif state == LoopState.CLAIM:
                    task, _ = selected
                    state = LoopState.EXECUTE if self._claim(task, summary) else LoopState.SELECT

                elif state == LoopState.EXECUTE:
                    task, plan = selected
                    outcome = self._execute(task, plan)
                    state = LoopState.OBSERVE

                elif state == LoopState.OBSERVE:
                    state = LoopState.COMPLETE if outcome.succeeded else LoopState.RETRY_NEXT

                elif state == LoopState.COMPLETE:
                    task, _ = selected
                    if self._complete(task, summary):
                        self.breaker.record_success()
                        state = LoopState.SELECT
                    else:
                        outcome = None
                        state = LoopState.RETRY_NEXT

                elif state == LoopState.RETRY_NEXT:
                    task, _ = selected
                    self._retry_next(task, outcome, summary)
                    state = LoopState.SELECT
        except BaseException:
            if self._held is not None:
                logger.info(f"Releasing {self._held.id} after interruption")
                self._release(self._held)
            raise
        finally:
            summary.elapsed_seconds = self._clock() - self._started

        return summary
