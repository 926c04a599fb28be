"""Supervised execution of one agent command.

The supervisor owns the child's lifecycle for a single execution slot:

- Two reader threads (stdout, stderr) feed one bounded queue. The main loop
  blocks on that queue with a timeout, so "new output arrived" and "idle
  timer fired" are two producers merged into a single event channel; a slow
  or silent child never blocks the idle clock.
- Output is rendered line by line (StreamRenderer) as it arrives.
- When the child goes quiet for longer than ``idle_timeout_seconds`` its
  process tree is killed and the agent is respawned with a continuation flag
  and a short resume prompt. The resume command is built from the template
  tokens that carry no placeholders, so the full plan prompt is never resent.
- Restarts are bounded; past the bound the outcome is ABORTED.
- Any BaseException (KeyboardInterrupt, SystemExit from SIGTERM) kills the
  active tree before propagating.
"""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

from pydantic import BaseModel
from rich.console import Console

from plantree.agent.process import ChildRegistry, registry, spawn, terminate_process_tree
from plantree.agent.stream import StreamRenderer
from plantree.core.config import DEFAULT_RESUME_PROMPT
from plantree.core.template import RenderedCommand

logger = logging.getLogger(__name__)

_stdout_console = Console(highlight=False, soft_wrap=True)
_stderr_console = Console(stderr=True, highlight=False, soft_wrap=True)


def _print_out(line: str) -> None:
    _stdout_console.print(line, markup=False)


def _print_err(line: str) -> None:
    _stderr_console.print(line, markup=False)


class ProcessSpawnError(Exception):
    """The agent command could not be started."""

    pass


class IdleStall(Exception):
    """The child produced no output for longer than the idle timeout."""

    def __init__(self, idle_seconds: float):
        self.idle_seconds = idle_seconds
        super().__init__(f"No output for {idle_seconds:.1f}s")


class OutcomeStatus(str, Enum):
    """Terminal outcome of a supervised execution."""

    SUCCESS = "success"  # exit code 0
    FAILURE = "failure"  # non-zero exit code or spawn failure
    ABORTED = "aborted"  # guardrail: idle restarts exhausted


class ExecutionOutcome(BaseModel):
    """Result of ProcessSupervisor.run()."""

    status: OutcomeStatus
    exit_code: int | None = None
    idle_restarts: int = 0
    stream_result: str | None = None  # Last "result" event status, display only
    duration_seconds: float = 0.0
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


@dataclass
class _StreamEvent:
    source: str  # "stdout" or "stderr"
    line: str | None  # None marks end of stream


def _pump(stream: IO[str], source: str, events: queue.Queue) -> None:
    """Reader thread: forward lines until EOF, then post an EOF marker."""
    try:
        for line in iter(stream.readline, ""):
            events.put(_StreamEvent(source, line.rstrip("\r\n")))
    except (OSError, ValueError) as e:
        logger.debug(f"{source} reader stopped: {e}")
    finally:
        events.put(_StreamEvent(source, None))


class ProcessSupervisor:
    """Spawns, streams, idle-detects and restarts an agent command."""

    QUEUE_MAXSIZE = 1024
    # Upper bound on one queue wait once both pipes are closed
    EXIT_POLL_SECONDS = 0.1
    READER_JOIN_SECONDS = 2.0

    def __init__(
        self,
        idle_timeout_seconds: float,
        max_idle_restarts: int = 2,
        continue_flag: str = "--continue",
        resume_prompt: str | None = None,
        heartbeat_seconds: float = 10.0,
        emit: Callable[[str], None] | None = None,
        emit_error: Callable[[str], None] | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        child_registry: ChildRegistry | None = None,
    ):
        self.idle_timeout_seconds = idle_timeout_seconds
        self.max_idle_restarts = max_idle_restarts
        self.continue_flag = continue_flag
        self.resume_prompt = resume_prompt or DEFAULT_RESUME_PROMPT.replace(
            "{idle_timeout_seconds}", f"{idle_timeout_seconds:g}"
        )
        self.heartbeat_seconds = heartbeat_seconds
        self.emit = emit or _print_out
        self.emit_error = emit_error or _print_err
        self.cwd = cwd
        self.env = env
        self.registry = child_registry or registry

    def resume_argv(self, command: RenderedCommand) -> list[str]:
        """Agent binary + static flags + continue flag + resume prompt."""
        argv = list(command.resume_base)
        if self.continue_flag and self.continue_flag not in argv:
            argv.append(self.continue_flag)
        argv.append(self.resume_prompt)
        return argv

    def run(
        self,
        command: RenderedCommand,
        on_restart: Callable[[int], None] | None = None,
        on_heartbeat: Callable[[float], None] | None = None,
    ) -> ExecutionOutcome:
        """Run ``command`` to a terminal outcome.

        Args:
            command: Rendered command (argv + resume base).
            on_restart: Called with the restart number before each respawn.
            on_heartbeat: Called with elapsed seconds on every heartbeat.

        Raises:
            ProcessSpawnError: If the command (or a resume) cannot be started.
        """
        started = time.monotonic()
        renderer = StreamRenderer()
        argv = list(command.argv)
        restarts = 0

        while True:
            try:
                exit_code = self._run_attempt(argv, renderer, on_heartbeat)
            except IdleStall as stall:
                self.emit(
                    f"... idle timeout reached (no output for {stall.idle_seconds:.0f}s)"
                )
                if restarts >= self.max_idle_restarts:
                    logger.warning(f"Idle restarts exhausted ({restarts}/{self.max_idle_restarts})")
                    return ExecutionOutcome(
                        status=OutcomeStatus.ABORTED,
                        idle_restarts=restarts,
                        stream_result=renderer.result_status,
                        duration_seconds=time.monotonic() - started,
                        detail=f"stalled after {restarts} idle restart(s)",
                    )
                restarts += 1
                logger.info(f"Restarting stalled agent (restart {restarts})")
                self.emit(
                    f"... restarting command with {self.continue_flag} (attempt {restarts + 1})"
                )
                if on_restart is not None:
                    on_restart(restarts)
                argv = self.resume_argv(command)
                continue

            status = OutcomeStatus.SUCCESS if exit_code == 0 else OutcomeStatus.FAILURE
            return ExecutionOutcome(
                status=status,
                exit_code=exit_code,
                idle_restarts=restarts,
                stream_result=renderer.result_status,
                duration_seconds=time.monotonic() - started,
            )

    def _handle(self, event: _StreamEvent, renderer: StreamRenderer) -> None:
        if event.source == "stderr":
            self.emit_error(f"[stderr] {event.line}")
            return
        line = event.line or ""
        try:
            rendered_lines = renderer.render_line(line)
        except Exception as e:
            logger.warning(f"Could not render agent output line: {e!r}")
            rendered_lines = [line]
        for rendered in rendered_lines:
            self.emit(rendered)

    def _run_attempt(
        self,
        argv: list[str],
        renderer: StreamRenderer,
        on_heartbeat: Callable[[float], None] | None,
    ) -> int:
        """Run one child to exit.

        Returns:
            The child's exit code.

        Raises:
            IdleStall: After killing a child that went quiet.
            ProcessSpawnError: If the child cannot be started.
        """
        try:
            process = spawn(argv, cwd=self.cwd, env=self.env)
        except OSError as e:
            raise ProcessSpawnError(f"Failed to start {argv[0]}: {e}") from e
        self.registry.add(process)
        logger.debug(f"Spawned pid {process.pid}: {argv[0]}")

        events: queue.Queue[_StreamEvent] = queue.Queue(maxsize=self.QUEUE_MAXSIZE)
        readers = [
            threading.Thread(target=_pump, args=(process.stdout, "stdout", events), daemon=True),
            threading.Thread(target=_pump, args=(process.stderr, "stderr", events), daemon=True),
        ]
        for reader in readers:
            reader.start()

        started = last_output_at = time.monotonic()
        next_heartbeat = started + self.heartbeat_seconds
        open_streams = len(readers)

        try:
            while True:
                if open_streams == 0 and process.poll() is not None:
                    break

                now = time.monotonic()
                wait = min(last_output_at + self.idle_timeout_seconds, next_heartbeat) - now
                if open_streams == 0:
                    wait = min(wait, self.EXIT_POLL_SECONDS)
                try:
                    event = events.get(timeout=max(wait, 0.01))
                except queue.Empty:
                    event = None

                now = time.monotonic()
                if event is not None:
                    if event.line is None:
                        open_streams -= 1
                    else:
                        last_output_at = now
                        self._handle(event, renderer)

                idle = now - last_output_at
                if idle > self.idle_timeout_seconds:
                    logger.warning(f"pid {process.pid} idle for {idle:.1f}s; killing process tree")
                    terminate_process_tree(process)
                    raise IdleStall(idle)

                if now >= next_heartbeat:
                    elapsed = now - started
                    self.emit(f"... task command still running ({elapsed:.0f}s elapsed)")
                    if on_heartbeat is not None:
                        on_heartbeat(elapsed)
                    next_heartbeat += self.heartbeat_seconds

            return process.wait()
        except BaseException:
            if process.poll() is None:
                terminate_process_tree(process)
            raise
        finally:
            self.registry.remove(process)
            self._drain(process, events, readers, renderer)
            for rendered in renderer.flush():
                self.emit(rendered)

    def _drain(
        self,
        process: subprocess.Popen,
        events: queue.Queue[_StreamEvent],
        readers: list[threading.Thread],
        renderer: StreamRenderer,
    ) -> None:
        """Render output still queued after the child stopped."""
        deadline = time.monotonic() + self.READER_JOIN_SECONDS
        while True:
            try:
                event = events.get(timeout=0.05)
            except queue.Empty:
                if not any(r.is_alive() for r in readers) or time.monotonic() > deadline:
                    break
                continue
            if event.line is not None:
                self._handle(event, renderer)

        if not any(r.is_alive() for r in readers):
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()
