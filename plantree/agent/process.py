"""Child process spawning and process-tree termination.

Children are started as leaders of their own process group (POSIX session /
Windows process group) so the whole tree - the agent plus anything it spawned
- can be killed on an idle restart or operator cancel without leaving
orphaned grandchildren behind.
"""

import atexit
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

IS_WINDOWS = os.name == "nt"

# Seconds between SIGTERM and SIGKILL
TERMINATE_GRACE_SECONDS = 3.0


def spawn(
    argv: Sequence[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.Popen[str]:
    """Start ``argv`` with piped stdout/stderr in a new process group.

    Raises:
        OSError: If the executable cannot be started.
    """
    kwargs: dict[str, Any] = {}
    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    return subprocess.Popen(  # noqa: S603
        list(argv),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
        cwd=str(cwd) if cwd else None,
        env=env,
        **kwargs,
    )


def _signal_group(pid: int, sig: int) -> bool:
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning(f"Cannot signal process group {pid}: {e}")
        return False
    return True


def terminate_process_tree(
    process: subprocess.Popen, grace_seconds: float = TERMINATE_GRACE_SECONDS
) -> int | None:
    """Kill ``process`` and its descendants, then reap it.

    POSIX: SIGTERM to the process group, SIGKILL after ``grace_seconds``.
    Windows: ``taskkill /T /F`` on the process tree.

    Returns:
        The child's exit status (None if it could not be reaped).
    """
    pid = process.pid
    if IS_WINDOWS:
        subprocess.run(
            ["taskkill", "/PID", str(pid), "/T", "/F"],
            capture_output=True,
            timeout=30,
            check=False,
        )
    else:
        _signal_group(pid, signal.SIGTERM)
        try:
            return process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process group {pid} ignored SIGTERM; sending SIGKILL")
        finally:
            # Grandchildren may outlive the leader; sweep the group either way
            _signal_group(pid, signal.SIGKILL)

    try:
        return process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.error(f"Process {pid} did not exit after kill")
        return None


class ChildRegistry:
    """Track running children for cleanup on exit.

    Uses RLock (reentrant lock) to prevent deadlock when signal handlers
    call cleanup_all() while the lock is already held by the same thread.
    """

    def __init__(self) -> None:
        self._children: dict[int, subprocess.Popen] = {}
        self._lock = threading.RLock()
        self._handlers_installed = False
        atexit.register(self.cleanup_all)

    def add(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._children[process.pid] = process

    def remove(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._children.pop(process.pid, None)

    def cleanup_all(self) -> None:
        """Kill all tracked process trees."""
        with self._lock:
            for process in list(self._children.values()):
                if process.poll() is None:
                    terminate_process_tree(process, grace_seconds=1.0)
            self._children.clear()

    def install_signal_handlers(self) -> None:
        """Turn SIGTERM (and SIGHUP on POSIX) into orderly shutdown.

        Must be called from the main thread.
        """
        if self._handlers_installed:
            return
        signal.signal(signal.SIGTERM, self._signal_handler)
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, self._signal_handler)
        self._handlers_installed = True

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self.cleanup_all()
        raise SystemExit(128 + signum)


# Global child registry
registry = ChildRegistry()
