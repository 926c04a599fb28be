"""File-based locking for claim ledger operations using filelock."""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Advisory lock could not be acquired in time."""

    pass


class LedgerLock:
    """Lock guarding the claim ledger's read-modify-write window.

    Uses the robust, well-tested filelock library for cross-platform locking.
    Held only for a read-modify-write window; never long-lived.

    Unlike a best-effort lock, failure to acquire raises: callers rely on the
    lock for ledger consistency and must not proceed without it.
    """

    LOCK_TIMEOUT: float = 30
    LOCK_SUFFIX: str = ".lock"

    def __init__(self, target_path: Path, timeout: float | None = None):
        self.target_path = Path(target_path)
        self.lock_path = self.target_path.with_name(self.target_path.name + self.LOCK_SUFFIX)
        self.timeout = self.LOCK_TIMEOUT if timeout is None else timeout
        self._filelock: FileLock | None = None
        self.acquired = False

    def __enter__(self) -> LedgerLock:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        # SECURITY: Refuse to lock through a symlink
        if self.lock_path.is_symlink():
            raise LockTimeoutError(f"{self.lock_path} is a symlink; refusing to lock")

        self._filelock = FileLock(str(self.lock_path), timeout=self.timeout)
        try:
            self._filelock.acquire()
        except FileLockTimeout as e:
            logger.warning(f"{self.__class__.__name__} timeout after {self.timeout}s")
            raise LockTimeoutError(
                f"Timed out after {self.timeout}s waiting for {self.lock_path}"
            ) from e
        self.acquired = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._filelock is not None and self.acquired:
            with contextlib.suppress(Exception):
                self._filelock.release()
            self.acquired = False
        return False
