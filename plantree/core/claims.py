"""Lease-based claim store.

The ledger file is the single source of truth for task ownership across
process invocations. Every mutation:

1. acquires the advisory ledger lock,
2. reads the ledger fresh,
3. applies the change,
4. writes the whole ledger to a temp file and os.replace()s it into place.

Readers never take the lock; the atomic rename means they always see either
the old or the new ledger. Expiry is evaluated lazily on read - a record whose
lease has run out is treated as absent everywhere.

LIMITATION: atomicity holds for concurrent processes on one host sharing a
local filesystem that honors advisory locks. There is no cross-host consensus.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError

from plantree.core.locks import LedgerLock, LockTimeoutError
from plantree.core.models import Claim, ClaimLedger, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 1800


class ClaimStoreError(Exception):
    """Error reading or writing the claim ledger."""

    pass


class ClaimConflict(ClaimStoreError):
    """An unexpired lease on the task is held by another owner."""

    def __init__(self, task_id: str, current_owner: str, expires_at: datetime | None = None):
        self.task_id = task_id
        self.current_owner = current_owner
        self.expires_at = expires_at
        until = f" until {expires_at.isoformat()}" if expires_at else ""
        super().__init__(f"Task {task_id} is already claimed by {current_owner}{until}")


class ClaimLockError(ClaimStoreError):
    """Could not acquire the ledger lock."""

    pass


class StaleClaimReclaimed(BaseModel):
    """Informational: an expired lease of another owner was replaced."""

    task_id: str
    previous_owner: str
    expired_at: datetime


class ClaimResult(BaseModel):
    """Result of a successful claim."""

    claim: Claim
    renewed: bool = False
    reclaimed: StaleClaimReclaimed | None = None


class ClaimStore:
    """Persistent lease ledger with atomic claim/renew/release/complete."""

    LEDGER_FILENAME = "claims.json"

    def __init__(
        self,
        state_dir: Path,
        default_lease_seconds: int = DEFAULT_LEASE_SECONDS,
        lock_timeout: float = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.state_dir = Path(state_dir)
        self.default_lease_seconds = default_lease_seconds
        self.lock_timeout = lock_timeout
        self._clock = clock

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / self.LEDGER_FILENAME

    def now(self) -> datetime:
        return self._clock()

    # --- Reads ---

    def load(self) -> ClaimLedger:
        """Read the ledger as-is (expired records included)."""
        path = self.ledger_path
        if not path.exists():
            return ClaimLedger()
        try:
            return ClaimLedger.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise ClaimStoreError(f"Failed to read claim ledger {path}: {e}") from e

    def active_claims(self) -> dict[str, Claim]:
        """All unexpired claims keyed by task id."""
        now = self.now()
        return {
            task_id: claim
            for task_id, claim in self.load().claims.items()
            if not claim.is_expired(now)
        }

    def active_claim(self, task_id: str) -> Claim | None:
        claim = self.load().claims.get(task_id)
        if claim is None or claim.is_expired(self.now()):
            return None
        return claim

    def is_claimed(self, task_id: str) -> bool:
        """True iff an unexpired claim exists, regardless of owner."""
        return self.active_claim(task_id) is not None

    def orphaned_claims(self, known_task_ids: Iterable[str]) -> list[Claim]:
        """Active claims whose task no longer exists (advisory diagnostics)."""
        known = set(known_task_ids)
        return [c for tid, c in sorted(self.active_claims().items()) if tid not in known]

    # --- Writes ---

    @contextmanager
    def _transaction(self, lock_timeout: float | None = None) -> Generator[ClaimLedger, None, None]:
        """Hold the ledger lock across read-modify-write.

        The ledger is written back only if the body completes without error.
        """
        timeout = self.lock_timeout if lock_timeout is None else lock_timeout
        try:
            with LedgerLock(self.ledger_path, timeout=timeout):
                ledger = self.load()
                yield ledger
                self._write(ledger)
        except LockTimeoutError as e:
            raise ClaimLockError(str(e)) from e

    def _write(self, ledger: ClaimLedger) -> None:
        """Atomic write via temp file + replace; expired records are dropped."""
        now = self.now()
        ledger.claims = {
            tid: claim for tid, claim in sorted(ledger.claims.items()) if not claim.is_expired(now)
        }
        self.state_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            prefix=".claims_",
            suffix=".tmp",
            dir=str(self.state_dir),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(ledger.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, str(self.ledger_path))
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _check_owner(self, existing: Claim | None, task_id: str, owner: str | None, force: bool):
        """Raise ClaimConflict if an unexpired claim belongs to someone else."""
        if existing is None or force:
            return
        if existing.is_expired(self.now()):
            return
        if owner is None or existing.owner != owner:
            raise ClaimConflict(task_id, existing.owner, existing.expires_at)

    def claim(
        self,
        task_id: str,
        owner: str,
        lease_seconds: int | None = None,
        note: str | None = None,
        lock_timeout: float | None = None,
    ) -> ClaimResult:
        """Claim (or renew) a task for ``owner``.

        ``lock_timeout`` overrides the store-wide ledger lock timeout for this
        call.

        Raises:
            ClaimConflict: If another owner holds an unexpired lease.
            ClaimLockError: If the ledger lock cannot be acquired.
        """
        lease = lease_seconds or self.default_lease_seconds
        with self._transaction(lock_timeout) as ledger:
            now = self.now()
            existing = ledger.claims.get(task_id)
            renewed = False
            reclaimed = None

            if existing is not None:
                if not existing.is_expired(now):
                    if existing.owner != owner:
                        raise ClaimConflict(task_id, existing.owner, existing.expires_at)
                    renewed = True
                    note = note if note is not None else existing.note
                elif existing.owner != owner:
                    reclaimed = StaleClaimReclaimed(
                        task_id=task_id,
                        previous_owner=existing.owner,
                        expired_at=existing.expires_at,
                    )

            claim = Claim(
                task_id=task_id,
                owner=owner,
                claimed_at=now,
                lease_seconds=lease,
                note=note,
            )
            ledger.claims[task_id] = claim

        if reclaimed is not None:
            logger.info(
                f"Reclaimed {task_id} from {reclaimed.previous_owner} "
                f"(lease expired {reclaimed.expired_at.isoformat()})"
            )
        elif renewed:
            logger.debug(f"Renewed lease on {task_id} for {owner}")
        return ClaimResult(claim=claim, renewed=renewed, reclaimed=reclaimed)

    def renew(self, task_id: str, owner: str, lock_timeout: float | None = None) -> ClaimResult:
        """Refresh ``claimed_at`` keeping the existing lease length."""
        existing = self.active_claim(task_id)
        lease = existing.lease_seconds if existing is not None else None
        return self.claim(task_id, owner, lease_seconds=lease, lock_timeout=lock_timeout)

    def release(self, task_id: str, owner: str | None, force: bool = False) -> bool:
        """Drop the lease so the task becomes claimable again.

        Returns:
            True if an active claim was removed, False if there was none.
        """
        with self._transaction() as ledger:
            existing = ledger.claims.get(task_id)
            self._check_owner(existing, task_id, owner, force)
            active = existing is not None and not existing.is_expired(self.now())
            ledger.claims.pop(task_id, None)
        if active:
            logger.debug(f"Released {task_id} (owner={owner}, force={force})")
        return active

    def complete(
        self,
        task_id: str,
        owner: str | None = None,
        note: str | None = None,
        force: bool = False,
        on_resolve: Callable[[], None] | None = None,
    ) -> Claim | None:
        """Resolve the claim for a finished task.

        The checklist marker itself is flipped by CompletionMarker. Pass that
        step as ``on_resolve`` to run it under the ledger lock once ownership
        is confirmed: if it raises, the claim is kept, and if ownership fails
        it never runs.

        Returns:
            The resolved claim (with ``note`` applied) or None if the task was
            not claimed.
        """
        with self._transaction() as ledger:
            existing = ledger.claims.get(task_id)
            self._check_owner(existing, task_id, owner, force)
            if on_resolve is not None:
                on_resolve()
            ledger.claims.pop(task_id, None)
        if existing is None or existing.is_expired(self.now()):
            return None
        if note is not None:
            existing = existing.model_copy(update={"note": note})
        return existing
