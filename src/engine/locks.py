"""
Lock Manager for the execution core.

Guarantees at most one RUNNING execution per job:
- Acquire is a single conditional write (insert, or overwrite an expired row)
- Release only succeeds for the current holder
- Expired locks are reclaimed lazily on acquire and by sweep_expired()

What LockManager MUST NOT do:
- Decide what happens on contention (ExecutionController's contention policy)
- Extend a lock while its holder runs (TTL covers max runtime + margin)
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .entities import Execution, ExecutionLock, to_iso, utcnow
from .persistence import ExecutionStore


logger = logging.getLogger(__name__)


# Bounded in-memory holder log
DEFAULT_HISTORY_SIZE = 1000


@dataclass(frozen=True)
class LockEvent:
    """One entry in the holder log."""

    job_id: str
    holder: str
    action: str  # acquired | released | expired
    at: str


class LockManager:
    """
    Time-bounded exclusive execution rights, one lock per job.

    The holder is an opaque string; the controller uses the execution id.
    """

    def __init__(
        self,
        store: ExecutionStore,
        default_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        """
        Initialize LockManager.

        Args:
            store: ExecutionStore holding the lock rows
            default_ttl: TTL used when callers don't pass one
            clock: Returns the current aware datetime (injectable for tests)
            history_size: Maximum holder log entries kept in memory
        """
        self.store = store
        self.default_ttl = default_ttl
        self.clock = clock
        self._history: deque[LockEvent] = deque(maxlen=history_size)
        self._history_lock = threading.Lock()

    def _window(self, ttl: Optional[timedelta]) -> tuple[str, str]:
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= timedelta(0):
            raise ValueError(f"Lock TTL must be positive, got {ttl}")
        now = self.clock()
        return to_iso(now), to_iso(now + ttl)

    def _log_event(self, job_id: str, holder: str, action: str, at: Optional[str] = None) -> None:
        event = LockEvent(job_id=job_id, holder=holder, action=action, at=at or to_iso(self.clock()))
        with self._history_lock:
            self._history.append(event)

    # =========================================================================
    # Acquire / Release
    # =========================================================================

    def try_acquire(self, job_id: str, holder: str, ttl: Optional[timedelta] = None) -> bool:
        """
        Try to take the job's lock.

        Returns:
            True if `holder` now owns a live lock, False if another live
            holder owns it

        Raises:
            ValueError: If `ttl` is zero or negative
        """
        acquired_at, expires_at = self._window(ttl)
        acquired = self.store.acquire_lock(job_id, holder, acquired_at, expires_at)

        if acquired:
            self._log_event(job_id, holder, "acquired", acquired_at)
            logger.debug(f"Lock acquired: job={job_id} holder={holder} expires={expires_at}")
        else:
            logger.debug(f"Lock busy: job={job_id} requested_by={holder}")
        return acquired

    def claim(self, execution: Execution, ttl: Optional[timedelta] = None) -> Execution:
        """
        Acquire the lock for an execution and move it PENDING -> RUNNING.

        Both writes happen in one storage transaction.

        Raises:
            LockContentionError: If another live holder owns the lock
            InvalidTransitionError: If the execution is no longer PENDING
        """
        acquired_at, expires_at = self._window(ttl)
        running = self.store.claim_execution(
            execution.execution_id,
            execution.job_id,
            acquired_at,
            expires_at,
        )
        self._log_event(execution.job_id, execution.execution_id, "acquired", acquired_at)
        logger.debug(
            f"Lock claimed: job={execution.job_id} execution={execution.execution_id} "
            f"expires={expires_at}"
        )
        return running

    def release(self, job_id: str, holder: str) -> bool:
        """
        Release the job's lock.

        Returns:
            False (no-op) if `holder` does not own the lock
        """
        released = self.store.release_lock(job_id, holder)
        if released:
            self.record_release(job_id, holder)
        else:
            logger.debug(f"Release ignored: job={job_id} holder={holder} is not the owner")
        return released

    def record_release(self, job_id: str, holder: str) -> None:
        """Log a release performed inside another storage transaction."""
        self._log_event(job_id, holder, "released")
        logger.debug(f"Lock released: job={job_id} holder={holder}")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_lock(self, job_id: str) -> Optional[ExecutionLock]:
        """Get the live lock for a job, or None if free or expired."""
        lock = self.store.get_lock(job_id)
        if lock is None or not lock.is_live(self.clock()):
            return None
        return lock

    def is_held(self, job_id: str) -> bool:
        """Check whether a live lock exists for the job."""
        return self.get_lock(job_id) is not None

    def current_holder(self, job_id: str) -> Optional[str]:
        """Holder of the live lock, if any."""
        lock = self.get_lock(job_id)
        return lock.holder if lock else None

    def history(self, job_id: Optional[str] = None) -> list[LockEvent]:
        """Snapshot of the holder log, oldest first."""
        with self._history_lock:
            events = list(self._history)
        if job_id is not None:
            events = [e for e in events if e.job_id == job_id]
        return events

    # =========================================================================
    # Maintenance
    # =========================================================================

    def sweep_expired(self) -> list[ExecutionLock]:
        """
        Delete every expired lock row.

        Returns:
            The locks that were reclaimed
        """
        now = to_iso(self.clock())
        expired = self.store.delete_expired_locks(now)
        for lock in expired:
            self._log_event(lock.job_id, lock.holder, "expired", now)
            logger.warning(
                f"Expired lock reclaimed: job={lock.job_id} holder={lock.holder} "
                f"expired_at={lock.expires_at}"
            )
        return expired
