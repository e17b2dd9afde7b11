"""
Recovery Manager for the execution core.

- On startup: RUNNING executions without a live lock of their own are
  leftovers of a crashed engine and are marked FAILED
- Periodically: timeouts, orphaned executions, expired locks, retention

Every step is idempotent: running it twice produces the same end state.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from .entities import Execution, to_iso, utcnow
from .errors import EngineError, InvalidTransitionError
from .lifecycle import ExecutionController
from .locks import LockManager
from .persistence import ExecutionStore


logger = logging.getLogger(__name__)


CRASH_RECOVERY_MESSAGE = "engine crash recovery"


class RecoveryManager:
    """Startup cleanup and the periodic maintenance sweep."""

    def __init__(
        self,
        store: ExecutionStore,
        locks: LockManager,
        controller: ExecutionController,
        max_runtime: timedelta,
        retention: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize RecoveryManager.

        Args:
            store: ExecutionStore for execution records
            locks: LockManager whose expired rows get swept
            controller: ExecutionController used for every transition
            max_runtime: Executions running longer are cancelled
            retention: Terminal executions older than this are deleted
            clock: Returns the current aware datetime (injectable for tests)
        """
        self.store = store
        self.locks = locks
        self.controller = controller
        self.max_runtime = max_runtime
        self.retention = retention
        self.clock = clock

    def recover_on_startup(self) -> dict:
        """
        Perform recovery before the engine accepts work.

        Returns:
            Recovery statistics
        """
        stats = {
            "orphans_failed": 0,
            "locks_expired": 0,
            "errors": [],
        }

        logger.info("Starting crash recovery...")

        try:
            stats["orphans_failed"] = len(self.fail_orphans())
        except EngineError as e:
            logger.error(f"Error recovering RUNNING executions: {e}")
            stats["errors"].append(f"Orphans: {e}")

        try:
            stats["locks_expired"] = len(self.locks.sweep_expired())
        except EngineError as e:
            logger.error(f"Error sweeping expired locks: {e}")
            stats["errors"].append(f"Locks: {e}")

        logger.info(
            f"Recovery complete: "
            f"{stats['orphans_failed']} orphaned executions failed, "
            f"{stats['locks_expired']} expired locks swept"
        )
        return stats

    def fail_orphans(self) -> list[Execution]:
        """
        Mark FAILED every RUNNING execution that does not hold a live lock.

        In-flight executions of this process are skipped; their worker
        threads own their outcome.
        """
        in_flight = set(self.controller.in_flight())
        failed = []

        for execution in self.store.list_running_executions():
            if execution.execution_id in in_flight:
                continue
            if self.locks.current_holder(execution.job_id) == execution.execution_id:
                continue

            logger.warning(
                f"Orphaned execution: job={execution.job_id} "
                f"execution={execution.execution_id} started={execution.start_time}"
            )
            try:
                failed.append(
                    self.controller.fail(execution, CRASH_RECOVERY_MESSAGE, "recovery")
                )
            except InvalidTransitionError as e:
                logger.info(f"Orphan already settled: {e}")

        return failed

    def purge_expired_history(self) -> int:
        """Delete terminal executions older than the retention window."""
        cutoff = to_iso(self.clock() - self.retention)
        deleted = self.store.delete_terminal_executions_before(cutoff)
        if deleted:
            logger.info(f"Retention sweep deleted {deleted} executions ended before {cutoff}")
        return deleted

    def sweep(self) -> dict:
        """
        One maintenance pass.

        Returns:
            Counts per step
        """
        stats = {
            "timed_out": 0,
            "orphans_failed": 0,
            "locks_expired": 0,
            "executions_purged": 0,
            "errors": [],
        }

        steps = (
            ("timed_out", lambda: len(self.controller.enforce_timeouts(self.max_runtime))),
            ("orphans_failed", lambda: len(self.fail_orphans())),
            ("locks_expired", lambda: len(self.locks.sweep_expired())),
            ("executions_purged", self.purge_expired_history),
        )

        for key, step in steps:
            try:
                stats[key] = step()
            except EngineError as e:
                logger.error(f"Maintenance step {key} failed: {e}")
                stats["errors"].append(f"{key}: {e}")

        return stats
