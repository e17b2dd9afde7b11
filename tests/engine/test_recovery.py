"""
RecoveryManager tests.

Startup: RUNNING executions without a live lock of their own are failed.
Maintenance: timeouts, orphans, expired locks and retention, all idempotent.
"""

from datetime import timedelta

from src.engine import ExecutionStatus, LockManager, RecoveryManager
from src.engine.recovery import CRASH_RECOVERY_MESSAGE

from .conftest import assert_execution_status, assert_lock_free


class TestStartupRecovery:
    """recover_on_startup()."""

    def test_orphaned_running_execution_is_failed(
        self, recovery_manager, store, create_job, create_execution
    ):
        """
        Setup: RUNNING execution left by a crashed process, no lock
        Action: recover_on_startup()
        Assertion: FAILED with crash recovery message
        """
        job = create_job()
        orphan = create_execution(job.job_id, status=ExecutionStatus.RUNNING)

        stats = recovery_manager.recover_on_startup()

        assert stats["orphans_failed"] == 1
        assert stats["errors"] == []
        final = store.get_execution(orphan.execution_id)
        assert final.status == ExecutionStatus.FAILED
        assert final.error_message == CRASH_RECOVERY_MESSAGE
        assert final.error_phase == "recovery"

    def test_orphan_with_expired_lock_is_failed_and_lock_swept(
        self, store, controller, mock_clock, create_job, create_execution
    ):
        locks = LockManager(store, default_ttl=timedelta(seconds=30), clock=mock_clock)
        manager = RecoveryManager(
            store, locks, controller, timedelta(hours=1), timedelta(days=30), clock=mock_clock
        )
        job = create_job()
        other = create_job(name="other")
        orphan = create_execution(job.job_id, status=ExecutionStatus.RUNNING)
        locks.try_acquire(job.job_id, orphan.execution_id)
        locks.try_acquire(other.job_id, "ghost")
        mock_clock.tick(60)

        stats = manager.recover_on_startup()

        # The orphan's own row goes with its failure; the ghost row is swept
        assert stats["orphans_failed"] == 1
        assert stats["locks_expired"] == 1
        assert_execution_status(store, orphan.execution_id, ExecutionStatus.FAILED)
        assert_lock_free(store, job.job_id)
        assert_lock_free(store, other.job_id)

    def test_execution_holding_live_lock_is_left_alone(
        self, recovery_manager, store, locks, create_job, create_execution
    ):
        job = create_job()
        execution = create_execution(job.job_id, status=ExecutionStatus.RUNNING)
        locks.try_acquire(job.job_id, execution.execution_id)

        stats = recovery_manager.recover_on_startup()

        assert stats["orphans_failed"] == 0
        assert_execution_status(store, execution.execution_id, ExecutionStatus.RUNNING)

    def test_in_flight_execution_is_left_alone(
        self, recovery_manager, controller, store, locks, create_job
    ):
        """An execution owned by this process is never treated as an orphan."""
        job = create_job()
        execution, _ = controller.admit(job.job_id)
        controller.start(execution)
        locks.release(job.job_id, execution.execution_id)

        assert recovery_manager.fail_orphans() == []
        assert_execution_status(store, execution.execution_id, ExecutionStatus.RUNNING)

    def test_recovery_is_idempotent(self, recovery_manager, create_job, create_execution):
        job = create_job()
        create_execution(job.job_id, status=ExecutionStatus.RUNNING)

        first = recovery_manager.recover_on_startup()
        second = recovery_manager.recover_on_startup()

        assert first["orphans_failed"] == 1
        assert second["orphans_failed"] == 0
        assert second["locks_expired"] == 0

    def test_recovered_failures_are_counted_in_statistics(
        self, recovery_manager, statistics, create_job, create_execution
    ):
        job = create_job()
        create_execution(job.job_id, status=ExecutionStatus.RUNNING)

        recovery_manager.recover_on_startup()

        assert statistics.get(job.job_id, "2026-01-01").failed_executions == 1


class TestRetention:
    """purge_expired_history()."""

    def test_old_terminal_executions_are_deleted(
        self, recovery_manager, store, statistics, mock_clock, create_job, create_execution
    ):
        job = create_job()
        old = create_execution(job.job_id, status=ExecutionStatus.COMPLETED)
        statistics.record_execution(old)
        mock_clock.tick(timedelta(days=31).total_seconds())
        recent = create_execution(job.job_id, status=ExecutionStatus.FAILED)
        pending = create_execution(job.job_id)

        assert recovery_manager.purge_expired_history() == 1

        assert store.get_execution(old.execution_id) is None
        assert store.get_execution(recent.execution_id) is not None
        assert store.get_execution(pending.execution_id) is not None
        # Buckets outlive the executions they summarize
        assert statistics.get(job.job_id, "2026-01-01").total_executions == 1

    def test_purge_is_idempotent(self, recovery_manager, mock_clock, create_job, create_execution):
        job = create_job()
        create_execution(job.job_id, status=ExecutionStatus.CANCELLED)
        mock_clock.tick(timedelta(days=40).total_seconds())

        assert recovery_manager.purge_expired_history() == 1
        assert recovery_manager.purge_expired_history() == 0


class TestMaintenanceSweep:
    """sweep()."""

    def test_sweep_reports_each_step(
        self, recovery_manager, store, mock_clock, create_job, create_execution
    ):
        job = create_job()
        create_execution(job.job_id, status=ExecutionStatus.COMPLETED)
        mock_clock.tick(timedelta(days=31).total_seconds())
        overdue = create_execution(job.job_id, status=ExecutionStatus.RUNNING)
        mock_clock.tick(timedelta(hours=1).total_seconds())

        stats = recovery_manager.sweep()

        assert stats["timed_out"] == 1
        assert stats["executions_purged"] == 1
        assert stats["errors"] == []
        final = store.get_execution(overdue.execution_id)
        assert final.status == ExecutionStatus.CANCELLED
        assert final.error_phase == "timeout"

    def test_sweep_on_clean_state(self, recovery_manager):
        stats = recovery_manager.sweep()

        assert stats == {
            "timed_out": 0,
            "orphans_failed": 0,
            "locks_expired": 0,
            "executions_purged": 0,
            "errors": [],
        }
