"""
DependencyResolver tests.

Gate semantics:
- Latest terminal execution of each BLOCKING prerequisite inside the
  freshness window must be COMPLETED
- NON_BLOCKING edges never gate
- Lookup failures fail closed

Edge rules: no self, duplicate or cyclic edges; both jobs must exist.
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from src.engine import (
    DependencyCycleError,
    DependencyResolver,
    DependencyType,
    ExecutionStatus,
    JobNotFoundError,
    RejectedError,
    StorageError,
)


class TestGate:
    """can_run() decisions."""

    def test_job_without_dependencies_can_run(self, resolver, create_job):
        job = create_job()
        check = resolver.can_run(job.job_id)

        assert check.allowed is True
        assert check.blocking_reason is None

    def test_blocked_until_prerequisite_succeeds(self, resolver, create_job, create_execution, mock_clock):
        """
        Setup: B depends on A (BLOCKING)
        Action: check before A ran, after A failed, after A completed
        Assertion: blocked, blocked, allowed
        """
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)

        check = resolver.can_run(b.job_id)
        assert check.allowed is False
        assert "no execution within the freshness window" in check.blocking_reason
        assert a.job_id in check.blocking_reason

        mock_clock.tick(60)
        failed = create_execution(a.job_id, status=ExecutionStatus.FAILED)
        check = resolver.can_run(b.job_id)
        assert check.allowed is False
        assert "FAILED" in check.blocking_reason
        assert failed.execution_id in check.blocking_reason

        mock_clock.tick(60)
        create_execution(a.job_id, status=ExecutionStatus.COMPLETED)
        assert resolver.can_run(b.job_id).allowed is True

    def test_latest_terminal_execution_wins(self, resolver, create_job, create_execution, mock_clock):
        """An older success does not outweigh a newer failure."""
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)

        create_execution(a.job_id, status=ExecutionStatus.COMPLETED)
        mock_clock.tick(60)
        create_execution(a.job_id, status=ExecutionStatus.FAILED)

        assert resolver.can_run(b.job_id).allowed is False

    def test_cancelled_prerequisite_blocks(self, resolver, create_job, create_execution):
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)
        create_execution(a.job_id, status=ExecutionStatus.CANCELLED)

        check = resolver.can_run(b.job_id)
        assert check.allowed is False
        assert "CANCELLED" in check.blocking_reason

    def test_in_flight_prerequisite_is_ignored(self, resolver, create_job, create_execution, mock_clock):
        """Only terminal executions count; a RUNNING one does not mask the last success."""
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)

        create_execution(a.job_id, status=ExecutionStatus.COMPLETED)
        mock_clock.tick(60)
        create_execution(a.job_id, status=ExecutionStatus.RUNNING)

        assert resolver.can_run(b.job_id).allowed is True

    def test_success_outside_window_does_not_count(self, resolver, create_job, create_execution, mock_clock):
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)
        create_execution(a.job_id, status=ExecutionStatus.COMPLETED)

        mock_clock.tick(timedelta(hours=23).total_seconds())
        assert resolver.can_run(b.job_id).allowed is True

        mock_clock.tick(timedelta(hours=2).total_seconds())
        assert resolver.can_run(b.job_id).allowed is False

    def test_all_blocking_prerequisites_must_pass(self, resolver, create_job, create_execution):
        a = create_job(name="A")
        c = create_job(name="C")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)
        resolver.add_dependency(b.job_id, c.job_id)
        create_execution(a.job_id, status=ExecutionStatus.COMPLETED)

        check = resolver.can_run(b.job_id)
        assert check.allowed is False
        assert c.job_id in check.blocking_reason

    def test_non_blocking_edge_never_gates(self, resolver, create_job, create_execution):
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id, DependencyType.NON_BLOCKING)
        create_execution(a.job_id, status=ExecutionStatus.FAILED)

        assert resolver.can_run(b.job_id).allowed is True

    def test_can_run_does_not_write(self, resolver, store, create_job):
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)

        resolver.can_run(b.job_id)

        assert store.list_executions() == []

    def test_storage_failure_fails_closed(self, create_job, store, mock_clock):
        """
        Setup: store whose dependency lookup raises StorageError
        Action: can_run()
        Assertion: not allowed, reason names the failure
        """
        broken = MagicMock(wraps=store)
        broken.list_dependencies.side_effect = StorageError("read", RuntimeError("disk gone"))
        resolver = DependencyResolver(broken, timedelta(hours=24), clock=mock_clock)

        check = resolver.can_run("any-job")

        assert check.allowed is False
        assert "dependency lookup failed" in check.blocking_reason

    def test_prerequisite_lookup_failure_fails_closed(self, create_job, store, mock_clock):
        a = create_job(name="A")
        b = create_job(name="B")
        DependencyResolver(store, timedelta(hours=24), clock=mock_clock).add_dependency(
            b.job_id, a.job_id
        )

        broken = MagicMock(wraps=store)
        broken.get_latest_terminal_execution.side_effect = StorageError(
            "read", RuntimeError("locked")
        )
        resolver = DependencyResolver(broken, timedelta(hours=24), clock=mock_clock)

        check = resolver.can_run(b.job_id)
        assert check.allowed is False
        assert a.job_id in check.blocking_reason

    def test_window_must_be_positive(self, store):
        with pytest.raises(ValueError):
            DependencyResolver(store, timedelta(0))


class TestEdges:
    """Edge creation rules."""

    def test_self_dependency_rejected(self, resolver, create_job):
        a = create_job()
        with pytest.raises(DependencyCycleError):
            resolver.add_dependency(a.job_id, a.job_id)

    def test_direct_cycle_rejected(self, resolver, create_job):
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)

        with pytest.raises(DependencyCycleError):
            resolver.add_dependency(a.job_id, b.job_id)

    def test_transitive_cycle_rejected(self, resolver, store, create_job):
        """
        Setup: C -> B -> A
        Action: add A -> C
        Assertion: rejected, graph unchanged
        """
        a = create_job(name="A")
        b = create_job(name="B")
        c = create_job(name="C")
        resolver.add_dependency(b.job_id, a.job_id)
        resolver.add_dependency(c.job_id, b.job_id)

        with pytest.raises(DependencyCycleError):
            resolver.add_dependency(a.job_id, c.job_id)

        assert resolver.list_prerequisites(a.job_id) == []

    def test_diamond_is_allowed(self, resolver, create_job):
        a = create_job(name="A")
        b = create_job(name="B")
        c = create_job(name="C")
        d = create_job(name="D")
        resolver.add_dependency(b.job_id, a.job_id)
        resolver.add_dependency(c.job_id, a.job_id)
        resolver.add_dependency(d.job_id, b.job_id)
        resolver.add_dependency(d.job_id, c.job_id)

        assert {e.prerequisite_job_id for e in resolver.list_prerequisites(d.job_id)} == {
            b.job_id,
            c.job_id,
        }
        assert {e.dependent_job_id for e in resolver.list_dependents(a.job_id)} == {
            b.job_id,
            c.job_id,
        }

    def test_duplicate_edge_rejected(self, resolver, create_job):
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)

        with pytest.raises(RejectedError) as exc_info:
            resolver.add_dependency(b.job_id, a.job_id, DependencyType.NON_BLOCKING)

        assert not isinstance(exc_info.value, DependencyCycleError)
        assert "already exists" in exc_info.value.reason

    def test_unknown_job_rejected(self, resolver, create_job):
        a = create_job()
        with pytest.raises(JobNotFoundError):
            resolver.add_dependency(a.job_id, "missing")
        with pytest.raises(JobNotFoundError):
            resolver.add_dependency("missing", a.job_id)

    def test_remove_dependency(self, resolver, create_job):
        a = create_job(name="A")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id)

        assert resolver.remove_dependency(b.job_id, a.job_id) is True
        assert resolver.remove_dependency(b.job_id, a.job_id) is False
        assert resolver.can_run(b.job_id).allowed is True

    def test_filter_by_type(self, resolver, create_job):
        a = create_job(name="A")
        c = create_job(name="C")
        b = create_job(name="B")
        resolver.add_dependency(b.job_id, a.job_id, DependencyType.BLOCKING)
        resolver.add_dependency(b.job_id, c.job_id, DependencyType.NON_BLOCKING)

        blocking = resolver.list_prerequisites(b.job_id, DependencyType.BLOCKING)
        assert [e.prerequisite_job_id for e in blocking] == [a.job_id]

    def test_concurrent_inserts_cannot_close_cycle(self, resolver, create_job):
        """
        Setup: two jobs, two threads
        Action: insert A -> B and B -> A at the same time, repeatedly
        Assertion: exactly one edge survives each round
        """
        for round_number in range(5):
            a = create_job(name=f"A{round_number}")
            b = create_job(name=f"B{round_number}")
            barrier = threading.Barrier(2)
            outcomes = []

            def insert(dependent, prerequisite):
                barrier.wait()
                try:
                    resolver.add_dependency(dependent, prerequisite)
                    outcomes.append("ok")
                except DependencyCycleError:
                    outcomes.append("cycle")

            threads = [
                threading.Thread(target=insert, args=(a.job_id, b.job_id)),
                threading.Thread(target=insert, args=(b.job_id, a.job_id)),
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert sorted(outcomes) == ["cycle", "ok"]
            edges = resolver.list_prerequisites(a.job_id) + resolver.list_prerequisites(b.job_id)
            assert len(edges) == 1
