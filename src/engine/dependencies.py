"""
Dependency Resolver for the execution core.

Gate evaluated before admission:
- For each BLOCKING prerequisite, the latest terminal execution that ended
  inside the freshness window must be COMPLETED
- NON_BLOCKING edges are informational and never gate
- Any lookup failure fails closed

Edge creation also lives here so that duplicate, self and cyclic edges are
rejected in one place.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .entities import (
    DependencyCheck,
    DependencyType,
    ExecutionStatus,
    JobDependency,
    to_iso,
    utcnow,
)
from .errors import EngineError
from .persistence import ExecutionStore


logger = logging.getLogger(__name__)


class DependencyResolver:
    """Answers "may this job run now?" with respect to its prerequisites."""

    def __init__(
        self,
        store: ExecutionStore,
        freshness_window: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize DependencyResolver.

        Args:
            store: ExecutionStore for edges and execution history
            freshness_window: How far back a prerequisite success still counts
            clock: Returns the current aware datetime (injectable for tests)
        """
        if freshness_window <= timedelta(0):
            raise ValueError("freshness_window must be positive")
        self.store = store
        self.freshness_window = freshness_window
        self.clock = clock

    def can_run(self, job_id: str) -> DependencyCheck:
        """
        Evaluate every BLOCKING prerequisite of a job.

        Pure read: never mutates state.
        """
        try:
            edges = self.store.list_dependencies(job_id, DependencyType.BLOCKING)
        except EngineError as e:
            logger.error(f"Dependency lookup failed: job={job_id} error={e}")
            return DependencyCheck(False, f"dependency lookup failed: {e}")

        if not edges:
            return DependencyCheck(True)

        since = to_iso(self.clock() - self.freshness_window)

        for edge in edges:
            prerequisite = edge.prerequisite_job_id
            try:
                latest = self.store.get_latest_terminal_execution(prerequisite, since)
            except EngineError as e:
                logger.error(
                    f"Prerequisite lookup failed: job={job_id} "
                    f"prerequisite={prerequisite} error={e}"
                )
                return DependencyCheck(
                    False, f"dependency lookup failed for {prerequisite}: {e}"
                )

            if latest is None:
                return DependencyCheck(
                    False, f"prerequisite {prerequisite} has no execution within the freshness window"
                )

            if latest.status != ExecutionStatus.COMPLETED:
                return DependencyCheck(
                    False,
                    f"prerequisite {prerequisite} last finished {latest.status.value} "
                    f"(execution {latest.execution_id})",
                )

        return DependencyCheck(True)

    # =========================================================================
    # Edge Management
    # =========================================================================

    def add_dependency(
        self,
        dependent_job_id: str,
        prerequisite_job_id: str,
        dependency_type: DependencyType = DependencyType.BLOCKING,
    ) -> JobDependency:
        """
        Add an edge `dependent -> prerequisite`.

        Raises:
            JobNotFoundError: If either job is missing
            RejectedError: If the edge already exists
            DependencyCycleError: For self-edges and edges that close a cycle
        """
        dependency = JobDependency(
            dependent_job_id=dependent_job_id,
            prerequisite_job_id=prerequisite_job_id,
            dependency_type=dependency_type,
            created_at=to_iso(self.clock()),
        )
        self.store.add_dependency(dependency)
        logger.info(
            f"Dependency added: {dependent_job_id} -> {prerequisite_job_id} "
            f"({dependency_type.value})"
        )
        return dependency

    def remove_dependency(self, dependent_job_id: str, prerequisite_job_id: str) -> bool:
        """Remove an edge. Returns False if it did not exist."""
        removed = self.store.remove_dependency(dependent_job_id, prerequisite_job_id)
        if removed:
            logger.info(f"Dependency removed: {dependent_job_id} -> {prerequisite_job_id}")
        return removed

    def list_prerequisites(
        self,
        job_id: str,
        dependency_type: Optional[DependencyType] = None,
    ) -> list[JobDependency]:
        return self.store.list_dependencies(job_id, dependency_type)

    def list_dependents(self, job_id: str) -> list[JobDependency]:
        return self.store.list_dependents(job_id)
