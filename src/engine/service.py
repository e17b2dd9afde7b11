"""
Execution Engine - main entry point for the execution core.

Orchestrates all components:
- ExecutionStore (storage)
- LockManager (per-job exclusivity)
- DependencyResolver (admission gate)
- StatisticsAggregator (daily rollups)
- ExecutionController (lifecycle)
- RecoveryManager (startup recovery and maintenance sweep)
- CronTriggerSource (optional scheduled triggers)

Usage:
    engine = ExecutionEngine.create(config, registry)
    engine.start()
    execution_id = engine.trigger_job(job_id, {"date": "2024-01-01"})
    ...
    engine.stop()
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

from src.infra.config import EngineConfig

from .dependencies import DependencyResolver
from .entities import (
    DailyStatistics,
    DependencyCheck,
    DependencyType,
    Execution,
    ExecutionLock,
    ExecutionStatus,
    Job,
    JobDependency,
    JobSchedule,
    Schedule,
    to_iso,
    utcnow,
)
from .errors import (
    ExecutionNotFoundError,
    JobNotFoundError,
    RejectedError,
    ScheduleNotFoundError,
)
from .lifecycle import ExecutionController, NotificationDispatcher
from .locks import LockManager
from .persistence import ExecutionStore
from .recovery import RecoveryManager
from .runners import RunnerRegistry
from .statistics import StatisticsAggregator
from .triggers import CronTriggerSource, validate_cron_expression, validate_timezone


logger = logging.getLogger(__name__)


# Failure ratio at or above which a job is reported unhealthy
UNHEALTHY_FAILURE_RATIO = 0.5


class ExecutionEngine:
    """
    Main service that coordinates all execution core components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery, background maintenance
    - Worker pool for execution bodies
    - API-friendly methods for catalog, schedules and executions
    """

    def __init__(
        self,
        store: ExecutionStore,
        locks: LockManager,
        resolver: DependencyResolver,
        statistics: StatisticsAggregator,
        controller: ExecutionController,
        recovery: RecoveryManager,
        registry: RunnerRegistry,
        workers: int = 4,
        maintenance_interval: float = 30.0,
        trigger_source: Optional[CronTriggerSource] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize ExecutionEngine with all components.

        Use ExecutionEngine.create() for convenient construction.
        """
        self.store = store
        self.locks = locks
        self.resolver = resolver
        self.statistics = statistics
        self.controller = controller
        self.recovery = recovery
        self.registry = registry
        self.workers = workers
        self.maintenance_interval = maintenance_interval
        self.trigger_source = trigger_source
        self.clock = clock

        self._pool = self._new_pool()
        self._pool_closed = False
        self._futures: dict[str, Future] = {}
        self._futures_lock = threading.Lock()

        self._maintenance_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._started = False

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="job-worker")

    @classmethod
    def create(
        cls,
        config: EngineConfig,
        registry: Optional[RunnerRegistry] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "ExecutionEngine":
        """
        Create an ExecutionEngine with all components wired together.

        Args:
            config: Engine settings
            registry: Runner registry (empty registry when None)
            notifier: Terminal outcome dispatcher
            clock: Returns the current aware datetime

        Returns:
            Configured ExecutionEngine
        """
        store = ExecutionStore(config.db_path)
        registry = registry or RunnerRegistry()

        locks = LockManager(store, default_ttl=config.lock_ttl, clock=clock)
        resolver = DependencyResolver(store, config.freshness_window, clock=clock)
        statistics = StatisticsAggregator(store, clock=clock)

        controller = ExecutionController(
            store=store,
            locks=locks,
            resolver=resolver,
            registry=registry,
            statistics=statistics,
            notifier=notifier,
            clock=clock,
            lock_ttl=config.lock_ttl,
            contention_retries=config.contention_retries,
            contention_retry_delay=config.contention_retry_delay_seconds,
        )

        recovery = RecoveryManager(
            store=store,
            locks=locks,
            controller=controller,
            max_runtime=config.max_runtime,
            retention=config.retention,
            clock=clock,
        )

        engine = cls(
            store=store,
            locks=locks,
            resolver=resolver,
            statistics=statistics,
            controller=controller,
            recovery=recovery,
            registry=registry,
            workers=config.workers,
            maintenance_interval=config.maintenance_interval_seconds,
            clock=clock,
        )

        if config.enable_triggers:
            engine.trigger_source = CronTriggerSource(
                store,
                engine.trigger_job,
                clock=clock,
                tick_seconds=config.trigger_tick_seconds,
            )

        return engine

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True) -> dict:
        """
        Start background maintenance (and triggers, when configured).

        Returns:
            Recovery statistics if recovery was run
        """
        if self._started:
            raise RuntimeError("Engine already started")

        logger.info("Starting execution engine...")

        # A stopped engine's pool refuses work; restart with a fresh one
        if self._pool_closed:
            self._pool = self._new_pool()
            self._pool_closed = False

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recovery.recover_on_startup()

        self._stop_event.clear()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop, name="engine-maintenance", daemon=True
        )
        self._maintenance_thread.start()

        if self.trigger_source is not None:
            self.trigger_source.start()

        self._started = True
        logger.info(f"Execution engine started ({self.workers} workers)")
        return recovery_stats

    def stop(self, timeout: float = 30.0, cancel_running: bool = False) -> None:
        """
        Stop background threads and the worker pool.

        Args:
            timeout: Maximum wait for background threads
            cancel_running: Cancel in-flight executions instead of waiting
        """
        logger.info("Stopping execution engine...")

        if self.trigger_source is not None:
            self.trigger_source.stop(timeout=timeout)

        self._stop_event.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=timeout)
            if self._maintenance_thread.is_alive():
                logger.warning("Maintenance thread did not stop within timeout")
            self._maintenance_thread = None

        if cancel_running:
            for execution_id in self.controller.in_flight():
                try:
                    self.controller.cancel(execution_id, reason="engine shutdown")
                except ExecutionNotFoundError:
                    continue

        self._pool.shutdown(wait=True)
        self._pool_closed = True
        self._started = False
        logger.info("Execution engine stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    def _maintenance_loop(self) -> None:
        logger.info("Maintenance loop started")

        while not self._stop_event.wait(self.maintenance_interval):
            try:
                stats = self.recovery.sweep()
                if any(v for k, v in stats.items() if k != "errors"):
                    logger.info(f"Maintenance sweep: {stats}")
            except Exception as e:
                logger.error(f"Error in maintenance loop: {e}", exc_info=True)

        logger.info("Maintenance loop ended")

    # =========================================================================
    # Execution Operations
    # =========================================================================

    def trigger_job(
        self,
        job_id: str,
        params: Optional[dict] = None,
        schedule_id: Optional[str] = None,
    ) -> str:
        """
        Admit a job and hand it to the worker pool.

        Returns:
            The new execution id

        Raises:
            RejectedError: Job missing or inactive, or dependency unsatisfied
        """
        execution, job = self.controller.admit(job_id, params, schedule_id)

        try:
            future = self._pool.submit(self.controller.run, execution, job)
        except RuntimeError as e:
            self.controller.fail(execution, e, "submit")
            self.controller.forget(execution.execution_id)
            raise RejectedError("engine is shutting down", job_id=job_id) from e

        with self._futures_lock:
            self._futures[execution.execution_id] = future
        future.add_done_callback(lambda _: self._forget(execution.execution_id))

        return execution.execution_id

    def _forget(self, execution_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(execution_id, None)

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """
        Block until an execution's worker has finished.

        Returns:
            The persisted execution
        """
        with self._futures_lock:
            future = self._futures.get(execution_id)

        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError:
                logger.debug(f"Wait timed out: execution={execution_id}")

        return self.get_execution_status(execution_id)

    def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel a PENDING or RUNNING execution.

        Returns:
            False if it was already terminal

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        return self.controller.cancel(execution_id)

    def cancel_job_executions(self, job_id: str) -> list[str]:
        """Cancel every PENDING or RUNNING execution of a job."""
        if self.store.get_job(job_id) is None:
            raise JobNotFoundError(job_id)

        cancelled = []
        for status in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING):
            for execution in self.store.list_executions(job_id=job_id, status=status, limit=1000):
                if self.controller.cancel(execution.execution_id):
                    cancelled.append(execution.execution_id)

        logger.info(f"Cancelled {len(cancelled)} executions of job {job_id}")
        return cancelled

    def get_execution_status(self, execution_id: str) -> Execution:
        """
        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def list_executions(
        self,
        job_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[Execution]:
        return self.store.list_executions(job_id=job_id, status=status, limit=limit)

    def list_recent_executions(self, hours: int = 24, limit: int = 100) -> list[Execution]:
        since = to_iso(self.clock() - timedelta(hours=hours))
        return self.store.list_executions(since=since, limit=limit)

    def check_dependencies(self, job_id: str) -> DependencyCheck:
        self._require_job(job_id)
        return self.resolver.can_run(job_id)

    # =========================================================================
    # Job Catalog
    # =========================================================================

    def create_job(
        self,
        name: str,
        job_type: str,
        default_params: Optional[dict] = None,
        description: Optional[str] = None,
        active: bool = True,
    ) -> Job:
        now = to_iso(self.clock())
        job = Job.create(
            name=name,
            job_type=job_type,
            default_params=default_params,
            active=active,
            description=description,
        )
        job.created_at = now
        job.updated_at = now
        self.store.create_job(job)
        logger.info(f"Job created: job={job.job_id} name={name} type={job_type}")
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get_job(job_id)

    def _require_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, active: Optional[bool] = None) -> list[Job]:
        return self.store.list_jobs(active=active)

    def update_job(
        self,
        job_id: str,
        name: Optional[str] = None,
        default_params: Optional[dict] = None,
        description: Optional[str] = None,
    ) -> Job:
        """Edit catalog fields; running executions keep their snapshot."""
        return self.store.update_job(
            job_id,
            updated_at=to_iso(self.clock()),
            name=name,
            default_params=default_params,
            description=description,
        )

    def activate_job(self, job_id: str) -> Job:
        """Activate a job and resume its schedule links."""
        job = self.store.set_job_active(job_id, True, to_iso(self.clock()))
        logger.info(f"Job activated: job={job_id}")
        return job

    def deactivate_job(self, job_id: str) -> Job:
        """Deactivate a job and pause its schedule links."""
        job = self.store.set_job_active(job_id, False, to_iso(self.clock()))
        logger.info(f"Job deactivated: job={job_id}")
        return job

    # =========================================================================
    # Dependencies
    # =========================================================================

    def add_dependency(
        self,
        dependent_job_id: str,
        prerequisite_job_id: str,
        dependency_type: DependencyType = DependencyType.BLOCKING,
    ) -> JobDependency:
        return self.resolver.add_dependency(dependent_job_id, prerequisite_job_id, dependency_type)

    def remove_dependency(self, dependent_job_id: str, prerequisite_job_id: str) -> bool:
        return self.resolver.remove_dependency(dependent_job_id, prerequisite_job_id)

    def list_dependencies(self, job_id: str) -> list[JobDependency]:
        self._require_job(job_id)
        return self.resolver.list_prerequisites(job_id)

    # =========================================================================
    # Schedules
    # =========================================================================

    def create_schedule(
        self,
        name: str,
        cron_expression: str,
        timezone: str = "UTC",
        description: Optional[str] = None,
    ) -> Schedule:
        """
        Raises:
            ValueError: Invalid cron expression or unknown timezone
        """
        if not validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")
        if not validate_timezone(timezone):
            raise ValueError(f"Unknown timezone: {timezone}")

        schedule = Schedule.create(
            name=name,
            cron_expression=cron_expression,
            timezone=timezone,
            description=description,
        )
        schedule.created_at = to_iso(self.clock())
        self.store.create_schedule(schedule)
        logger.info(f"Schedule created: schedule={schedule.schedule_id} cron={cron_expression!r}")
        return schedule

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        return self.store.get_schedule(schedule_id)

    def list_schedules(self, job_id: Optional[str] = None) -> list[Schedule]:
        return self.store.list_schedules(job_id=job_id)

    def set_schedule_active(self, schedule_id: str, active: bool) -> Schedule:
        return self.store.set_schedule_active(schedule_id, active)

    def link_schedule(self, job_id: str, schedule_id: str) -> JobSchedule:
        """
        Raises:
            RejectedError: Pair already linked
        """
        link = JobSchedule(job_id=job_id, schedule_id=schedule_id, created_at=to_iso(self.clock()))
        self.store.create_link(link)
        logger.info(f"Schedule linked: job={job_id} schedule={schedule_id}")
        return link

    def unlink_schedule(self, job_id: str, schedule_id: str) -> bool:
        return self.store.delete_link(job_id, schedule_id)

    def set_link_active(self, job_id: str, schedule_id: str, active: bool) -> JobSchedule:
        if not self.store.set_link_active(job_id, schedule_id, active):
            if self.store.get_job(job_id) is None:
                raise JobNotFoundError(job_id)
            if self.store.get_schedule(schedule_id) is None:
                raise ScheduleNotFoundError(schedule_id)
            raise RejectedError(f"job is not linked to schedule {schedule_id}", job_id=job_id)
        return self.store.get_link(job_id, schedule_id)

    def list_links(self, job_id: Optional[str] = None) -> list[JobSchedule]:
        return self.store.list_links(job_id=job_id)

    # =========================================================================
    # Statistics and Health
    # =========================================================================

    def get_daily_statistics(
        self,
        job_id: str,
        since: Optional[date | str] = None,
        until: Optional[date | str] = None,
    ) -> list[DailyStatistics]:
        self._require_job(job_id)
        return self.statistics.list_buckets(job_id, since=since, until=until)

    def backfill_statistics(self, job_id: str, stat_date: date | str) -> Optional[DailyStatistics]:
        self._require_job(job_id)
        return self.statistics.backfill(job_id, stat_date)

    def get_execution_summary(self, job_id: str) -> dict[str, Any]:
        """Counts per status and success rate over all retained executions."""
        self._require_job(job_id)
        counts = self.store.count_executions_by_status(job_id)
        total = sum(counts.values())
        completed = counts[ExecutionStatus.COMPLETED.value]
        failed = counts[ExecutionStatus.FAILED.value]
        finished = completed + failed

        return {
            "job_id": job_id,
            "total": total,
            "pending": counts[ExecutionStatus.PENDING.value],
            "running": counts[ExecutionStatus.RUNNING.value],
            "completed": completed,
            "failed": failed,
            "cancelled": counts[ExecutionStatus.CANCELLED.value],
            "success_rate": (completed / finished * 100) if finished else 0.0,
        }

    def is_job_healthy(self, job_id: str, days: int = 7) -> bool:
        """A job is healthy while under half of its recent executions failed."""
        self._require_job(job_id)
        since = to_iso(self.clock() - timedelta(days=days))
        executions = self.store.list_executions(job_id=job_id, since=since, limit=10000)
        if not executions:
            return True

        failures = sum(1 for e in executions if e.status == ExecutionStatus.FAILED)
        return failures / len(executions) < UNHEALTHY_FAILURE_RATIO

    def get_lock(self, job_id: str) -> Optional[ExecutionLock]:
        return self.locks.get_lock(job_id)
