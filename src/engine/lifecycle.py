"""
Execution Lifecycle Controller.

Owns every state change of an Execution:

    PENDING -> RUNNING -> COMPLETED | FAILED
    PENDING | RUNNING -> CANCELLED

Terminal states are immutable; each transition is a conditional update at
the storage layer, so a second complete/fail/cancel raises
InvalidTransitionError instead of overwriting.

Lock discipline:
- The lock is claimed together with PENDING -> RUNNING
- Terminal transitions release it in the same transaction
- run() releases it in `finally` only if the terminal transition itself
  never happened, so each RUNNING execution releases exactly once
"""

import logging
import threading
import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from .dependencies import DependencyResolver
from .entities import (
    Execution,
    ExecutionStatus,
    Job,
    parse_iso,
    to_iso,
    utcnow,
)
from .errors import (
    EngineError,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    LockContentionError,
    RejectedError,
    RunnerNotFoundError,
    StorageError,
)
from .locks import LockManager
from .persistence import ExecutionStore
from .runners import CancellationToken, RunnerRegistry
from .statistics import StatisticsAggregator


logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    """Receives terminal outcomes. Fire-and-forget; failures are logged only."""

    def notify(self, execution: Execution, status: ExecutionStatus) -> None:
        ...


class ExecutionController:
    """
    Drives executions through their lifecycle.

    - admit(): synchronous gate (catalog + dependencies), creates PENDING
    - run(): worker body (start, invoke runner, record outcome)
    - cancel(): cooperative cancellation from any thread
    """

    def __init__(
        self,
        store: ExecutionStore,
        locks: LockManager,
        resolver: DependencyResolver,
        registry: RunnerRegistry,
        statistics: StatisticsAggregator,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
        lock_ttl: Optional[timedelta] = None,
        contention_retries: int = 1,
        contention_retry_delay: float = 5.0,
    ):
        """
        Initialize ExecutionController.

        Args:
            store: ExecutionStore for execution records
            locks: LockManager guarding per-job exclusivity
            resolver: DependencyResolver gate used at admission
            registry: RunnerRegistry resolving job_type -> runner
            statistics: StatisticsAggregator fed with terminal outcomes
            notifier: Optional NotificationDispatcher for terminal outcomes
            clock: Returns the current aware datetime (injectable for tests)
            lock_ttl: Lock lease length; LockManager default when None
            contention_retries: Extra start attempts when the lock is busy
            contention_retry_delay: Seconds between those attempts
        """
        self.store = store
        self.locks = locks
        self.resolver = resolver
        self.registry = registry
        self.statistics = statistics
        self.notifier = notifier
        self.clock = clock
        self.lock_ttl = lock_ttl
        self.contention_retries = contention_retries
        self.contention_retry_delay = contention_retry_delay

        self._tokens: dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    # =========================================================================
    # Cancellation Tokens
    # =========================================================================

    def _register_token(self, execution_id: str) -> CancellationToken:
        with self._tokens_lock:
            token = self._tokens.get(execution_id)
            if token is None:
                token = CancellationToken(execution_id)
                self._tokens[execution_id] = token
            return token

    def _unregister_token(self, execution_id: str) -> None:
        with self._tokens_lock:
            self._tokens.pop(execution_id, None)

    def _signal_token(self, execution_id: str) -> bool:
        with self._tokens_lock:
            token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel()
        return True

    def forget(self, execution_id: str) -> None:
        """Drop the token of an admitted execution that will never reach run()."""
        self._unregister_token(execution_id)

    def in_flight(self) -> list[str]:
        """Execution ids admitted in this process and not yet finished."""
        with self._tokens_lock:
            return list(self._tokens)

    # =========================================================================
    # Transitions
    # =========================================================================

    def admit(
        self,
        job_id: str,
        params: Optional[dict] = None,
        schedule_id: Optional[str] = None,
    ) -> tuple[Execution, Job]:
        """
        Gate a trigger and create its PENDING execution.

        Returns:
            (PENDING execution, job snapshot handed to the runner)

        Raises:
            RejectedError: Job missing or inactive, schedule unknown, or
                dependency unsatisfied.
                No execution record is created.
        """
        job = self.store.get_job(job_id)
        if job is None:
            self._reject("job not found", job_id)
        if not job.active:
            self._reject("job is inactive", job_id)
        if schedule_id is not None and self.store.get_schedule(schedule_id) is None:
            self._reject("schedule not found", job_id)

        check = self.resolver.can_run(job_id)
        if not check.allowed:
            self._reject(f"dependency unsatisfied: {check.blocking_reason}", job_id)

        parameters = {**job.default_params, **(params or {})}
        execution = Execution.create(
            job_id=job_id,
            parameters=parameters,
            schedule_id=schedule_id,
            created_at=to_iso(self.clock()),
        )
        self.store.create_execution(execution)
        self._register_token(execution.execution_id)

        logger.info(
            f"Execution admitted: job={job_id} execution={execution.execution_id} "
            f"schedule={schedule_id}"
        )
        return execution, job

    def _reject(self, reason: str, job_id: str) -> None:
        logger.warning(f"Trigger rejected: job={job_id} reason={reason}")
        raise RejectedError(reason, job_id=job_id)

    def start(self, execution: Execution) -> Execution:
        """
        Claim the job lock and move PENDING -> RUNNING.

        Raises:
            LockContentionError: Another live holder owns the lock
            InvalidTransitionError: Execution is no longer PENDING
        """
        running = self.locks.claim(execution, self.lock_ttl)
        logger.info(
            f"Execution started: job={running.job_id} execution={running.execution_id}"
        )
        return running

    def complete(self, execution: Execution, result: Any = None) -> Execution:
        """
        RUNNING -> COMPLETED with end time, duration and result.

        Raises:
            InvalidTransitionError: Execution is not RUNNING
        """
        end = self.clock()
        updated, released = self.store.finish_execution(
            execution.execution_id,
            ExecutionStatus.COMPLETED,
            (ExecutionStatus.RUNNING,),
            end_time=to_iso(end),
            duration_ms=self._duration_ms(execution, end),
            result=result,
        )
        logger.info(
            f"Execution completed: job={updated.job_id} execution={updated.execution_id} "
            f"duration_ms={updated.duration_ms}"
        )
        self._after_terminal(updated, released)
        return updated

    def fail(
        self,
        execution: Execution,
        error: BaseException | str,
        phase: str,
    ) -> Execution:
        """
        RUNNING (or PENDING, when a precondition threw) -> FAILED.

        Raises:
            InvalidTransitionError: Execution is already terminal
        """
        end = self.clock()
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            stack_trace = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        else:
            message = error
            stack_trace = None

        updated, released = self.store.finish_execution(
            execution.execution_id,
            ExecutionStatus.FAILED,
            (ExecutionStatus.RUNNING, ExecutionStatus.PENDING),
            end_time=to_iso(end),
            duration_ms=self._duration_ms(execution, end),
            error_message=message,
            error_phase=phase,
            stack_trace=stack_trace,
        )
        logger.error(
            f"Execution failed: job={updated.job_id} execution={updated.execution_id} "
            f"phase={phase} error={message}"
        )
        self._after_terminal(updated, released)
        return updated

    def cancel(
        self,
        execution_id: str,
        reason: str = "cancelled by request",
        phase: str = "cancel",
    ) -> bool:
        """
        PENDING | RUNNING -> CANCELLED, then signal the runner's token.

        The record and lock are settled before the runner is told to stop;
        a runner that finishes afterwards has its result discarded.

        Returns:
            False if the execution was already terminal

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.is_terminal():
            return False

        end = self.clock()
        try:
            updated, released = self.store.finish_execution(
                execution_id,
                ExecutionStatus.CANCELLED,
                (ExecutionStatus.PENDING, ExecutionStatus.RUNNING),
                end_time=to_iso(end),
                duration_ms=self._duration_ms(execution, end),
                error_message=reason,
                error_phase=phase,
            )
        except InvalidTransitionError:
            logger.info(f"Cancel lost race to terminal state: execution={execution_id}")
            return False

        signalled = self._signal_token(execution_id)
        logger.info(
            f"Execution cancelled: job={updated.job_id} execution={execution_id} "
            f"reason={reason} runner_signalled={signalled}"
        )
        self._after_terminal(updated, released)
        return True

    def _duration_ms(self, execution: Execution, end: datetime) -> Optional[int]:
        start_time = execution.start_time
        if start_time is None:
            current = self.store.get_execution(execution.execution_id)
            start_time = current.start_time if current else None
        if start_time is None:
            return None
        elapsed = end - parse_iso(start_time)
        return max(0, int(elapsed.total_seconds() * 1000))

    def _after_terminal(self, execution: Execution, released: bool) -> None:
        """Bookkeeping after a terminal transition committed."""
        if released:
            self.locks.record_release(execution.job_id, execution.execution_id)

        try:
            self.statistics.record_execution(execution)
        except EngineError as e:
            logger.error(
                f"Statistics update failed: job={execution.job_id} "
                f"execution={execution.execution_id} error={e}"
            )

        if self.notifier is not None:
            try:
                self.notifier.notify(execution, execution.status)
            except Exception as e:
                logger.error(
                    f"Notification failed: execution={execution.execution_id} error={e}"
                )

    # =========================================================================
    # Worker Body
    # =========================================================================

    def run(self, execution: Execution, job: Job) -> Execution:
        """
        Execute one admitted execution to a terminal state.

        Runs on a worker thread. Never raises for job-level failures; they
        are recorded on the execution.

        Returns:
            The execution as last persisted
        """
        execution_id = execution.execution_id
        token = self._register_token(execution_id)

        try:
            try:
                runner = self.registry.get(job.job_type)
            except RunnerNotFoundError as e:
                return self._fail_quietly(execution, e, "resolve")

            running = self._start_with_contention_policy(execution, token)
            if running is None:
                return self._latest(execution)

            try:
                result = runner.run(job, dict(running.parameters), token)
            except ExecutionCancelledError:
                logger.info(f"Runner observed cancellation: execution={execution_id}")
                if not self._latest(running).is_terminal():
                    self.cancel(execution_id, reason="cancelled by runner", phase="run")
                return self._latest(running)
            except Exception as e:
                logger.error(
                    f"Runner raised: job={job.job_id} execution={execution_id} error={e}",
                    exc_info=True,
                )
                return self._fail_quietly(running, e, "run")

            if token.is_cancelled():
                logger.warning(
                    f"Late runner result discarded: job={job.job_id} execution={execution_id}"
                )
                return self._latest(running)

            try:
                return self.complete(running, result)
            except InvalidTransitionError as e:
                logger.warning(f"Runner result discarded: {e}")
                return self._latest(running)

        except StorageError as e:
            logger.error(
                f"Storage failure: job={job.job_id} execution={execution_id} error={e}",
                exc_info=True,
            )
            return self._fail_quietly(execution, e, "storage")

        finally:
            self._release_leftover_lock(execution)
            self._unregister_token(execution_id)

    def _start_with_contention_policy(
        self,
        execution: Execution,
        token: CancellationToken,
    ) -> Optional[Execution]:
        """
        Start, re-queueing on contention `contention_retries` times.

        Returns:
            RUNNING execution, or None if it ended before starting
        """
        attempts = self.contention_retries + 1

        for attempt in range(1, attempts + 1):
            if token.is_cancelled():
                return None

            try:
                return self.start(execution)
            except LockContentionError as e:
                if attempt < attempts:
                    logger.info(
                        f"Lock busy: job={execution.job_id} execution={execution.execution_id} "
                        f"retry {attempt}/{self.contention_retries} in "
                        f"{self.contention_retry_delay}s"
                    )
                    if token.wait(self.contention_retry_delay):
                        return None
                    continue

                self._fail_quietly(execution, e, "start")
                return None
            except InvalidTransitionError as e:
                logger.info(f"Execution ended before start: {e}")
                return None

        return None

    def _fail_quietly(self, execution: Execution, error: BaseException, phase: str) -> Execution:
        """fail() that tolerates a concurrent terminal transition."""
        try:
            return self.fail(execution, error, phase)
        except InvalidTransitionError as e:
            logger.info(f"Failure not recorded, already terminal: {e}")
        except EngineError as e:
            logger.error(
                f"Could not record failure: execution={execution.execution_id} error={e}"
            )
        return self._latest(execution)

    def _latest(self, execution: Execution) -> Execution:
        try:
            current = self.store.get_execution(execution.execution_id)
        except EngineError as e:
            logger.error(f"Could not reload execution {execution.execution_id}: {e}")
            return execution
        return current or execution

    def _release_leftover_lock(self, execution: Execution) -> None:
        try:
            if self.locks.release(execution.job_id, execution.execution_id):
                logger.warning(
                    f"Lock released in cleanup: job={execution.job_id} "
                    f"execution={execution.execution_id}"
                )
        except EngineError as e:
            logger.error(
                f"Lock cleanup failed: job={execution.job_id} "
                f"execution={execution.execution_id} error={e}"
            )

    # =========================================================================
    # Timeouts
    # =========================================================================

    def enforce_timeouts(self, max_runtime: timedelta) -> list[str]:
        """
        Cancel RUNNING executions older than max_runtime.

        Returns:
            Ids of the executions that were cancelled
        """
        cutoff = to_iso(self.clock() - max_runtime)
        cancelled = []

        for execution in self.store.list_running_executions(started_before=cutoff):
            seconds = int(max_runtime.total_seconds())
            if self.cancel(
                execution.execution_id,
                reason=f"exceeded max runtime of {seconds}s",
                phase="timeout",
            ):
                cancelled.append(execution.execution_id)

        if cancelled:
            logger.warning(f"Timed out {len(cancelled)} executions: {cancelled}")
        return cancelled
