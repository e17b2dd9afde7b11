"""
Execution Core Test Fixtures.

Base fixtures:
  - Empty database (temporary SQLite file)
  - Mocked clock at fixed time
  - Controllable runners

Per-test fixtures:
  - Job / execution factories
  - Fully wired controller and engine
"""

import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest

from src.engine import (
    CancellationToken,
    DependencyResolver,
    Execution,
    ExecutionCancelledError,
    ExecutionController,
    ExecutionEngine,
    ExecutionStatus,
    ExecutionStore,
    Job,
    JobRunner,
    LockManager,
    RecoveryManager,
    RunnerRegistry,
    StatisticsAggregator,
)
from src.engine.entities import to_iso


FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

LOCK_TTL = timedelta(hours=1)
FRESHNESS_WINDOW = timedelta(hours=24)
MAX_RUNTIME = timedelta(minutes=30)
RETENTION = timedelta(days=30)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed aware UTC datetime
    - Advances only when explicitly ticked
    - Callable, so it can be passed wherever a clock is expected
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        return self.now()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def now_iso(self) -> str:
        return to_iso(self.now())

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        with self._lock:
            self._current += timedelta(seconds=seconds)

    def set(self, value: datetime) -> None:
        with self._lock:
            self._current = value


class RecordingRunner(JobRunner):
    """
    Runner that records calls and returns (or raises) a configured outcome.
    """

    def __init__(self, result: Any = None, error: Optional[BaseException] = None):
        self.result = result if result is not None else {"ok": True}
        self.error = error
        self.calls: list[tuple[Job, dict]] = []

    def run(self, job: Job, parameters: dict, token: CancellationToken) -> Any:
        self.calls.append((job, parameters))
        if self.error is not None:
            raise self.error
        return self.result


class BlockingRunner(JobRunner):
    """
    Runner that blocks until released.

    cooperative=True: raises ExecutionCancelledError as soon as the token fires.
    cooperative=False: ignores the token and returns when released.
    """

    def __init__(self, cooperative: bool = True, result: Any = None):
        self.cooperative = cooperative
        self.result = result if result is not None else {"late": True}
        self.started = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()
        self.observed_cancel = False

    def run(self, job: Job, parameters: dict, token: CancellationToken) -> Any:
        self.started.set()
        try:
            while not self.release.is_set():
                if self.cooperative and token.wait(0.01):
                    self.observed_cancel = True
                    raise ExecutionCancelledError(token.execution_id)
                time.sleep(0.01)
            return self.result
        finally:
            self.finished.set()


class ConcurrencyProbeRunner(JobRunner):
    """Tracks how many bodies run at the same time."""

    def __init__(self, hold_seconds: float = 0.05):
        self.hold_seconds = hold_seconds
        self.current = 0
        self.max_seen = 0
        self.runs = 0
        self._lock = threading.Lock()

    def run(self, job: Job, parameters: dict, token: CancellationToken) -> Any:
        with self._lock:
            self.current += 1
            self.runs += 1
            self.max_seen = max(self.max_seen, self.current)
        try:
            time.sleep(self.hold_seconds)
            return {"n": parameters.get("n")}
        finally:
            with self._lock:
                self.current -= 1


class RecordingNotifier:
    """Notification dispatcher that keeps every call."""

    def __init__(self):
        self.calls: list[tuple[str, ExecutionStatus]] = []
        self._lock = threading.Lock()

    def notify(self, execution: Execution, status: ExecutionStatus) -> None:
        with self._lock:
            self.calls.append((execution.execution_id, status))


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    Path(db_path).unlink(missing_ok=True)
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def store(temp_db_path: str) -> ExecutionStore:
    """Create a fresh ExecutionStore with empty database."""
    return ExecutionStore(temp_db_path)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock()


@pytest.fixture
def locks(store: ExecutionStore, mock_clock: MockClock) -> LockManager:
    return LockManager(store, default_ttl=LOCK_TTL, clock=mock_clock)


@pytest.fixture
def resolver(store: ExecutionStore, mock_clock: MockClock) -> DependencyResolver:
    return DependencyResolver(store, FRESHNESS_WINDOW, clock=mock_clock)


@pytest.fixture
def statistics(store: ExecutionStore, mock_clock: MockClock) -> StatisticsAggregator:
    return StatisticsAggregator(store, clock=mock_clock)


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def registry(runner: RecordingRunner) -> RunnerRegistry:
    registry = RunnerRegistry()
    registry.register("test", runner)
    return registry


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def controller(
    store: ExecutionStore,
    locks: LockManager,
    resolver: DependencyResolver,
    registry: RunnerRegistry,
    statistics: StatisticsAggregator,
    notifier: RecordingNotifier,
    mock_clock: MockClock,
) -> ExecutionController:
    return ExecutionController(
        store=store,
        locks=locks,
        resolver=resolver,
        registry=registry,
        statistics=statistics,
        notifier=notifier,
        clock=mock_clock,
        lock_ttl=LOCK_TTL,
        contention_retries=1,
        contention_retry_delay=0.01,
    )


@pytest.fixture
def recovery_manager(
    store: ExecutionStore,
    locks: LockManager,
    controller: ExecutionController,
    mock_clock: MockClock,
) -> RecoveryManager:
    return RecoveryManager(
        store=store,
        locks=locks,
        controller=controller,
        max_runtime=MAX_RUNTIME,
        retention=RETENTION,
        clock=mock_clock,
    )


@pytest.fixture
def engine(
    store: ExecutionStore,
    locks: LockManager,
    resolver: DependencyResolver,
    statistics: StatisticsAggregator,
    controller: ExecutionController,
    recovery_manager: RecoveryManager,
    registry: RunnerRegistry,
    mock_clock: MockClock,
) -> Generator[ExecutionEngine, None, None]:
    """Engine without background threads; tests drive it directly."""
    engine = ExecutionEngine(
        store=store,
        locks=locks,
        resolver=resolver,
        statistics=statistics,
        controller=controller,
        recovery=recovery_manager,
        registry=registry,
        workers=8,
        maintenance_interval=60.0,
        clock=mock_clock,
    )
    yield engine
    engine.stop(timeout=5.0, cancel_running=True)


# =============================================================================
# Factory Fixtures
# =============================================================================


@pytest.fixture
def create_job(store: ExecutionStore, mock_clock: MockClock) -> Callable:
    """
    Factory fixture for creating jobs.

    Returns a function that creates jobs with specified parameters.
    """

    def _create(
        name: str = "test-job",
        job_type: str = "test",
        default_params: Optional[dict] = None,
        active: bool = True,
    ) -> Job:
        job = Job.create(
            name=name,
            job_type=job_type,
            default_params=default_params or {},
            active=active,
        )
        job.created_at = job.updated_at = mock_clock.now_iso()
        return store.create_job(job)

    return _create


@pytest.fixture
def create_execution(store: ExecutionStore, mock_clock: MockClock) -> Callable:
    """
    Factory fixture for execution records in any state.

    Terminal records get start/end times `duration_ms` apart, ending at
    `ended_at` (defaults to the mock clock).
    """

    def _create(
        job_id: str,
        status: ExecutionStatus = ExecutionStatus.PENDING,
        ended_at: Optional[datetime] = None,
        duration_ms: Optional[int] = 1000,
        parameters: Optional[dict] = None,
    ) -> Execution:
        execution = Execution.create(
            job_id=job_id,
            parameters=parameters or {},
            created_at=mock_clock.now_iso(),
        )
        execution.status = status

        if status.is_terminal:
            end = ended_at or mock_clock.now()
            execution.end_time = to_iso(end)
            if duration_ms is not None:
                execution.start_time = to_iso(end - timedelta(milliseconds=duration_ms))
                execution.duration_ms = duration_ms
            execution.created_at = execution.start_time or execution.end_time
        elif status == ExecutionStatus.RUNNING:
            execution.start_time = mock_clock.now_iso()

        return store.create_execution(execution)

    return _create


# =============================================================================
# Assertion Helpers
# =============================================================================


def assert_execution_status(store: ExecutionStore, execution_id: str, expected: ExecutionStatus):
    """Assert an execution has the expected status."""
    execution = store.get_execution(execution_id)
    assert execution is not None, f"Execution {execution_id} not found"
    assert execution.status == expected, f"Expected {expected}, got {execution.status}"


def assert_lock_free(store: ExecutionStore, job_id: str):
    """Assert no lock row exists for the job."""
    lock = store.get_lock(job_id)
    assert lock is None, f"Lock still held by {lock.holder}"
