"""
Execution Core Module.

Components:
- ExecutionStore: SQLite persistence with transactional invariants
- LockManager: one live execution lock per job
- DependencyResolver: freshness-window gate over BLOCKING prerequisites
- ExecutionController: PENDING -> RUNNING -> terminal lifecycle
- StatisticsAggregator: idempotent daily rollups
- ExecutionEngine: wiring, worker pool and public operations
"""

from .entities import (
    ExecutionStatus,
    DependencyType,
    Job,
    Schedule,
    JobSchedule,
    JobDependency,
    Execution,
    ExecutionLock,
    DailyStatistics,
    DependencyCheck,
)
from .errors import (
    EngineError,
    RejectedError,
    DependencyCycleError,
    JobNotFoundError,
    ScheduleNotFoundError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    LockContentionError,
    StorageError,
    RunnerFailure,
    RunnerNotFoundError,
    ExecutionCancelledError,
)
from .persistence import ExecutionStore
from .locks import LockManager, LockEvent
from .dependencies import DependencyResolver
from .statistics import StatisticsAggregator
from .runners import (
    CancellationToken,
    JobRunner,
    CallableRunner,
    CommandRunner,
    RunnerRegistry,
)
from .lifecycle import ExecutionController, NotificationDispatcher
from .recovery import RecoveryManager
from .triggers import CronTriggerSource, validate_cron_expression
from .service import ExecutionEngine

__all__ = [
    # Entities
    "ExecutionStatus",
    "DependencyType",
    "Job",
    "Schedule",
    "JobSchedule",
    "JobDependency",
    "Execution",
    "ExecutionLock",
    "DailyStatistics",
    "DependencyCheck",
    # Errors
    "EngineError",
    "RejectedError",
    "DependencyCycleError",
    "JobNotFoundError",
    "ScheduleNotFoundError",
    "ExecutionNotFoundError",
    "InvalidTransitionError",
    "LockContentionError",
    "StorageError",
    "RunnerFailure",
    "RunnerNotFoundError",
    "ExecutionCancelledError",
    # Components
    "ExecutionStore",
    "LockManager",
    "LockEvent",
    "DependencyResolver",
    "StatisticsAggregator",
    "CancellationToken",
    "JobRunner",
    "CallableRunner",
    "CommandRunner",
    "RunnerRegistry",
    "ExecutionController",
    "NotificationDispatcher",
    "RecoveryManager",
    "CronTriggerSource",
    "validate_cron_expression",
    "ExecutionEngine",
]
