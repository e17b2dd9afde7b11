"""
Execution Core Domain Entities.

- Job: catalog entry naming a runner key and default parameters
- Schedule / JobSchedule: recurrence rule and its activatable link to a Job
- JobDependency: directed edge dependent -> prerequisite
- Execution: one attempt to run a Job
- ExecutionLock: time-bounded exclusive execution right for one Job
- DailyStatistics: per (job, date) counters

Timestamps are stored as fixed-width UTC ISO strings so that SQLite can
compare them lexicographically.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid


ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class ExecutionStatus(str, Enum):
    """
    Execution lifecycle states.

    PENDING and RUNNING are the only non-terminal states.
    COMPLETED, FAILED and CANCELLED are terminal and immutable.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class DependencyType(str, Enum):
    """
    Dependency edge types.

    - BLOCKING: prerequisite must have a fresh success before the dependent runs
    - NON_BLOCKING: informational ordering only, never gates execution
    """

    BLOCKING = "BLOCKING"
    NON_BLOCKING = "NON_BLOCKING"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Get current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO string (naive = UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by to_iso() (or any ISO string) as aware UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def now_iso() -> str:
    """Get current time as a fixed-width UTC ISO string."""
    return to_iso(utcnow())


@dataclass
class Job:
    """
    Catalog entry for a runnable job.

    `job_type` is the opaque key resolved by the RunnerRegistry.
    A running execution holds its own snapshot, so edits here only affect
    future executions.
    """

    job_id: str
    name: str
    job_type: str
    default_params: dict = field(default_factory=dict)
    active: bool = True
    description: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def create(
        cls,
        name: str,
        job_type: str,
        default_params: Optional[dict] = None,
        active: bool = True,
        description: Optional[str] = None,
    ) -> "Job":
        """Create a new Job with generated ID."""
        return cls(
            job_id=generate_uuid(),
            name=name,
            job_type=job_type,
            default_params=default_params or {},
            active=active,
            description=description,
        )


@dataclass
class Schedule:
    """Recurrence rule (cron expression evaluated in `timezone`)."""

    schedule_id: str
    name: str
    cron_expression: str
    timezone: str = "UTC"
    active: bool = True
    description: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def create(
        cls,
        name: str,
        cron_expression: str,
        timezone: str = "UTC",
        active: bool = True,
        description: Optional[str] = None,
    ) -> "Schedule":
        """Create a new Schedule with generated ID."""
        return cls(
            schedule_id=generate_uuid(),
            name=name,
            cron_expression=cron_expression,
            timezone=timezone,
            active=active,
            description=description,
        )


@dataclass
class JobSchedule:
    """Many-to-many link between a Job and a Schedule. Unique per pair."""

    job_id: str
    schedule_id: str
    active: bool = True
    last_triggered_at: Optional[str] = None
    created_at: str = field(default_factory=now_iso)


@dataclass
class JobDependency:
    """Directed edge: `dependent_job_id` depends on `prerequisite_job_id`."""

    dependent_job_id: str
    prerequisite_job_id: str
    dependency_type: DependencyType = DependencyType.BLOCKING
    created_at: str = field(default_factory=now_iso)


@dataclass
class Execution:
    """
    One attempt to run a Job.

    Created PENDING and mutated only by the ExecutionController.
    `parameters` is the snapshot handed to the runner; it never changes.
    """

    execution_id: str
    job_id: str
    status: ExecutionStatus
    parameters: dict
    schedule_id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: Optional[int] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None
    error_phase: Optional[str] = None
    stack_trace: Optional[str] = None

    @classmethod
    def create(
        cls,
        job_id: str,
        parameters: dict,
        schedule_id: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> "Execution":
        """Create a new PENDING Execution with generated ID."""
        return cls(
            execution_id=generate_uuid(),
            job_id=job_id,
            status=ExecutionStatus.PENDING,
            parameters=parameters,
            schedule_id=schedule_id,
            created_at=created_at or now_iso(),
        )

    def is_terminal(self) -> bool:
        """Check if execution is in a terminal state."""
        return self.status.is_terminal


@dataclass
class ExecutionLock:
    """
    Exclusive execution lease for one job.

    A lock is live iff now < expires_at; expired rows are inert.
    """

    job_id: str
    holder: str
    acquired_at: str
    expires_at: str

    def is_live(self, now: datetime) -> bool:
        return to_iso(now) < self.expires_at


@dataclass
class DailyStatistics:
    """Per (job, calendar date) execution counters."""

    job_id: str
    stat_date: str
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_duration_ms: int = 0
    timed_executions: int = 0
    avg_duration_ms: int = 0
    min_duration_ms: Optional[int] = None
    max_duration_ms: Optional[int] = None
    updated_at: Optional[str] = None

    @property
    def success_rate(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.successful_executions / self.total_executions * 100


@dataclass(frozen=True)
class DependencyCheck:
    """Outcome of the dependency gate."""

    allowed: bool
    blocking_reason: Optional[str] = None
