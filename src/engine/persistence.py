"""
Execution Store for the execution core.

SQLite-backed storage for every record the engine touches:
- Job catalog, schedules and job/schedule links
- Dependency edges (acyclic, checked at insert time)
- Executions and their lifecycle transitions
- Execution locks (one row per job, conditional upsert on acquire)
- Daily statistics and the dedup ledger behind them

Multi-record invariants are enforced inside single write transactions
(BEGIN IMMEDIATE), never by check-then-act across transactions:
- A lock is only granted together with the PENDING -> RUNNING transition
- Terminal transitions release the execution's lock in the same transaction
- Statistics are folded at most once per execution id
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .entities import (
    DailyStatistics,
    DependencyType,
    Execution,
    ExecutionLock,
    ExecutionStatus,
    Job,
    JobDependency,
    JobSchedule,
    Schedule,
    TERMINAL_STATUSES,
)
from .errors import (
    DependencyCycleError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    LockContentionError,
    RejectedError,
    ScheduleNotFoundError,
    StorageError,
)


# Seconds a connection waits on a locked database before failing
BUSY_TIMEOUT_SECONDS = 30.0

_TERMINAL_VALUES = tuple(sorted(s.value for s in TERMINAL_STATUSES))

_REACHABLE_SQL = """
    WITH RECURSIVE reachable(job_id) AS (
        SELECT ?
        UNION
        SELECT d.prerequisite_job_id
        FROM job_dependencies d
        JOIN reachable r ON d.dependent_job_id = r.job_id
    )
    SELECT 1 FROM reachable WHERE job_id = ? LIMIT 1
"""


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load_json(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class ExecutionStore:
    """
    SQLite-based persistence for all execution-core entities.

    - Does NOT contain lifecycle policy (ExecutionController's job)
    - Does enforce storage-level invariants atomically
    - Wraps sqlite3 errors in StorageError
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = BUSY_TIMEOUT_SECONDS):
        """
        Initialize the store and create the schema if needed.

        Args:
            db_path: Path to SQLite database file. Every component opens its
                own connections, so an on-disk file is required.
            busy_timeout: Seconds to wait for a competing writer
        """
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get an autocommit connection with WAL mode enabled."""
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise StorageError("connect", e) from e
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only access."""
        conn = self._get_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError("read", e) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for an IMMEDIATE write transaction."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(conn)
            raise StorageError("write", e) from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    default_params TEXT NOT NULL DEFAULT '{}',
                    active INTEGER NOT NULL DEFAULT 1,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schedules (
                    schedule_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    cron_expression TEXT NOT NULL,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    active INTEGER NOT NULL DEFAULT 1,
                    description TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_schedules (
                    job_id TEXT NOT NULL,
                    schedule_id TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    last_triggered_at TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (job_id, schedule_id),
                    FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE,
                    FOREIGN KEY (schedule_id) REFERENCES schedules(schedule_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_dependencies (
                    dependent_job_id TEXT NOT NULL,
                    prerequisite_job_id TEXT NOT NULL,
                    dependency_type TEXT NOT NULL DEFAULT 'BLOCKING',
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (dependent_job_id, prerequisite_job_id),
                    FOREIGN KEY (dependent_job_id) REFERENCES jobs(job_id) ON DELETE CASCADE,
                    FOREIGN KEY (prerequisite_job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_job_dependencies_prerequisite
                ON job_dependencies (prerequisite_job_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    execution_id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    schedule_id TEXT,
                    status TEXT NOT NULL,
                    parameters TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    start_time TEXT,
                    end_time TEXT,
                    duration_ms INTEGER,
                    result TEXT,
                    error_message TEXT,
                    error_phase TEXT,
                    stack_trace TEXT,
                    FOREIGN KEY (job_id) REFERENCES jobs(job_id),
                    FOREIGN KEY (schedule_id) REFERENCES schedules(schedule_id)
                )
            """)

            # Index for "latest terminal execution within window"
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_job_end
                ON executions (job_id, status, end_time)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_status
                ON executions (status)
            """)

            # job_id as PRIMARY KEY: at most one lock row per job
            conn.execute("""
                CREATE TABLE IF NOT EXISTS execution_locks (
                    job_id TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_execution_locks_expires
                ON execution_locks (expires_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_statistics (
                    job_id TEXT NOT NULL,
                    stat_date TEXT NOT NULL,
                    total_executions INTEGER NOT NULL DEFAULT 0,
                    successful_executions INTEGER NOT NULL DEFAULT 0,
                    failed_executions INTEGER NOT NULL DEFAULT 0,
                    total_duration_ms INTEGER NOT NULL DEFAULT 0,
                    timed_executions INTEGER NOT NULL DEFAULT 0,
                    avg_duration_ms INTEGER NOT NULL DEFAULT 0,
                    min_duration_ms INTEGER,
                    max_duration_ms INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (job_id, stat_date),
                    FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS statistics_ledger (
                    execution_id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    stat_date TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_statistics_ledger_bucket
                ON statistics_ledger (job_id, stat_date)
            """)

    # =========================================================================
    # Job Catalog
    # =========================================================================

    def create_job(self, job: Job) -> Job:
        """Create a new job."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs
                (job_id, name, job_type, default_params, active, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.name,
                    job.job_type,
                    json.dumps(job.default_params),
                    1 if job.active else 0,
                    job.description,
                    job.created_at,
                    job.updated_at,
                ),
            )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_job(row)

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            name=row["name"],
            job_type=row["job_type"],
            default_params=json.loads(row["default_params"]),
            active=bool(row["active"]),
            description=row["description"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_jobs(self, active: Optional[bool] = None) -> list[Job]:
        """List jobs, optionally filtered by active flag."""
        query = "SELECT * FROM jobs"
        values: list[Any] = []
        if active is not None:
            query += " WHERE active = ?"
            values.append(1 if active else 0)
        query += " ORDER BY created_at DESC"

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [self._row_to_job(row) for row in rows]

    def update_job(
        self,
        job_id: str,
        updated_at: str,
        name: Optional[str] = None,
        default_params: Optional[dict] = None,
        description: Optional[str] = None,
    ) -> Job:
        """
        Update catalog fields of a job.

        Running executions keep their own parameter snapshot.
        """
        updates = ["updated_at = ?"]
        values: list[Any] = [updated_at]

        if name is not None:
            updates.append("name = ?")
            values.append(name)
        if default_params is not None:
            updates.append("default_params = ?")
            values.append(json.dumps(default_params))
        if description is not None:
            updates.append("description = ?")
            values.append(description)

        values.append(job_id)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(updates)} WHERE job_id = ?",
                values,
            )
            if cursor.rowcount == 0:
                raise JobNotFoundError(job_id)

        return self.get_job(job_id)

    def set_job_active(self, job_id: str, active: bool, updated_at: str) -> Job:
        """
        Activate or deactivate a job together with all of its schedule links.

        Deactivation pauses scheduled triggering; activation resumes it.
        """
        flag = 1 if active else 0
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET active = ?, updated_at = ? WHERE job_id = ?",
                (flag, updated_at, job_id),
            )
            if cursor.rowcount == 0:
                raise JobNotFoundError(job_id)

            conn.execute(
                "UPDATE job_schedules SET active = ? WHERE job_id = ?",
                (flag, job_id),
            )

        return self.get_job(job_id)

    # =========================================================================
    # Schedules and Links
    # =========================================================================

    def create_schedule(self, schedule: Schedule) -> Schedule:
        """Create a new schedule."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO schedules
                (schedule_id, name, cron_expression, timezone, active, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    schedule.schedule_id,
                    schedule.name,
                    schedule.cron_expression,
                    schedule.timezone,
                    1 if schedule.active else 0,
                    schedule.description,
                    schedule.created_at,
                ),
            )
        return schedule

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        """Get a schedule by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM schedules WHERE schedule_id = ?",
                (schedule_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_schedule(row)

    def _row_to_schedule(self, row: sqlite3.Row) -> Schedule:
        return Schedule(
            schedule_id=row["schedule_id"],
            name=row["name"],
            cron_expression=row["cron_expression"],
            timezone=row["timezone"],
            active=bool(row["active"]),
            description=row["description"],
            created_at=row["created_at"],
        )

    def list_schedules(self, job_id: Optional[str] = None) -> list[Schedule]:
        """List schedules, optionally only those linked to a job."""
        with self._connection() as conn:
            if job_id is None:
                rows = conn.execute(
                    "SELECT * FROM schedules ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT s.* FROM schedules s
                    JOIN job_schedules l ON l.schedule_id = s.schedule_id
                    WHERE l.job_id = ?
                    ORDER BY s.created_at DESC
                    """,
                    (job_id,),
                ).fetchall()

        return [self._row_to_schedule(row) for row in rows]

    def set_schedule_active(self, schedule_id: str, active: bool) -> Schedule:
        """Activate or deactivate a schedule."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE schedules SET active = ? WHERE schedule_id = ?",
                (1 if active else 0, schedule_id),
            )
            if cursor.rowcount == 0:
                raise ScheduleNotFoundError(schedule_id)

        return self.get_schedule(schedule_id)

    def create_link(self, link: JobSchedule) -> JobSchedule:
        """
        Link a job to a schedule.

        Raises:
            JobNotFoundError / ScheduleNotFoundError: If either side is missing
            RejectedError: If the pair is already linked
        """
        with self._transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM jobs WHERE job_id = ?", (link.job_id,)
            ).fetchone() is None:
                raise JobNotFoundError(link.job_id)

            if conn.execute(
                "SELECT 1 FROM schedules WHERE schedule_id = ?", (link.schedule_id,)
            ).fetchone() is None:
                raise ScheduleNotFoundError(link.schedule_id)

            try:
                conn.execute(
                    """
                    INSERT INTO job_schedules
                    (job_id, schedule_id, active, last_triggered_at, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        link.job_id,
                        link.schedule_id,
                        1 if link.active else 0,
                        link.last_triggered_at,
                        link.created_at,
                    ),
                )
            except sqlite3.IntegrityError:
                raise RejectedError(
                    f"job already linked to schedule {link.schedule_id}",
                    job_id=link.job_id,
                )
        return link

    def get_link(self, job_id: str, schedule_id: str) -> Optional[JobSchedule]:
        """Get a job/schedule link."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM job_schedules WHERE job_id = ? AND schedule_id = ?",
                (job_id, schedule_id),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_link(row)

    def _row_to_link(self, row: sqlite3.Row) -> JobSchedule:
        return JobSchedule(
            job_id=row["job_id"],
            schedule_id=row["schedule_id"],
            active=bool(row["active"]),
            last_triggered_at=row["last_triggered_at"],
            created_at=row["created_at"],
        )

    def list_links(self, job_id: Optional[str] = None) -> list[JobSchedule]:
        """List job/schedule links, optionally for one job."""
        query = "SELECT * FROM job_schedules"
        values: list[Any] = []
        if job_id is not None:
            query += " WHERE job_id = ?"
            values.append(job_id)
        query += " ORDER BY created_at ASC"

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [self._row_to_link(row) for row in rows]

    def delete_link(self, job_id: str, schedule_id: str) -> bool:
        """Remove a job/schedule link. Returns False if it did not exist."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM job_schedules WHERE job_id = ? AND schedule_id = ?",
                (job_id, schedule_id),
            )
        return cursor.rowcount > 0

    def set_link_active(self, job_id: str, schedule_id: str, active: bool) -> bool:
        """Activate or deactivate a single link. Returns False if it did not exist."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE job_schedules SET active = ? WHERE job_id = ? AND schedule_id = ?",
                (1 if active else 0, job_id, schedule_id),
            )
        return cursor.rowcount > 0

    def list_trigger_candidates(self) -> list[tuple[JobSchedule, Schedule]]:
        """Active links whose job and schedule are both active."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT l.job_id, l.schedule_id, l.active AS link_active,
                       l.last_triggered_at, l.created_at AS link_created_at,
                       s.name, s.cron_expression, s.timezone, s.active,
                       s.description, s.created_at
                FROM job_schedules l
                JOIN jobs j ON j.job_id = l.job_id
                JOIN schedules s ON s.schedule_id = l.schedule_id
                WHERE l.active = 1 AND j.active = 1 AND s.active = 1
                """
            ).fetchall()

        result = []
        for row in rows:
            link = JobSchedule(
                job_id=row["job_id"],
                schedule_id=row["schedule_id"],
                active=bool(row["link_active"]),
                last_triggered_at=row["last_triggered_at"],
                created_at=row["link_created_at"],
            )
            result.append((link, self._row_to_schedule(row)))
        return result

    def mark_link_triggered(self, job_id: str, schedule_id: str, triggered_at: str) -> None:
        """Record the due time a link was last fired for."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE job_schedules SET last_triggered_at = ?
                WHERE job_id = ? AND schedule_id = ?
                """,
                (triggered_at, job_id, schedule_id),
            )

    # =========================================================================
    # Dependencies
    # =========================================================================

    def add_dependency(self, dependency: JobDependency) -> JobDependency:
        """
        Insert a dependency edge if it keeps the graph acyclic.

        The reachability walk and the insert share one write transaction,
        so two concurrent inserts cannot jointly close a cycle.

        Raises:
            JobNotFoundError: If either job is missing
            RejectedError: If the edge already exists
            DependencyCycleError: If the prerequisite already (transitively)
                depends on the dependent
        """
        dependent = dependency.dependent_job_id
        prerequisite = dependency.prerequisite_job_id

        with self._transaction() as conn:
            for job_id in (dependent, prerequisite):
                if conn.execute(
                    "SELECT 1 FROM jobs WHERE job_id = ?", (job_id,)
                ).fetchone() is None:
                    raise JobNotFoundError(job_id)

            if conn.execute(
                """
                SELECT 1 FROM job_dependencies
                WHERE dependent_job_id = ? AND prerequisite_job_id = ?
                """,
                (dependent, prerequisite),
            ).fetchone() is not None:
                raise RejectedError(
                    f"dependency on {prerequisite} already exists",
                    job_id=dependent,
                )

            if conn.execute(_REACHABLE_SQL, (prerequisite, dependent)).fetchone() is not None:
                raise DependencyCycleError(dependent, prerequisite)

            conn.execute(
                """
                INSERT INTO job_dependencies
                (dependent_job_id, prerequisite_job_id, dependency_type, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    dependent,
                    prerequisite,
                    dependency.dependency_type.value,
                    dependency.created_at,
                ),
            )
        return dependency

    def remove_dependency(self, dependent_job_id: str, prerequisite_job_id: str) -> bool:
        """Delete a dependency edge. Returns False if it did not exist."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM job_dependencies
                WHERE dependent_job_id = ? AND prerequisite_job_id = ?
                """,
                (dependent_job_id, prerequisite_job_id),
            )
        return cursor.rowcount > 0

    def _row_to_dependency(self, row: sqlite3.Row) -> JobDependency:
        return JobDependency(
            dependent_job_id=row["dependent_job_id"],
            prerequisite_job_id=row["prerequisite_job_id"],
            dependency_type=DependencyType(row["dependency_type"]),
            created_at=row["created_at"],
        )

    def list_dependencies(
        self,
        dependent_job_id: str,
        dependency_type: Optional[DependencyType] = None,
    ) -> list[JobDependency]:
        """List prerequisite edges of a job."""
        query = "SELECT * FROM job_dependencies WHERE dependent_job_id = ?"
        values: list[Any] = [dependent_job_id]
        if dependency_type is not None:
            query += " AND dependency_type = ?"
            values.append(dependency_type.value)
        query += " ORDER BY created_at ASC"

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [self._row_to_dependency(row) for row in rows]

    def list_dependents(self, prerequisite_job_id: str) -> list[JobDependency]:
        """List edges pointing at a prerequisite."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM job_dependencies
                WHERE prerequisite_job_id = ?
                ORDER BY created_at ASC
                """,
                (prerequisite_job_id,),
            ).fetchall()

        return [self._row_to_dependency(row) for row in rows]

    # =========================================================================
    # Executions
    # =========================================================================

    def create_execution(self, execution: Execution) -> Execution:
        """Persist a new execution record."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO executions
                (execution_id, job_id, schedule_id, status, parameters, created_at,
                 start_time, end_time, duration_ms, result, error_message, error_phase, stack_trace)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.execution_id,
                    execution.job_id,
                    execution.schedule_id,
                    execution.status.value,
                    json.dumps(execution.parameters, default=str),
                    execution.created_at,
                    execution.start_time,
                    execution.end_time,
                    execution.duration_ms,
                    _dump_json(execution.result),
                    execution.error_message,
                    execution.error_phase,
                    execution.stack_trace,
                ),
            )
        return execution

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        """Get an execution by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_execution(row)

    def _row_to_execution(self, row: sqlite3.Row) -> Execution:
        return Execution(
            execution_id=row["execution_id"],
            job_id=row["job_id"],
            schedule_id=row["schedule_id"],
            status=ExecutionStatus(row["status"]),
            parameters=json.loads(row["parameters"]),
            created_at=row["created_at"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            duration_ms=row["duration_ms"],
            result=_load_json(row["result"]),
            error_message=row["error_message"],
            error_phase=row["error_phase"],
            stack_trace=row["stack_trace"],
        )

    def list_executions(
        self,
        job_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        since: Optional[str] = None,
        limit: int = 100,
    ) -> list[Execution]:
        """List executions, newest first, with optional filters."""
        clauses = []
        values: list[Any] = []
        if job_id is not None:
            clauses.append("job_id = ?")
            values.append(job_id)
        if status is not None:
            clauses.append("status = ?")
            values.append(status.value)
        if since is not None:
            clauses.append("created_at >= ?")
            values.append(since)

        query = "SELECT * FROM executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC LIMIT ?"
        values.append(limit)

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [self._row_to_execution(row) for row in rows]

    def get_latest_terminal_execution(self, job_id: str, since: str) -> Optional[Execution]:
        """Most recent terminal execution of a job that ended at or after `since`."""
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM executions
                WHERE job_id = ?
                AND status IN ({_placeholders(_TERMINAL_VALUES)})
                AND end_time >= ?
                ORDER BY end_time DESC
                LIMIT 1
                """,
                (job_id, *_TERMINAL_VALUES, since),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_execution(row)

    def list_running_executions(self, started_before: Optional[str] = None) -> list[Execution]:
        """RUNNING executions, optionally only those started before a cutoff."""
        query = "SELECT * FROM executions WHERE status = ?"
        values: list[Any] = [ExecutionStatus.RUNNING.value]
        if started_before is not None:
            query += " AND start_time < ?"
            values.append(started_before)
        query += " ORDER BY start_time ASC"

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [self._row_to_execution(row) for row in rows]

    def count_executions_by_status(self, job_id: str) -> dict[str, int]:
        """Count a job's executions per status."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) AS count FROM executions
                WHERE job_id = ?
                GROUP BY status
                """,
                (job_id,),
            ).fetchall()

        counts = {status.value: 0 for status in ExecutionStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    def _current_status(self, conn: sqlite3.Connection, execution_id: str) -> str:
        row = conn.execute(
            "SELECT status FROM executions WHERE execution_id = ?",
            (execution_id,),
        ).fetchone()
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return row["status"]

    def claim_execution(
        self,
        execution_id: str,
        job_id: str,
        acquired_at: str,
        expires_at: str,
    ) -> Execution:
        """
        Atomically acquire the job lock and transition PENDING -> RUNNING.

        The execution id is the lock holder. If either step fails the whole
        transaction rolls back, so a lock never exists without a persisted
        RUNNING execution behind it.

        Raises:
            LockContentionError: If another live holder owns the lock
            InvalidTransitionError: If the execution is no longer PENDING
            ExecutionNotFoundError: If the execution doesn't exist
        """
        with self._transaction() as conn:
            if not self._upsert_lock(conn, job_id, execution_id, acquired_at, expires_at):
                row = conn.execute(
                    "SELECT holder FROM execution_locks WHERE job_id = ?",
                    (job_id,),
                ).fetchone()
                raise LockContentionError(
                    job_id,
                    execution_id,
                    current_holder=row["holder"] if row else None,
                )

            cursor = conn.execute(
                """
                UPDATE executions
                SET status = ?, start_time = ?
                WHERE execution_id = ? AND status = ?
                """,
                (
                    ExecutionStatus.RUNNING.value,
                    acquired_at,
                    execution_id,
                    ExecutionStatus.PENDING.value,
                ),
            )

            if cursor.rowcount == 0:
                current = self._current_status(conn, execution_id)
                raise InvalidTransitionError(
                    execution_id, current, ExecutionStatus.RUNNING.value
                )

            row = conn.execute(
                "SELECT * FROM executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()

        return self._row_to_execution(row)

    def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        from_statuses: tuple[ExecutionStatus, ...],
        end_time: str,
        duration_ms: Optional[int] = None,
        result: Any = None,
        error_message: Optional[str] = None,
        error_phase: Optional[str] = None,
        stack_trace: Optional[str] = None,
    ) -> tuple[Execution, bool]:
        """
        Move an execution into a terminal state and release its lock.

        The status update is conditional on `from_statuses`, so exactly one
        terminal transition can ever apply. The lock row is deleted only if
        this execution still holds it.

        Returns:
            (updated execution, whether a lock row was released)

        Raises:
            InvalidTransitionError: If the current status is not in from_statuses
            ExecutionNotFoundError: If the execution doesn't exist
        """
        allowed = tuple(s.value for s in from_statuses)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE executions
                SET status = ?, end_time = ?, duration_ms = ?, result = ?,
                    error_message = ?, error_phase = ?, stack_trace = ?
                WHERE execution_id = ? AND status IN ({_placeholders(allowed)})
                """,
                (
                    status.value,
                    end_time,
                    duration_ms,
                    _dump_json(result),
                    error_message,
                    error_phase,
                    stack_trace,
                    execution_id,
                    *allowed,
                ),
            )

            if cursor.rowcount == 0:
                current = self._current_status(conn, execution_id)
                raise InvalidTransitionError(execution_id, current, status.value)

            row = conn.execute(
                "SELECT * FROM executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()

            released = conn.execute(
                "DELETE FROM execution_locks WHERE job_id = ? AND holder = ?",
                (row["job_id"], execution_id),
            ).rowcount > 0

        return self._row_to_execution(row), released

    def delete_terminal_executions_before(self, cutoff: str) -> int:
        """
        Retention sweep: delete terminal executions that ended before `cutoff`.

        Their statistics ledger entries go with them; the daily buckets stay.
        """
        condition = f"""
            status IN ({_placeholders(_TERMINAL_VALUES)})
            AND COALESCE(end_time, created_at) < ?
        """
        values = (*_TERMINAL_VALUES, cutoff)

        with self._transaction() as conn:
            conn.execute(
                f"""
                DELETE FROM statistics_ledger WHERE execution_id IN (
                    SELECT execution_id FROM executions WHERE {condition}
                )
                """,
                values,
            )
            cursor = conn.execute(f"DELETE FROM executions WHERE {condition}", values)

        return cursor.rowcount

    # =========================================================================
    # Execution Locks
    # =========================================================================

    @staticmethod
    def _upsert_lock(
        conn: sqlite3.Connection,
        job_id: str,
        holder: str,
        acquired_at: str,
        expires_at: str,
    ) -> bool:
        """Insert the lock, or overwrite it only if the existing row has expired."""
        cursor = conn.execute(
            """
            INSERT INTO execution_locks (job_id, holder, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                holder = excluded.holder,
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at
            WHERE execution_locks.expires_at <= excluded.acquired_at
            """,
            (job_id, holder, acquired_at, expires_at),
        )
        return cursor.rowcount > 0

    def acquire_lock(self, job_id: str, holder: str, acquired_at: str, expires_at: str) -> bool:
        """Single conditional write; True if `holder` now owns the lock."""
        with self._transaction() as conn:
            return self._upsert_lock(conn, job_id, holder, acquired_at, expires_at)

    def release_lock(self, job_id: str, holder: str) -> bool:
        """Delete the lock only if `holder` owns it."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM execution_locks WHERE job_id = ? AND holder = ?",
                (job_id, holder),
            )
        return cursor.rowcount > 0

    def get_lock(self, job_id: str) -> Optional[ExecutionLock]:
        """Get the lock row for a job, live or expired."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM execution_locks WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None
        return ExecutionLock(
            job_id=row["job_id"],
            holder=row["holder"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )

    def delete_expired_locks(self, now: str) -> list[ExecutionLock]:
        """Delete and return every lock whose expiry is at or before `now`."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_locks WHERE expires_at <= ?",
                (now,),
            ).fetchall()
            conn.execute(
                "DELETE FROM execution_locks WHERE expires_at <= ?",
                (now,),
            )

        return [
            ExecutionLock(
                job_id=row["job_id"],
                holder=row["holder"],
                acquired_at=row["acquired_at"],
                expires_at=row["expires_at"],
            )
            for row in rows
        ]

    # =========================================================================
    # Daily Statistics
    # =========================================================================

    def record_statistics(
        self,
        execution_id: str,
        job_id: str,
        stat_date: str,
        succeeded: bool,
        duration_ms: Optional[int],
        recorded_at: str,
    ) -> bool:
        """
        Fold one terminal execution into its (job, date) bucket.

        The ledger insert and the bucket upsert share a transaction, so a
        bucket is never observed half-updated and a re-delivered execution
        id is a no-op.

        Returns:
            False if the execution was already recorded
        """
        timed = 1 if duration_ms is not None else 0
        duration = duration_ms if duration_ms is not None else 0

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO statistics_ledger
                (execution_id, job_id, stat_date, recorded_at)
                VALUES (?, ?, ?, ?)
                """,
                (execution_id, job_id, stat_date, recorded_at),
            )
            if cursor.rowcount == 0:
                return False

            conn.execute(
                """
                INSERT INTO daily_statistics
                (job_id, stat_date, total_executions, successful_executions,
                 failed_executions, total_duration_ms, timed_executions,
                 avg_duration_ms, min_duration_ms, max_duration_ms, created_at, updated_at)
                VALUES (?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, stat_date) DO UPDATE SET
                    total_executions = total_executions + 1,
                    successful_executions = successful_executions + excluded.successful_executions,
                    failed_executions = failed_executions + excluded.failed_executions,
                    total_duration_ms = total_duration_ms + excluded.total_duration_ms,
                    timed_executions = timed_executions + excluded.timed_executions,
                    avg_duration_ms = CASE
                        WHEN timed_executions + excluded.timed_executions > 0
                        THEN (total_duration_ms + excluded.total_duration_ms)
                             / (timed_executions + excluded.timed_executions)
                        ELSE 0 END,
                    min_duration_ms = CASE
                        WHEN excluded.min_duration_ms IS NULL THEN min_duration_ms
                        WHEN min_duration_ms IS NULL THEN excluded.min_duration_ms
                        ELSE MIN(min_duration_ms, excluded.min_duration_ms) END,
                    max_duration_ms = CASE
                        WHEN excluded.max_duration_ms IS NULL THEN max_duration_ms
                        WHEN max_duration_ms IS NULL THEN excluded.max_duration_ms
                        ELSE MAX(max_duration_ms, excluded.max_duration_ms) END,
                    updated_at = excluded.updated_at
                """,
                (
                    job_id,
                    stat_date,
                    1 if succeeded else 0,
                    0 if succeeded else 1,
                    duration,
                    timed,
                    duration,
                    duration_ms,
                    duration_ms,
                    recorded_at,
                    recorded_at,
                ),
            )
        return True

    def get_daily_statistics(self, job_id: str, stat_date: str) -> Optional[DailyStatistics]:
        """Get the statistics bucket for (job, date)."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM daily_statistics WHERE job_id = ? AND stat_date = ?",
                (job_id, stat_date),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_statistics(row)

    def _row_to_statistics(self, row: sqlite3.Row) -> DailyStatistics:
        return DailyStatistics(
            job_id=row["job_id"],
            stat_date=row["stat_date"],
            total_executions=row["total_executions"],
            successful_executions=row["successful_executions"],
            failed_executions=row["failed_executions"],
            total_duration_ms=row["total_duration_ms"],
            timed_executions=row["timed_executions"],
            avg_duration_ms=row["avg_duration_ms"],
            min_duration_ms=row["min_duration_ms"],
            max_duration_ms=row["max_duration_ms"],
            updated_at=row["updated_at"],
        )

    def list_daily_statistics(
        self,
        job_id: str,
        since_date: Optional[str] = None,
        until_date: Optional[str] = None,
    ) -> list[DailyStatistics]:
        """List a job's buckets in date order within an optional range."""
        query = "SELECT * FROM daily_statistics WHERE job_id = ?"
        values: list[Any] = [job_id]
        if since_date is not None:
            query += " AND stat_date >= ?"
            values.append(since_date)
        if until_date is not None:
            query += " AND stat_date <= ?"
            values.append(until_date)
        query += " ORDER BY stat_date ASC"

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [self._row_to_statistics(row) for row in rows]

    def rebuild_statistics(
        self,
        job_id: str,
        stat_date: str,
        rebuilt_at: str,
    ) -> Optional[DailyStatistics]:
        """
        Explicit backfill: recompute one bucket from retained execution history.

        When no COMPLETED/FAILED execution of the job ending on that date is
        retained, the bucket and its ledger are left as they are and the
        existing bucket (or None) is returned.
        """
        folded = (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value)
        condition = """
            job_id = ? AND status IN (?, ?) AND substr(end_time, 1, 10) = ?
        """
        values = (job_id, *folded, stat_date)

        with self._transaction() as conn:
            agg = conn.execute(
                f"""
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS succeeded,
                       SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS failed,
                       COALESCE(SUM(duration_ms), 0) AS total_duration,
                       COUNT(duration_ms) AS timed,
                       MIN(duration_ms) AS min_duration,
                       MAX(duration_ms) AS max_duration
                FROM executions WHERE {condition}
                """,
                (*folded, *values),
            ).fetchone()

            if agg["total"] == 0:
                # History already purged; the existing bucket is the only record
                row = conn.execute(
                    "SELECT * FROM daily_statistics WHERE job_id = ? AND stat_date = ?",
                    (job_id, stat_date),
                ).fetchone()
                return self._row_to_statistics(row) if row else None

            conn.execute(
                "DELETE FROM daily_statistics WHERE job_id = ? AND stat_date = ?",
                (job_id, stat_date),
            )
            conn.execute(
                "DELETE FROM statistics_ledger WHERE job_id = ? AND stat_date = ?",
                (job_id, stat_date),
            )

            conn.execute(
                f"""
                INSERT INTO statistics_ledger (execution_id, job_id, stat_date, recorded_at)
                SELECT execution_id, job_id, ?, ? FROM executions WHERE {condition}
                """,
                (stat_date, rebuilt_at, *values),
            )

            timed = agg["timed"]
            conn.execute(
                """
                INSERT INTO daily_statistics
                (job_id, stat_date, total_executions, successful_executions,
                 failed_executions, total_duration_ms, timed_executions,
                 avg_duration_ms, min_duration_ms, max_duration_ms, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    stat_date,
                    agg["total"],
                    agg["succeeded"],
                    agg["failed"],
                    agg["total_duration"],
                    timed,
                    agg["total_duration"] // timed if timed else 0,
                    agg["min_duration"],
                    agg["max_duration"],
                    rebuilt_at,
                    rebuilt_at,
                ),
            )

        return self.get_daily_statistics(job_id, stat_date)
