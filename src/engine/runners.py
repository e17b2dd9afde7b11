"""
Job Runners for the execution core.

A runner performs the job body and nothing else:
- Receives the job snapshot, its parameter snapshot and a CancellationToken
- Returns a JSON-serializable result, or raises on failure
- Observes the token cooperatively (raise ExecutionCancelledError)

What runners MUST NOT do:
- Touch execution records or locks (ExecutionController's job)
- Retry on their own
- Send notifications
"""

import logging
import shlex
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from .entities import Job
from .errors import ExecutionCancelledError, RunnerFailure, RunnerNotFoundError


logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal for one execution."""

    def __init__(self, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to `timeout` seconds; returns True early if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelledError(self.execution_id)


class JobRunner(ABC):
    """
    Abstract base class for job type runners.

    Each job type registers one runner in the RunnerRegistry.
    """

    @abstractmethod
    def run(self, job: Job, parameters: dict, token: CancellationToken) -> Any:
        """
        Execute the job body.

        Args:
            job: Job snapshot taken at admission
            parameters: Merged parameter snapshot of this execution
            token: Cancellation signal to poll

        Returns:
            JSON-serializable result stored on the execution

        Raises:
            RunnerFailure (or any exception): recorded as FAILED
            ExecutionCancelledError: when the token was observed
        """
        ...


class CallableRunner(JobRunner):
    """Runner that delegates to a plain function `func(job, parameters, token)`."""

    def __init__(self, func: Callable[[Job, dict, CancellationToken], Any]):
        self.func = func

    def run(self, job: Job, parameters: dict, token: CancellationToken) -> Any:
        return self.func(job, parameters, token)


class CommandRunner(JobRunner):
    """
    Runner that executes the `command` parameter as a subprocess.

    Output is written to a per-execution log file. On cancellation the
    process is terminated, then killed if it outlives the grace period.
    """

    def __init__(
        self,
        logs_dir: Path,
        cwd: Optional[Path] = None,
        poll_interval: float = 0.2,
        kill_grace_seconds: float = 5.0,
        tail_lines: int = 3,
    ):
        """
        Initialize command runner.

        Args:
            logs_dir: Directory for execution logs
            cwd: Working directory for the subprocess
            poll_interval: Seconds between cancellation checks
            kill_grace_seconds: Wait after terminate() before kill()
            tail_lines: Log lines kept in the result / failure message
        """
        self.logs_dir = Path(logs_dir)
        self.cwd = cwd
        self.poll_interval = poll_interval
        self.kill_grace_seconds = kill_grace_seconds
        self.tail_lines = tail_lines

    def _build_command(self, parameters: dict) -> list[str]:
        command = parameters.get("command")
        if not command:
            raise RunnerFailure("Missing 'command' parameter")
        if isinstance(command, str):
            return shlex.split(command)
        return [str(part) for part in command]

    def run(self, job: Job, parameters: dict, token: CancellationToken) -> Any:
        cmd = self._build_command(parameters)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / f"{job.job_id}_{token.execution_id or 'adhoc'}.log"

        logger.info(f"Executing job {job.job_id}: {' '.join(cmd)}")

        try:
            with open(log_path, "w") as log_file:
                process = subprocess.Popen(
                    cmd,
                    cwd=parameters.get("cwd") or self.cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )

                while process.poll() is None:
                    if token.wait(self.poll_interval):
                        self._terminate(process, job)
                        raise ExecutionCancelledError(token.execution_id)

                exit_code = process.returncode
        except OSError as e:
            raise RunnerFailure(
                f"Failed to start command: {e}",
                job_id=job.job_id,
                execution_id=token.execution_id,
            ) from e

        tail = self._read_tail(log_path)
        if exit_code != 0:
            raise RunnerFailure(
                tail or f"Process exited with code {exit_code}",
                job_id=job.job_id,
                execution_id=token.execution_id,
            )

        return {"exit_code": exit_code, "log_path": str(log_path), "output_tail": tail}

    def _terminate(self, process: subprocess.Popen, job: Job) -> None:
        logger.info(f"Terminating process for job {job.job_id} (pid={process.pid})")
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process for job {job.job_id} ignored terminate, killing")
            process.kill()
            process.wait()

    def _read_tail(self, log_path: Path) -> Optional[str]:
        """Read the last non-empty lines of a log file."""
        try:
            with open(log_path, "r") as f:
                lines = [line.strip() for line in f.readlines()[-10:] if line.strip()]
        except OSError as e:
            logger.warning(f"Could not read log {log_path}: {e}")
            return None
        if not lines:
            return None
        return "\n".join(lines[-self.tail_lines:])


class RunnerRegistry:
    """Maps job_type -> JobRunner."""

    def __init__(self):
        self._runners: dict[str, JobRunner] = {}
        self._lock = threading.Lock()

    def register(self, job_type: str, runner: JobRunner) -> None:
        with self._lock:
            if job_type in self._runners:
                logger.warning(f"Replacing runner for job type {job_type}")
            self._runners[job_type] = runner

    def register_callable(
        self,
        job_type: str,
        func: Callable[[Job, dict, CancellationToken], Any],
    ) -> None:
        self.register(job_type, CallableRunner(func))

    def get(self, job_type: str) -> JobRunner:
        """
        Resolve the runner for a job type.

        Raises:
            RunnerNotFoundError: If nothing is registered for job_type
        """
        with self._lock:
            runner = self._runners.get(job_type)
        if runner is None:
            raise RunnerNotFoundError(job_type)
        return runner

    def job_types(self) -> list[str]:
        with self._lock:
            return sorted(self._runners)
