"""
Cron Trigger Source.

Turns active job/schedule links into trigger_job() calls:
- Next due time is computed with croniter in the schedule's timezone
- The link is marked triggered before the trigger fires, so a crash in
  between skips one occurrence rather than firing it twice
- Rejections are logged, never raised out of the loop
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .entities import JobSchedule, Schedule, parse_iso, to_iso, utcnow
from .errors import EngineError, RejectedError
from .persistence import ExecutionStore


logger = logging.getLogger(__name__)


TriggerFn = Callable[..., str]


def validate_cron_expression(expression: str) -> bool:
    """Check that croniter accepts the expression."""
    return croniter.is_valid(expression)


def validate_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def next_due(schedule: Schedule, after: datetime) -> datetime:
    """First occurrence of the schedule strictly after `after` (aware UTC)."""
    tz = ZoneInfo(schedule.timezone)
    itr = croniter(schedule.cron_expression, after.astimezone(tz))
    return itr.get_next(datetime).astimezone(after.tzinfo)


class CronTriggerSource:
    """
    Background loop firing due schedule links.

    Each link fires at most once per tick even if several occurrences were
    missed; catch-up bursts are not replayed.
    """

    def __init__(
        self,
        store: ExecutionStore,
        trigger: TriggerFn,
        clock: Callable[[], datetime] = utcnow,
        tick_seconds: float = 15.0,
    ):
        """
        Initialize CronTriggerSource.

        Args:
            store: ExecutionStore for links and schedules
            trigger: Called as trigger(job_id, None, schedule_id=...)
            clock: Returns the current aware datetime (injectable for tests)
            tick_seconds: Seconds between due checks
        """
        self.store = store
        self.trigger = trigger
        self.clock = clock
        self.tick_seconds = tick_seconds

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def due_links(self, now: Optional[datetime] = None) -> list[tuple[JobSchedule, Schedule]]:
        """Active links whose next occurrence is at or before `now`."""
        now = now or self.clock()
        due = []

        for link, schedule in self.store.list_trigger_candidates():
            base = parse_iso(link.last_triggered_at or link.created_at)
            try:
                if next_due(schedule, base) <= now:
                    due.append((link, schedule))
            except (ValueError, KeyError, ZoneInfoNotFoundError) as e:
                logger.error(
                    f"Unusable schedule {schedule.schedule_id} "
                    f"({schedule.cron_expression!r} {schedule.timezone}): {e}"
                )

        return due

    def fire_due(self) -> list[str]:
        """
        Trigger every due link once.

        Returns:
            Execution ids that were admitted
        """
        now = self.clock()
        fired = []

        for link, schedule in self.due_links(now):
            self.store.mark_link_triggered(link.job_id, link.schedule_id, to_iso(now))
            try:
                execution_id = self.trigger(link.job_id, None, schedule_id=schedule.schedule_id)
            except RejectedError as e:
                logger.info(
                    f"Scheduled trigger rejected: job={link.job_id} "
                    f"schedule={schedule.schedule_id} reason={e.reason}"
                )
                continue
            except EngineError as e:
                logger.error(
                    f"Scheduled trigger failed: job={link.job_id} "
                    f"schedule={schedule.schedule_id} error={e}"
                )
                continue

            logger.info(
                f"Scheduled trigger fired: job={link.job_id} "
                f"schedule={schedule.schedule_id} execution={execution_id}"
            )
            fired.append(execution_id)

        return fired

    # =========================================================================
    # Loop
    # =========================================================================

    def start(self) -> None:
        if self.is_running():
            raise RuntimeError("Trigger source already running")

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="cron-trigger", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Trigger thread did not stop within timeout")
        self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        logger.info("Trigger loop started")

        while not self._stop_event.is_set():
            try:
                self.fire_due()
            except Exception as e:
                logger.error(f"Error in trigger loop: {e}", exc_info=True)
            self._stop_event.wait(self.tick_seconds)

        logger.info("Trigger loop ended")
