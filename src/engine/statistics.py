"""
Statistics Aggregator for the execution core.

Folds terminal executions into per (job, date) buckets:
- Only COMPLETED and FAILED are folded
- Each execution id is folded at most once (ledger-backed dedup)
- Buckets are keyed by the UTC date of the execution's end time
- backfill() is the one explicit recomputation path
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

from .entities import (
    DailyStatistics,
    Execution,
    ExecutionStatus,
    parse_iso,
    to_iso,
    utcnow,
)
from .persistence import ExecutionStore


logger = logging.getLogger(__name__)


FOLDED_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


def _date_key(stat_date: date | str) -> str:
    if isinstance(stat_date, str):
        return date.fromisoformat(stat_date).isoformat()
    return stat_date.isoformat()


class StatisticsAggregator:
    """Maintains daily execution statistics."""

    def __init__(
        self,
        store: ExecutionStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.clock = clock

    def record(
        self,
        job_id: str,
        stat_date: date | str,
        status: ExecutionStatus,
        duration_ms: Optional[int],
        execution_id: str,
    ) -> bool:
        """
        Fold one execution outcome into the (job, stat_date) bucket.

        Returns:
            True if the bucket changed, False for unfolded statuses or an
            execution id that was already recorded
        """
        if status not in FOLDED_STATUSES:
            logger.debug(f"Statistics skip: execution={execution_id} status={status.value}")
            return False

        recorded = self.store.record_statistics(
            execution_id=execution_id,
            job_id=job_id,
            stat_date=_date_key(stat_date),
            succeeded=status == ExecutionStatus.COMPLETED,
            duration_ms=duration_ms,
            recorded_at=to_iso(self.clock()),
        )
        if not recorded:
            logger.info(f"Statistics already recorded: execution={execution_id}")
        return recorded

    def record_execution(self, execution: Execution) -> bool:
        """Fold a terminal execution using its own end time as the bucket date."""
        if execution.end_time is None:
            logger.debug(f"Statistics skip: execution={execution.execution_id} has no end time")
            return False

        return self.record(
            job_id=execution.job_id,
            stat_date=parse_iso(execution.end_time).date(),
            status=execution.status,
            duration_ms=execution.duration_ms,
            execution_id=execution.execution_id,
        )

    def get(self, job_id: str, stat_date: date | str) -> Optional[DailyStatistics]:
        return self.store.get_daily_statistics(job_id, _date_key(stat_date))

    def list_buckets(
        self,
        job_id: str,
        since: Optional[date | str] = None,
        until: Optional[date | str] = None,
    ) -> list[DailyStatistics]:
        """Buckets for a job in date order."""
        return self.store.list_daily_statistics(
            job_id,
            since_date=_date_key(since) if since is not None else None,
            until_date=_date_key(until) if until is not None else None,
        )

    def backfill(self, job_id: str, stat_date: date | str) -> Optional[DailyStatistics]:
        """
        Recompute a bucket from the retained execution history.

        Replaces whatever the bucket held; the dedup ledger is rebuilt so
        later re-deliveries stay no-ops. A day whose executions were purged
        by retention keeps its bucket unchanged.
        """
        key = _date_key(stat_date)
        stats = self.store.rebuild_statistics(job_id, key, to_iso(self.clock()))
        logger.info(
            f"Statistics backfilled: job={job_id} date={key} "
            f"total={stats.total_executions if stats else 0}"
        )
        return stats
