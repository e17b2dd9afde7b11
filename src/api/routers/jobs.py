"""
Jobs router for the job catalog and job-scoped operations.

=== Catalog ===
- POST /jobs - Create job
- GET /jobs - List jobs
- GET /jobs/{job_id} - Get job
- PATCH /jobs/{job_id} - Update name/default params/description
- POST /jobs/{job_id}/activate - Activate job and resume its schedule links
- POST /jobs/{job_id}/deactivate - Deactivate job and pause its schedule links

=== Execution ===
- POST /jobs/{job_id}/trigger - Trigger now (202, or 409 when rejected)
- POST /jobs/{job_id}/cancel - Cancel every in-flight execution of the job
- GET /jobs/{job_id}/executions - Execution history
- GET /jobs/{job_id}/lock - Live execution lock

=== Dependencies ===
- GET /jobs/{job_id}/dependencies - Prerequisite edges
- POST /jobs/{job_id}/dependencies - Add edge (409 on duplicate or cycle)
- DELETE /jobs/{job_id}/dependencies/{prerequisite_job_id} - Remove edge
- GET /jobs/{job_id}/dependencies/check - Evaluate the gate now

=== Statistics ===
- GET /jobs/{job_id}/statistics - Daily buckets
- POST /jobs/{job_id}/statistics/backfill - Recompute one bucket
- GET /jobs/{job_id}/summary - Counts per status
- GET /jobs/{job_id}/health - Failure ratio below 50%
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from src.engine.entities import DailyStatistics, DependencyType, Job, JobDependency
from src.engine.errors import EngineError

from ..schemas.executions import ExecutionListResponse
from ..schemas.jobs import (
    BackfillRequest,
    CancelJobExecutionsResponse,
    DailyStatisticsListResponse,
    DailyStatisticsResponse,
    DependencyCheckResponse,
    DependencyCreateRequest,
    DependencyListResponse,
    DependencyResponse,
    ExecutionSummaryResponse,
    JobCreateRequest,
    JobHealthResponse,
    JobListResponse,
    JobResponse,
    JobUpdateRequest,
    LockResponse,
    TriggerRequest,
    TriggerResponse,
)
from .._engine_state import get_engine
from ..errors import to_http_exception
from .executions import execution_to_response, parse_status

router = APIRouter()


def _job_to_response(job: Job) -> JobResponse:
    """Convert Job entity to API response."""
    return JobResponse(
        job_id=job.job_id,
        name=job.name,
        job_type=job.job_type,
        default_params=job.default_params,
        active=job.active,
        description=job.description,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def _dependency_to_response(dependency: JobDependency) -> DependencyResponse:
    return DependencyResponse(
        dependent_job_id=dependency.dependent_job_id,
        prerequisite_job_id=dependency.prerequisite_job_id,
        dependency_type=dependency.dependency_type.value,
        created_at=dependency.created_at,
    )


def _statistics_to_response(stats: DailyStatistics) -> DailyStatisticsResponse:
    return DailyStatisticsResponse(
        job_id=stats.job_id,
        stat_date=stats.stat_date,
        total_executions=stats.total_executions,
        successful_executions=stats.successful_executions,
        failed_executions=stats.failed_executions,
        total_duration_ms=stats.total_duration_ms,
        avg_duration_ms=stats.avg_duration_ms,
        min_duration_ms=stats.min_duration_ms,
        max_duration_ms=stats.max_duration_ms,
        success_rate=stats.success_rate,
        updated_at=stats.updated_at,
    )


# =============================================================================
# Catalog
# =============================================================================


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(request: JobCreateRequest):
    """Create a job in the catalog."""
    engine = get_engine()

    try:
        job = engine.create_job(
            name=request.name,
            job_type=request.job_type,
            default_params=request.default_params,
            description=request.description,
            active=request.active,
        )
    except EngineError as e:
        raise to_http_exception(e)

    return _job_to_response(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    active: Optional[bool] = Query(default=None, description="Filter by active flag"),
):
    """List jobs, newest first."""
    engine = get_engine()

    try:
        jobs = engine.list_jobs(active=active)
    except EngineError as e:
        raise to_http_exception(e)

    return JobListResponse(jobs=[_job_to_response(j) for j in jobs], total=len(jobs))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str):
    engine = get_engine()

    job = engine.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    return _job_to_response(job)


@router.patch("/{job_id}", response_model=JobResponse)
async def update_job(job_id: str, request: JobUpdateRequest):
    """Update catalog fields. Executions already admitted keep their parameters."""
    engine = get_engine()

    if request.name is None and request.default_params is None and request.description is None:
        raise HTTPException(status_code=400, detail="No fields to update")

    try:
        job = engine.update_job(
            job_id,
            name=request.name,
            default_params=request.default_params,
            description=request.description,
        )
    except EngineError as e:
        raise to_http_exception(e)

    return _job_to_response(job)


@router.post("/{job_id}/activate", response_model=JobResponse)
async def activate_job(job_id: str):
    engine = get_engine()

    try:
        return _job_to_response(engine.activate_job(job_id))
    except EngineError as e:
        raise to_http_exception(e)


@router.post("/{job_id}/deactivate", response_model=JobResponse)
async def deactivate_job(job_id: str):
    engine = get_engine()

    try:
        return _job_to_response(engine.deactivate_job(job_id))
    except EngineError as e:
        raise to_http_exception(e)


# =============================================================================
# Execution
# =============================================================================


@router.post("/{job_id}/trigger", response_model=TriggerResponse, status_code=202)
async def trigger_job(job_id: str, request: TriggerRequest = TriggerRequest()):
    """
    Trigger a job now.

    Returns 409 with the rejection reason when the job is inactive or a
    BLOCKING dependency is unsatisfied; no execution is created then.
    """
    engine = get_engine()

    if engine.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    try:
        execution_id = engine.trigger_job(job_id, request.params)
    except EngineError as e:
        raise to_http_exception(e)

    return TriggerResponse(execution_id=execution_id, job_id=job_id, status="PENDING")


@router.post("/{job_id}/cancel", response_model=CancelJobExecutionsResponse)
async def cancel_job_executions(job_id: str):
    engine = get_engine()

    try:
        cancelled = engine.cancel_job_executions(job_id)
    except EngineError as e:
        raise to_http_exception(e)

    return CancelJobExecutionsResponse(job_id=job_id, cancelled=cancelled, count=len(cancelled))


@router.get("/{job_id}/executions", response_model=ExecutionListResponse)
async def list_job_executions(
    job_id: str,
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
):
    engine = get_engine()

    if engine.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    try:
        executions = engine.list_executions(job_id=job_id, status=parse_status(status), limit=limit)
    except EngineError as e:
        raise to_http_exception(e)

    return ExecutionListResponse(
        executions=[execution_to_response(e) for e in executions],
        total=len(executions),
    )


@router.get("/{job_id}/lock", response_model=LockResponse)
async def get_job_lock(job_id: str):
    engine = get_engine()

    if engine.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    lock = engine.get_lock(job_id)
    if lock is None:
        return LockResponse(job_id=job_id, held=False)

    return LockResponse(
        job_id=job_id,
        held=True,
        holder=lock.holder,
        acquired_at=lock.acquired_at,
        expires_at=lock.expires_at,
    )


# =============================================================================
# Dependencies
# =============================================================================


@router.get("/{job_id}/dependencies", response_model=DependencyListResponse)
async def list_dependencies(job_id: str):
    engine = get_engine()

    try:
        dependencies = engine.list_dependencies(job_id)
    except EngineError as e:
        raise to_http_exception(e)

    return DependencyListResponse(
        dependencies=[_dependency_to_response(d) for d in dependencies],
        total=len(dependencies),
    )


@router.post("/{job_id}/dependencies", response_model=DependencyResponse, status_code=201)
async def add_dependency(job_id: str, request: DependencyCreateRequest):
    """Make this job depend on a prerequisite. Duplicates and cycles return 409."""
    engine = get_engine()

    try:
        dependency = engine.add_dependency(
            job_id,
            request.prerequisite_job_id,
            DependencyType(request.dependency_type),
        )
    except EngineError as e:
        raise to_http_exception(e)

    return _dependency_to_response(dependency)


@router.delete("/{job_id}/dependencies/{prerequisite_job_id}", status_code=204)
async def remove_dependency(job_id: str, prerequisite_job_id: str):
    engine = get_engine()

    if not engine.remove_dependency(job_id, prerequisite_job_id):
        raise HTTPException(
            status_code=404,
            detail=f"Dependency not found: {job_id} -> {prerequisite_job_id}",
        )


@router.get("/{job_id}/dependencies/check", response_model=DependencyCheckResponse)
async def check_dependencies(job_id: str):
    engine = get_engine()

    try:
        check = engine.check_dependencies(job_id)
    except EngineError as e:
        raise to_http_exception(e)

    return DependencyCheckResponse(
        job_id=job_id,
        allowed=check.allowed,
        blocking_reason=check.blocking_reason,
    )


# =============================================================================
# Statistics
# =============================================================================


@router.get("/{job_id}/statistics", response_model=DailyStatisticsListResponse)
async def get_statistics(
    job_id: str,
    since: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    until: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
):
    engine = get_engine()

    try:
        buckets = engine.get_daily_statistics(job_id, since=since, until=until)
    except EngineError as e:
        raise to_http_exception(e)

    return DailyStatisticsListResponse(
        statistics=[_statistics_to_response(s) for s in buckets],
        total=len(buckets),
    )


@router.post("/{job_id}/statistics/backfill", response_model=DailyStatisticsResponse)
async def backfill_statistics(job_id: str, request: BackfillRequest):
    """Recompute one day's bucket from retained execution history."""
    engine = get_engine()

    try:
        stats = engine.backfill_statistics(job_id, request.stat_date)
    except EngineError as e:
        raise to_http_exception(e)

    if stats is None:
        raise HTTPException(
            status_code=404,
            detail=f"No finished executions of {job_id} on {request.stat_date}",
        )

    return _statistics_to_response(stats)


@router.get("/{job_id}/summary", response_model=ExecutionSummaryResponse)
async def get_execution_summary(job_id: str):
    engine = get_engine()

    try:
        return ExecutionSummaryResponse(**engine.get_execution_summary(job_id))
    except EngineError as e:
        raise to_http_exception(e)


@router.get("/{job_id}/health", response_model=JobHealthResponse)
async def get_job_health(job_id: str, days: int = Query(default=7, ge=1, le=90)):
    engine = get_engine()

    try:
        healthy = engine.is_job_healthy(job_id, days=days)
    except EngineError as e:
        raise to_http_exception(e)

    return JobHealthResponse(job_id=job_id, healthy=healthy, days=days)
