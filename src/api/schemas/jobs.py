"""
Job catalog API schemas.

Covers /jobs CRUD, triggering, dependencies, statistics and health.
"""

from typing import List, Literal, Optional
from pydantic import BaseModel, Field


# =============================================================================
# Catalog
# =============================================================================


class JobCreateRequest(BaseModel):
    """Request to create a new job."""

    name: str = Field(..., min_length=1, max_length=200, description="Human-readable job name")
    job_type: str = Field(
        ...,
        min_length=1,
        description="Runner key resolved by the runner registry (e.g. 'command')"
    )
    default_params: dict = Field(
        default_factory=dict,
        description="Parameters merged under each trigger's parameters"
    )
    description: Optional[str] = Field(default=None, description="Free-form description")
    active: bool = Field(default=True, description="Whether the job accepts triggers")


class JobUpdateRequest(BaseModel):
    """Request to update catalog fields. Running executions keep their snapshot."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    default_params: Optional[dict] = Field(default=None)
    description: Optional[str] = Field(default=None)


class JobResponse(BaseModel):
    """Response representing a Job."""

    job_id: str = Field(..., description="Unique job identifier")
    name: str
    job_type: str
    default_params: dict = Field(default_factory=dict)
    active: bool
    description: Optional[str] = None
    created_at: str = Field(..., description="Creation timestamp (ISO format, UTC)")
    updated_at: str = Field(..., description="Last update timestamp (ISO format, UTC)")


class JobListResponse(BaseModel):
    """Response for job list endpoint."""

    jobs: List[JobResponse] = Field(default_factory=list)
    total: int = Field(..., description="Number of jobs returned")


# =============================================================================
# Triggering
# =============================================================================


class TriggerRequest(BaseModel):
    """Request to trigger a job now."""

    params: dict = Field(
        default_factory=dict,
        description="Per-execution parameters (override the job's defaults)"
    )


class TriggerResponse(BaseModel):
    """Response from a successful trigger."""

    execution_id: str
    job_id: str
    status: str = Field(..., description="Status at admission (PENDING)")


class CancelJobExecutionsResponse(BaseModel):
    """Response from cancelling every in-flight execution of a job."""

    job_id: str
    cancelled: List[str] = Field(default_factory=list)
    count: int


# =============================================================================
# Dependencies
# =============================================================================


class DependencyCreateRequest(BaseModel):
    """Request to make a job depend on a prerequisite."""

    prerequisite_job_id: str = Field(..., min_length=1)
    dependency_type: Literal["BLOCKING", "NON_BLOCKING"] = Field(default="BLOCKING")


class DependencyResponse(BaseModel):
    """A dependency edge: dependent -> prerequisite."""

    dependent_job_id: str
    prerequisite_job_id: str
    dependency_type: str
    created_at: str


class DependencyListResponse(BaseModel):
    dependencies: List[DependencyResponse] = Field(default_factory=list)
    total: int


class DependencyCheckResponse(BaseModel):
    """Outcome of the dependency gate for a job."""

    job_id: str
    allowed: bool
    blocking_reason: Optional[str] = None


# =============================================================================
# Statistics and Health
# =============================================================================


class DailyStatisticsResponse(BaseModel):
    """One (job, date) statistics bucket."""

    job_id: str
    stat_date: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    total_duration_ms: int
    avg_duration_ms: int
    min_duration_ms: Optional[int] = None
    max_duration_ms: Optional[int] = None
    success_rate: float
    updated_at: Optional[str] = None


class DailyStatisticsListResponse(BaseModel):
    statistics: List[DailyStatisticsResponse] = Field(default_factory=list)
    total: int


class BackfillRequest(BaseModel):
    stat_date: str = Field(
        ...,
        pattern=r"^\d{4}-\d{2}-\d{2}$",
        description="Bucket date (YYYY-MM-DD, UTC)"
    )


class ExecutionSummaryResponse(BaseModel):
    """Counts per status over retained executions."""

    job_id: str
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    success_rate: float


class JobHealthResponse(BaseModel):
    job_id: str
    healthy: bool
    days: int


class LockResponse(BaseModel):
    """Live execution lock of a job (null fields when free)."""

    job_id: str
    held: bool
    holder: Optional[str] = None
    acquired_at: Optional[str] = None
    expires_at: Optional[str] = None
