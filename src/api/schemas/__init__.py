"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .jobs import (
    JobCreateRequest,
    JobUpdateRequest,
    JobResponse,
    JobListResponse,
    TriggerRequest,
    TriggerResponse,
    DependencyCreateRequest,
    DependencyResponse,
    DependencyCheckResponse,
    DailyStatisticsResponse,
    ExecutionSummaryResponse,
)
from .executions import (
    ExecutionResponse,
    ExecutionListResponse,
    ExecutionCancelResponse,
)
from .schedules import (
    ScheduleCreateRequest,
    ScheduleResponse,
    LinkCreateRequest,
    LinkResponse,
)

__all__ = [
    "JobCreateRequest",
    "JobUpdateRequest",
    "JobResponse",
    "JobListResponse",
    "TriggerRequest",
    "TriggerResponse",
    "DependencyCreateRequest",
    "DependencyResponse",
    "DependencyCheckResponse",
    "DailyStatisticsResponse",
    "ExecutionSummaryResponse",
    "ExecutionResponse",
    "ExecutionListResponse",
    "ExecutionCancelResponse",
    "ScheduleCreateRequest",
    "ScheduleResponse",
    "LinkCreateRequest",
    "LinkResponse",
]
