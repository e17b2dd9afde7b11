"""
Execution API schemas.
"""

from typing import Any, List, Optional
from pydantic import BaseModel, Field


class ExecutionResponse(BaseModel):
    """Response representing an Execution."""

    execution_id: str = Field(..., description="Unique execution identifier")
    job_id: str
    schedule_id: Optional[str] = None
    status: str = Field(..., description="PENDING/RUNNING/COMPLETED/FAILED/CANCELLED")
    parameters: dict = Field(default_factory=dict, description="Parameter snapshot")
    created_at: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: Optional[int] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None
    error_phase: Optional[str] = None
    stack_trace: Optional[str] = None


class ExecutionListResponse(BaseModel):
    """Response for execution list endpoints."""

    executions: List[ExecutionResponse] = Field(default_factory=list)
    total: int = Field(..., description="Number of executions returned")


class ExecutionCancelResponse(BaseModel):
    """Response from cancelling one execution."""

    execution_id: str
    cancelled: bool
    status: str
    message: Optional[str] = None
