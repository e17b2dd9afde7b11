"""
Executions router.

- GET /executions - List executions (filter by job_id, status)
- GET /executions/recent - Executions created in the last N hours
- GET /executions/{execution_id} - Execution status
- POST /executions/{execution_id}/cancel - Cancel a PENDING or RUNNING execution
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from src.engine.entities import Execution, ExecutionStatus
from src.engine.errors import EngineError

from ..schemas.executions import (
    ExecutionCancelResponse,
    ExecutionListResponse,
    ExecutionResponse,
)
from .._engine_state import get_engine
from ..errors import to_http_exception

router = APIRouter()


def execution_to_response(execution: Execution) -> ExecutionResponse:
    """Convert Execution entity to API response."""
    return ExecutionResponse(
        execution_id=execution.execution_id,
        job_id=execution.job_id,
        schedule_id=execution.schedule_id,
        status=execution.status.value,
        parameters=execution.parameters,
        created_at=execution.created_at,
        start_time=execution.start_time,
        end_time=execution.end_time,
        duration_ms=execution.duration_ms,
        result=execution.result,
        error_message=execution.error_message,
        error_phase=execution.error_phase,
        stack_trace=execution.stack_trace,
    )


def parse_status(status: Optional[str]) -> Optional[ExecutionStatus]:
    if status is None:
        return None
    try:
        return ExecutionStatus(status.upper())
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown execution status: {status}")


@router.get("", response_model=ExecutionListResponse)
async def list_executions(
    job_id: Optional[str] = Query(default=None, description="Only executions of this job"),
    status: Optional[str] = Query(default=None, description="Only executions in this status"),
    limit: int = Query(default=100, ge=1, le=1000),
):
    """List executions, newest first."""
    engine = get_engine()

    try:
        executions = engine.list_executions(job_id=job_id, status=parse_status(status), limit=limit)
    except EngineError as e:
        raise to_http_exception(e)

    return ExecutionListResponse(
        executions=[execution_to_response(e) for e in executions],
        total=len(executions),
    )


@router.get("/recent", response_model=ExecutionListResponse)
async def list_recent_executions(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    limit: int = Query(default=100, ge=1, le=1000),
):
    """Executions created within the last `hours` hours."""
    engine = get_engine()

    try:
        executions = engine.list_recent_executions(hours=hours, limit=limit)
    except EngineError as e:
        raise to_http_exception(e)

    return ExecutionListResponse(
        executions=[execution_to_response(e) for e in executions],
        total=len(executions),
    )


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str):
    """Get one execution with its outcome fields."""
    engine = get_engine()

    try:
        return execution_to_response(engine.get_execution_status(execution_id))
    except EngineError as e:
        raise to_http_exception(e)


@router.post("/{execution_id}/cancel", response_model=ExecutionCancelResponse)
async def cancel_execution(execution_id: str):
    """
    Cancel an execution.

    Terminal executions are left untouched and reported with cancelled=false.
    """
    engine = get_engine()

    try:
        cancelled = engine.cancel_execution(execution_id)
        execution = engine.get_execution_status(execution_id)
    except EngineError as e:
        raise to_http_exception(e)

    return ExecutionCancelResponse(
        execution_id=execution_id,
        cancelled=cancelled,
        status=execution.status.value,
        message=None if cancelled else f"Execution already {execution.status.value}",
    )
