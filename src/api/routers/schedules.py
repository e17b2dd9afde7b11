"""
Schedules router.

- POST /schedules - Create schedule (cron validated)
- GET /schedules - List schedules
- GET /schedules/{schedule_id} - Get schedule
- POST /schedules/{schedule_id}/activate | /deactivate
- GET /schedules/{schedule_id}/links - Jobs linked to the schedule
- POST /schedules/{schedule_id}/links - Link a job
- PATCH /schedules/{schedule_id}/links/{job_id} - Activate/deactivate a link
- DELETE /schedules/{schedule_id}/links/{job_id} - Unlink a job
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from src.engine.entities import JobSchedule, Schedule
from src.engine.errors import EngineError

from ..schemas.schedules import (
    LinkCreateRequest,
    LinkListResponse,
    LinkResponse,
    LinkUpdateRequest,
    ScheduleCreateRequest,
    ScheduleListResponse,
    ScheduleResponse,
)
from .._engine_state import get_engine
from ..errors import to_http_exception

router = APIRouter()


def schedule_to_response(schedule: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        schedule_id=schedule.schedule_id,
        name=schedule.name,
        cron_expression=schedule.cron_expression,
        timezone=schedule.timezone,
        active=schedule.active,
        description=schedule.description,
        created_at=schedule.created_at,
    )


def link_to_response(link: JobSchedule) -> LinkResponse:
    return LinkResponse(
        job_id=link.job_id,
        schedule_id=link.schedule_id,
        active=link.active,
        last_triggered_at=link.last_triggered_at,
        created_at=link.created_at,
    )


@router.post("", response_model=ScheduleResponse, status_code=201)
async def create_schedule(request: ScheduleCreateRequest):
    """Create a schedule. Invalid cron expressions or timezones return 422."""
    engine = get_engine()

    try:
        schedule = engine.create_schedule(
            name=request.name,
            cron_expression=request.cron_expression,
            timezone=request.timezone,
            description=request.description,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except EngineError as e:
        raise to_http_exception(e)

    return schedule_to_response(schedule)


@router.get("", response_model=ScheduleListResponse)
async def list_schedules(
    job_id: Optional[str] = Query(default=None, description="Only schedules linked to this job"),
):
    engine = get_engine()

    try:
        schedules = engine.list_schedules(job_id=job_id)
    except EngineError as e:
        raise to_http_exception(e)

    return ScheduleListResponse(
        schedules=[schedule_to_response(s) for s in schedules],
        total=len(schedules),
    )


@router.get("/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(schedule_id: str):
    engine = get_engine()

    schedule = engine.get_schedule(schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail=f"Schedule not found: {schedule_id}")

    return schedule_to_response(schedule)


@router.post("/{schedule_id}/activate", response_model=ScheduleResponse)
async def activate_schedule(schedule_id: str):
    engine = get_engine()

    try:
        return schedule_to_response(engine.set_schedule_active(schedule_id, True))
    except EngineError as e:
        raise to_http_exception(e)


@router.post("/{schedule_id}/deactivate", response_model=ScheduleResponse)
async def deactivate_schedule(schedule_id: str):
    engine = get_engine()

    try:
        return schedule_to_response(engine.set_schedule_active(schedule_id, False))
    except EngineError as e:
        raise to_http_exception(e)


@router.get("/{schedule_id}/links", response_model=LinkListResponse)
async def list_schedule_links(schedule_id: str):
    engine = get_engine()

    if engine.get_schedule(schedule_id) is None:
        raise HTTPException(status_code=404, detail=f"Schedule not found: {schedule_id}")

    links = [link for link in engine.list_links() if link.schedule_id == schedule_id]
    return LinkListResponse(links=[link_to_response(l) for l in links], total=len(links))


@router.post("/{schedule_id}/links", response_model=LinkResponse, status_code=201)
async def link_job(schedule_id: str, request: LinkCreateRequest):
    """Link a job to the schedule. Linking the same pair twice returns 409."""
    engine = get_engine()

    try:
        link = engine.link_schedule(request.job_id, schedule_id)
    except EngineError as e:
        raise to_http_exception(e)

    return link_to_response(link)


@router.patch("/{schedule_id}/links/{job_id}", response_model=LinkResponse)
async def update_link(schedule_id: str, job_id: str, request: LinkUpdateRequest):
    engine = get_engine()

    try:
        link = engine.set_link_active(job_id, schedule_id, request.active)
    except EngineError as e:
        raise to_http_exception(e)

    return link_to_response(link)


@router.delete("/{schedule_id}/links/{job_id}", status_code=204)
async def unlink_job(schedule_id: str, job_id: str):
    engine = get_engine()

    if not engine.unlink_schedule(job_id, schedule_id):
        raise HTTPException(
            status_code=404,
            detail=f"Job {job_id} is not linked to schedule {schedule_id}",
        )
