"""
Schedule API schemas.
"""

from typing import List, Optional
from pydantic import BaseModel, Field


class ScheduleCreateRequest(BaseModel):
    """Request to create a schedule."""

    name: str = Field(..., min_length=1, max_length=200)
    cron_expression: str = Field(
        ...,
        min_length=1,
        description="Cron expression (5 or 6 fields), validated with croniter"
    )
    timezone: str = Field(default="UTC", description="IANA timezone the expression is evaluated in")
    description: Optional[str] = None


class ScheduleResponse(BaseModel):
    """Response representing a Schedule."""

    schedule_id: str
    name: str
    cron_expression: str
    timezone: str
    active: bool
    description: Optional[str] = None
    created_at: str


class ScheduleListResponse(BaseModel):
    schedules: List[ScheduleResponse] = Field(default_factory=list)
    total: int


class LinkCreateRequest(BaseModel):
    """Request to link a job to this schedule."""

    job_id: str = Field(..., min_length=1)


class LinkUpdateRequest(BaseModel):
    active: bool


class LinkResponse(BaseModel):
    """A job/schedule link."""

    job_id: str
    schedule_id: str
    active: bool
    last_triggered_at: Optional[str] = None
    created_at: str


class LinkListResponse(BaseModel):
    links: List[LinkResponse] = Field(default_factory=list)
    total: int
