"""
Mapping from engine errors to HTTP errors.
"""

import logging

from fastapi import HTTPException

from src.engine.errors import (
    EngineError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    LockContentionError,
    RejectedError,
    ScheduleNotFoundError,
)

logger = logging.getLogger(__name__)


def to_http_exception(error: EngineError) -> HTTPException:
    """
    404 for unknown entities, 409 for rejected or conflicting operations,
    500 for everything else (storage failures).
    """
    if isinstance(error, (JobNotFoundError, ScheduleNotFoundError, ExecutionNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))

    if isinstance(error, RejectedError):
        return HTTPException(status_code=409, detail=error.reason)

    if isinstance(error, (InvalidTransitionError, LockContentionError)):
        return HTTPException(status_code=409, detail=str(error))

    logger.error(f"Unhandled engine error: {error}")
    return HTTPException(status_code=500, detail=str(error))
