"""
API Routers package.
"""

from . import jobs, executions, schedules

__all__ = ["jobs", "executions", "schedules"]
