"""
Infrastructure module - configuration, logging and notifications.
"""

from .config import EngineConfig
from .logging_config import setup_logging
from .notifications import (
    WebhookNotifier,
    LoggingNotifier,
    CompositeNotifier,
    build_notifier,
)

__all__ = [
    "EngineConfig",
    "setup_logging",
    "WebhookNotifier",
    "LoggingNotifier",
    "CompositeNotifier",
    "build_notifier",
]
