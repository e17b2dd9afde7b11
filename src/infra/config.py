"""
Engine configuration.

All settings come from JOBCORE_* environment variables. Entry points call
load_dotenv() first so a local .env file can provide them.
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


logger = logging.getLogger(__name__)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def _env_optional_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip() or None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring invalid integer {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring invalid number {name}={raw!r}, using {default}")
        return default


@dataclass(frozen=True)
class EngineConfig:
    """Settings for one ExecutionEngine instance."""

    db_path: str = "data/jobcore.db"
    dependency_freshness_hours: int = 24
    max_runtime_seconds: int = 3600
    lock_safety_margin_seconds: int = 300
    contention_retries: int = 1
    contention_retry_delay_seconds: float = 5.0
    workers: int = 4
    retention_days: int = 30
    maintenance_interval_seconds: float = 30.0
    trigger_tick_seconds: float = 15.0
    enable_triggers: bool = True
    webhook_url: Optional[str] = None
    log_level: str = "INFO"
    log_dir: str = "logs"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            db_path=_env_str("JOBCORE_DB_PATH", cls.db_path),
            dependency_freshness_hours=_env_int(
                "JOBCORE_DEPENDENCY_FRESHNESS_HOURS", cls.dependency_freshness_hours
            ),
            max_runtime_seconds=_env_int("JOBCORE_MAX_RUNTIME_SECONDS", cls.max_runtime_seconds),
            lock_safety_margin_seconds=_env_int(
                "JOBCORE_LOCK_SAFETY_MARGIN_SECONDS", cls.lock_safety_margin_seconds
            ),
            contention_retries=_env_int("JOBCORE_CONTENTION_RETRIES", cls.contention_retries),
            contention_retry_delay_seconds=_env_float(
                "JOBCORE_CONTENTION_RETRY_DELAY_SECONDS", cls.contention_retry_delay_seconds
            ),
            workers=_env_int("JOBCORE_WORKERS", cls.workers),
            retention_days=_env_int("JOBCORE_RETENTION_DAYS", cls.retention_days),
            maintenance_interval_seconds=_env_float(
                "JOBCORE_MAINTENANCE_INTERVAL_SECONDS", cls.maintenance_interval_seconds
            ),
            trigger_tick_seconds=_env_float(
                "JOBCORE_TRIGGER_TICK_SECONDS", cls.trigger_tick_seconds
            ),
            enable_triggers=_env_str("JOBCORE_ENABLE_TRIGGERS", "true").lower() == "true",
            webhook_url=_env_optional_str("JOBCORE_WEBHOOK_URL"),
            log_level=_env_str("JOBCORE_LOG_LEVEL", cls.log_level),
            log_dir=_env_str("JOBCORE_LOG_DIR", cls.log_dir),
        )

    @property
    def freshness_window(self) -> timedelta:
        return timedelta(hours=self.dependency_freshness_hours)

    @property
    def max_runtime(self) -> timedelta:
        return timedelta(seconds=self.max_runtime_seconds)

    @property
    def lock_ttl(self) -> timedelta:
        """Lock lease: max runtime plus safety margin."""
        return timedelta(seconds=self.max_runtime_seconds + self.lock_safety_margin_seconds)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)
