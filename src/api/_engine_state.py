"""
Engine state management for API integration.

Provides singleton access to the ExecutionEngine instance.
Initialized during FastAPI lifespan.

Usage:
    from ._engine_state import get_engine, init_engine

    # In lifespan:
    init_engine(EngineConfig.from_env())

    # In routers:
    engine = get_engine()
"""

from pathlib import Path
from typing import Optional

from src.engine.lifecycle import NotificationDispatcher
from src.engine.runners import CommandRunner, RunnerRegistry
from src.engine.service import ExecutionEngine
from src.infra.config import EngineConfig
from src.infra.notifications import build_notifier


# Job type served by the built-in subprocess runner
COMMAND_JOB_TYPE = "command"

# Global engine instance
_engine: Optional[ExecutionEngine] = None


def default_registry(logs_dir: str | Path) -> RunnerRegistry:
    """Registry with the built-in runners."""
    registry = RunnerRegistry()
    registry.register(COMMAND_JOB_TYPE, CommandRunner(logs_dir=Path(logs_dir) / "executions"))
    return registry


def init_engine(
    config: EngineConfig,
    registry: Optional[RunnerRegistry] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> ExecutionEngine:
    """
    Initialize the engine singleton.

    Does NOT start background threads; the caller decides.
    """
    global _engine

    if _engine is not None:
        return _engine

    _engine = ExecutionEngine.create(
        config,
        registry=registry or default_registry(config.log_dir),
        notifier=notifier or build_notifier(config.webhook_url),
    )
    return _engine


def get_engine() -> ExecutionEngine:
    """
    Get the engine singleton.

    Raises:
        RuntimeError: If the engine was not initialized
    """
    if _engine is None:
        raise RuntimeError(
            "Execution engine not initialized. "
            "Ensure init_engine() is called during startup."
        )

    return _engine


def shutdown_engine() -> None:
    """Stop the engine (if running) and drop the singleton."""
    global _engine

    if _engine is not None:
        _engine.stop()
        _engine = None
