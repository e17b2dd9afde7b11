"""
Pytest configuration and shared fixtures.
"""

import importlib
import os

import pytest


@pytest.fixture(autouse=True, scope="function")
def reset_auth_module():
    """
    Reset auth module state before each test.

    This ensures tests run with API_AUTH_ENABLED=false by default,
    unless the test explicitly sets it otherwise.
    """
    # Store original values
    original_auth_enabled = os.environ.get("API_AUTH_ENABLED")
    original_api_key = os.environ.get("API_KEY")

    # Set defaults for tests (auth disabled)
    os.environ["API_AUTH_ENABLED"] = "false"

    yield

    # Restore original values
    if original_auth_enabled is not None:
        os.environ["API_AUTH_ENABLED"] = original_auth_enabled
    elif "API_AUTH_ENABLED" in os.environ:
        del os.environ["API_AUTH_ENABLED"]

    if original_api_key is not None:
        os.environ["API_KEY"] = original_api_key
    elif "API_KEY" in os.environ:
        del os.environ["API_KEY"]

    # Reload auth module to reset state
    import src.api.dependencies.auth as auth_module

    importlib.reload(auth_module)


@pytest.fixture
def api_engine(tmp_path):
    """
    Engine singleton for API tests.

    Built directly (triggers disabled, background threads not started) so
    that TestClient can be used without running the app lifespan.
    """
    from src.api import _engine_state
    from src.engine import RunnerRegistry
    from src.infra.config import EngineConfig
    from src.infra.notifications import LoggingNotifier

    def echo(job, params, token):
        if params.get("fail"):
            raise ValueError(params["fail"])
        return {"echo": params}

    registry = RunnerRegistry()
    registry.register_callable("echo", echo)

    config = EngineConfig(
        db_path=str(tmp_path / "api.db"),
        enable_triggers=False,
        log_dir=str(tmp_path / "logs"),
    )
    engine = _engine_state.init_engine(config, registry=registry, notifier=LoggingNotifier())

    yield engine

    _engine_state.shutdown_engine()


@pytest.fixture
def client(api_engine):
    """Test client bound to the api_engine singleton."""
    from fastapi.testclient import TestClient
    from src.api.main import app

    return TestClient(app)
