"""
FastAPI application entry point.

Thin HTTP surface over the ExecutionEngine:
- /jobs: catalog, triggering, dependencies, statistics
- /executions: status, history, cancellation
- /schedules: cron schedules and job links
- /engine: background thread control and status

Optional API key authentication (API_AUTH_ENABLED / API_KEY).
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException

from src import __version__
from src.infra.config import EngineConfig
from src.infra.logging_config import setup_logging
from .routers import executions, jobs, schedules
from ._engine_state import get_engine, init_engine, shutdown_engine
from .dependencies.auth import verify_api_key, API_AUTH_ENABLED

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: load .env, configure logging, build and start the engine
    (startup recovery runs first). Shutdown: stop the engine.
    """
    load_dotenv()
    config = EngineConfig.from_env()
    setup_logging(config.log_level, config.log_dir)

    engine = init_engine(config)
    engine.start()

    yield

    shutdown_engine()


tags_metadata = [
    {
        "name": "jobs",
        "description": "Job catalog, triggering, dependencies and statistics",
    },
    {
        "name": "executions",
        "description": "Execution status, history and cancellation",
    },
    {
        "name": "schedules",
        "description": "Cron schedules and job/schedule links",
    },
    {
        "name": "engine",
        "description": "Engine control plane",
    },
]

app = FastAPI(
    title="Job Execution Core API",
    lifespan=lifespan,
    description="""
## Job Execution Core API

Triggers jobs, enforces one running execution per job, gates on
prerequisite freshness, and rolls outcomes into daily statistics.

### Authentication
When `API_AUTH_ENABLED=true`, all endpoints except `/health` require an
`X-API-Key` header matching the `API_KEY` environment variable.

### Usage
```bash
uvicorn src.api.main:app --host 127.0.0.1 --port 8000

curl -X POST http://localhost:8000/jobs/<job_id>/trigger \\
  -H "Content-Type: application/json" \\
  -d '{"params": {"date": "2024-01-01"}}'
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


auth_dependency = [Depends(verify_api_key)] if API_AUTH_ENABLED else []


@app.get("/engine/status", tags=["engine"], dependencies=auth_dependency)
async def engine_status():
    """Whether background threads run, and what is in flight in this process."""
    try:
        engine = get_engine()
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "running": engine.is_running,
        "workers": engine.workers,
        "in_flight": engine.controller.in_flight(),
        "runner_types": engine.registry.job_types(),
        "triggers_enabled": engine.trigger_source is not None,
    }


app.include_router(
    jobs.router, prefix="/jobs", tags=["jobs"], dependencies=auth_dependency
)
app.include_router(
    executions.router, prefix="/executions", tags=["executions"], dependencies=auth_dependency
)
app.include_router(
    schedules.router, prefix="/schedules", tags=["schedules"], dependencies=auth_dependency
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
