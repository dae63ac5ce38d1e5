"""
StockSentry API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from core.container import build_runtime
from core.logging import setup_logging

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging(local=settings.is_local, debug=settings.debug)
    logger.info("api.starting", version=settings.app_version)

    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = build_runtime(settings=settings)
    runtime = app.state.runtime
    if settings.scheduler_embedded:
        runtime.scheduler.start_scheduler(settings.scheduler_interval_minutes)

    yield

    logger.info("api.stopping")
    await runtime.close()
    if owns_runtime:
        from db.session import get_engine

        await get_engine().dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Inventory automation: threshold alerts, scheduled tasks and workflows",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import alerts, tasks, workflows

app.include_router(alerts.router)
app.include_router(tasks.router)
app.include_router(workflows.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    runtime = getattr(app.state, "runtime", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "scheduler": runtime.scheduler.state.as_dict() if runtime else None,
    }
