"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from genqueue import __version__
from genqueue.api.routes import router
from genqueue.config import settings
from genqueue.db import async_session, init_database, shutdown
from genqueue.executors.registry import ExecutorRegistry
from genqueue.orchestrator.dispatcher import Scheduler
from genqueue.orchestrator.errors import (
    GenqueueError,
    InvalidTransition,
    ProjectBusy,
    ProjectNotFound,
    RetryRejected,
    StageValidationError,
    TaskNotFound,
)
from genqueue.services.task_store import TaskStore

logger = logging.getLogger(__name__)

# Domain error -> HTTP status
ERROR_STATUS = {
    TaskNotFound: 404,
    ProjectNotFound: 404,
    StageValidationError: 422,
    ProjectBusy: 409,
    RetryRejected: 409,
    InvalidTransition: 409,
}


def build_scheduler() -> Scheduler:
    """Scheduler wired to the default database and the configured executors."""
    return Scheduler(
        store=TaskStore(async_session),
        registry=ExecutorRegistry.from_import_paths(settings.executors),
        config=settings.queue,
    )


def create_app(scheduler: Optional[Scheduler] = None) -> FastAPI:
    """Create the API application.

    Args:
        scheduler: Pre-built scheduler (tests); when omitted the lifespan
            initializes the database and builds one from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        Startup:
            - Initialize database schema
            - Build and start the scheduler

        Shutdown:
            - Stop the scheduler
            - Close database connections
        """
        logger.info("Starting genqueue API...")
        owns_scheduler = scheduler is None
        if owns_scheduler:
            await init_database()
            app.state.scheduler = build_scheduler()
        await app.state.scheduler.start()
        logger.info("API startup complete")

        yield

        logger.info("Shutting down genqueue API...")
        await app.state.scheduler.stop()
        if owns_scheduler:
            await shutdown()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="genqueue API",
        version=__version__,
        lifespan=lifespan,
    )
    if scheduler is not None:
        app.state.scheduler = scheduler

    # CORS for a local dashboard dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(GenqueueError)
    async def domain_exception_handler(request: Request, exc: GenqueueError):
        """Map scheduler errors to 4xx responses."""
        status_code = 400
        for error_type, code in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                status_code = code
                break
        logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc),
            }
        )

    return app
