"""
Clarity FastAPI Application Entry Point.

Run with: uvicorn clarity.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clarity.api.routes import (
    auth,
    brains,
    cards,
    jobs,
    streams,
    uploads,
)
from clarity.config import get_settings, sanitize_error
from clarity.db.session import AsyncSessionLocal, engine
from clarity.exceptions import ClarityError
from clarity.logging_config import setup_logging
from clarity.services.file_pipeline import FileUploadPipeline
from clarity.services.generation import CardGenerator
from clarity.services.job_handlers import register_handlers
from clarity.services.job_queue import JobQueue
from clarity.services.storage import S3DocumentStore

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown."""
    # Startup
    setup_logging(settings.log_level)
    pipeline = FileUploadPipeline(S3DocumentStore())
    job_queue = JobQueue(
        AsyncSessionLocal,
        max_retries=settings.job_max_retries,
        job_timeout=settings.job_timeout_seconds,
        retry_delay=settings.job_retry_delay_seconds,
    )
    register_handlers(job_queue, pipeline)

    app.state.session_factory = AsyncSessionLocal
    app.state.upload_pipeline = pipeline
    app.state.card_generator = CardGenerator()
    app.state.job_queue = job_queue
    await job_queue.start()

    yield

    # Shutdown
    await job_queue.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Streams, cards and background processing API",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ClarityError)
async def clarity_error_handler(request: Request, exc: ClarityError) -> JSONResponse:
    """Translate domain errors into JSON responses with their mapped status code."""
    body = exc.to_dict()
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        body["detail"] = sanitize_error(exc, generic_message="An internal error occurred.")
    return JSONResponse(status_code=exc.status_code, content=body)


# Include routers
app.include_router(auth.router)
app.include_router(brains.router)
app.include_router(streams.router)
app.include_router(cards.router)
app.include_router(uploads.router)
app.include_router(jobs.router)


@app.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    """Health check endpoint."""
    job_queue = getattr(request.app.state, "job_queue", None)
    return {
        "status": "healthy",
        "job_queue": "running" if job_queue is not None and job_queue.is_running else "stopped",
    }
