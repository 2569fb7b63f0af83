"""
FastAPI application for Content Desk.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .content.routes import router as content_router
from .db.base import init_database
from .errors import (
    ConflictError,
    ContentDeskError,
    ImmutabilityError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from .notifications.routes import router as notifications_router
from .observability import configure_logging
from .scheduling.routes import router as scheduling_router

logger = structlog.get_logger()

settings = get_settings()

ERROR_STATUS = {
    ValidationError: 422,
    StateError: 409,
    ConflictError: 409,
    ImmutabilityError: 409,
    PermissionDeniedError: 403,
    NotFoundError: 404,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging()
    logger.info("starting_content_desk", environment=settings.environment)

    try:
        init_database()
    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    logger.info("content_desk_stopped")


def _version() -> str:
    try:
        return importlib.metadata.version("content-desk")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"


app = FastAPI(
    title="Content Desk",
    description="Editorial workflow, scheduled publishing and subscriber notifications",
    version=_version(),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ContentDeskError)
async def content_desk_error_handler(request: Request, exc: ContentDeskError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error("unhandled_domain_error", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.get("/health", tags=["system"])
async def health() -> dict:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/version", tags=["system"])
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": _version()}


app.include_router(content_router)
app.include_router(scheduling_router)
app.include_router(notifications_router)
