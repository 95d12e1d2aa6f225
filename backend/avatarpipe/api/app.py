"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from avatarpipe import validate_configuration
from avatarpipe.config import settings
from avatarpipe.db import SqlSessionStore, init_database, shutdown
from avatarpipe.errors import (
    AvatarPipeError,
    ConfigurationError,
    ProviderRejection,
    TransientNetworkError,
)
from avatarpipe.services.heygen_client import close_heygen_client
from avatarpipe.workers.runs import shutdown_all
from avatarpipe.api.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate provider credentials
        - Initialize database schema

    Shutdown:
        - Stop background runs and pollers, flush sessions
        - Close provider and database connections
    """
    # Startup
    logger.info("Starting Avatar Pipeline API...")
    validate_configuration()
    await init_database()
    app.state.store = SqlSessionStore()
    logger.info("API startup complete")

    yield

    # Shutdown
    logger.info("Shutting down Avatar Pipeline API...")
    await shutdown_all()
    await close_heygen_client()
    await shutdown()
    logger.info("API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Avatar Pipeline API",
    version="0.1.0",
    lifespan=lifespan,
)

# Browser front ends allowed to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include router with all endpoints
app.include_router(router)


def _status_for(exc: AvatarPipeError) -> int:
    if isinstance(exc, ConfigurationError):
        return 503
    if isinstance(exc, TransientNetworkError):
        return 503
    if isinstance(exc, ProviderRejection):
        return 502
    return 400


@app.exception_handler(AvatarPipeError)
async def avatarpipe_exception_handler(request: Request, exc: AvatarPipeError):
    """Surface orchestration errors with their kind and the provider message verbatim."""
    logger.warning(f"{request.method} {request.url.path} failed ({exc.kind.value}): {exc.message}")
    return JSONResponse(
        status_code=_status_for(exc),
        content={
            "error": exc.kind.value,
            "detail": exc.message,
        }
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
