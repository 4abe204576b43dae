"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers all API routers.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routers import (
    admin_cache,
    field_mappings,
    geocoding,
    import_files,
    import_jobs,
    jobs_runner,
    quotas,
    scheduled_imports,
    webhooks,
)
from .core.config import settings
from .core.errors import QuotaExceededError
from .core.logging_config import configure_logging
from .db.session import create_all_tables
from .utils.clock import utcnow

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, role="api")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    try:
        create_all_tables()
        logger.info("Database tables ready")
    except Exception:
        logger.exception("Failed to initialize database tables; the application cannot start")
        raise

    yield


app = FastAPI(
    title="Event Atlas API",
    version="1.0.0",
    description="Imports tabular event data, maps it onto events and geocodes their locations",
    lifespan=lifespan,
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": "quota_exceeded",
            "detail": exc.message,
            "quota_type": exc.quota_type,
            "current": exc.current,
            "limit": exc.limit,
            "reset_time": exc.reset_time.isoformat() if exc.reset_time else None,
        },
    )


app.include_router(import_files.router)
app.include_router(import_jobs.router)
app.include_router(field_mappings.router)
app.include_router(scheduled_imports.router)
app.include_router(jobs_runner.router)
app.include_router(admin_cache.router)
app.include_router(geocoding.router)
app.include_router(quotas.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "service": "event-atlas-api",
    }
