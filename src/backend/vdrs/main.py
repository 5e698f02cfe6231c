"""VDRS FastAPI Application Entry Point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vdrs import __version__
from vdrs.api import router as api_router
from vdrs.core.config import settings
from vdrs.core.deps import (
    AppSettings,
    DbSession,
    MaintenanceWorker,
    Storage,
    async_session_factory,
    get_maintenance_worker,
    get_storage_engine,
)
from vdrs.services.health_service import health_service
from vdrs.services.retention_policy_service import RetentionPolicyService
from vdrs.storage.errors import StoreError

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger()

# Store error code -> HTTP status
ERROR_STATUS = {
    "validation_error": 422,
    "invalid_range": 400,
    "query_too_expensive": 400,
    "policy_violation": 422,
    "chunk_immutable": 409,
    "storage_error": 503,
    "timeout": 504,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events."""
    logger.info("Starting VDRS application", environment=settings.environment)

    try:
        async with async_session_factory() as session:
            await RetentionPolicyService(session).seed_defaults()
    except Exception as e:
        logger.warning("Failed to seed default retention policies", error=str(e))

    try:
        await get_storage_engine().load()
    except StoreError as e:
        logger.error("Failed to load durable storage", error=str(e))

    worker = get_maintenance_worker()
    if settings.maintenance_enabled:
        await worker.start()

    yield

    logger.info("Shutting down VDRS application")
    await worker.stop()


fastapi_app = FastAPI(
    title="VDRS API",
    description="Vehicle Data Recording System - telemetry ingestion and query engine",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

# CORS middleware
fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
fastapi_app.include_router(api_router, prefix="/api/v1")


@fastapi_app.exception_handler(StoreError)
async def store_exception_handler(request: Request, exc: StoreError):
    status_code = ERROR_STATUS.get(exc.code, 500)
    log = logger.error if status_code >= 500 else logger.warning
    log("Store error", path=str(request.url.path), code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


@fastapi_app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Convert errors to JSON-serializable format
    errors = []
    for error in exc.errors():
        err = {
            "loc": error.get("loc"),
            "msg": str(error.get("msg")),
            "type": error.get("type"),
        }
        errors.append(err)

    logger.error("Validation error",
                 path=str(request.url.path),
                 errors=errors,
                 body=str(exc.body)[:500] if hasattr(exc, "body") else None)
    return JSONResponse(
        status_code=422,
        content={"detail": errors}
    )


# Set up Prometheus metrics instrumentation
_instrumentator = None
if settings.metrics_enabled:
    from vdrs.core.metrics import expose_metrics, setup_metrics

    _instrumentator = setup_metrics(fastapi_app)
    expose_metrics(fastapi_app, _instrumentator)


@fastapi_app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for Kubernetes probes."""
    return {"status": "healthy", "version": __version__}


@fastapi_app.get("/health/live")
async def liveness_check() -> dict:
    """Liveness probe - checks if application is running."""
    result = health_service.get_liveness()
    return result.to_dict()


@fastapi_app.get("/health/ready")
async def readiness_check(
    db: DbSession, storage: Storage, worker: MaintenanceWorker, app_settings: AppSettings
) -> dict:
    """Readiness probe - checks if application can serve traffic."""
    result = await health_service.get_readiness(
        db, storage, maintenance_running=worker.running or not app_settings.maintenance_enabled
    )
    return result.to_dict()


# This is what uvicorn should serve
app = fastapi_app
