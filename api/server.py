"""
FastAPI MVR Exchange API Server

Provides REST API endpoints for MVR ingestion and retrieval.

The database provider, audit dispatcher and record store are created on
startup, kept on ``app.state`` and closed on shutdown. Tests pass their own
instances to ``create_app``.

Usage:
    uvicorn api.server:create_app --factory --reload --port 8000
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response, Security
from fastapi.responses import RedirectResponse
from fastapi.security import APIKeyHeader

from api.models import (
    BatchErrorResponse,
    BatchResponse,
    ErrorResponse,
    HealthResponse,
    IngestionResponse,
    MVRResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from audit.emitter import AuditDispatcher, AuditEventEmitter, AuditSink, FileAuditSink, InMemoryAuditSink
from audit.pipeline import AuditPipeline
from audit.storage import PartitionedAuditStore, PipelineAuditSink
from config_manager import ConfigManager, get_config
from database.connection import DatabaseSessionProvider, DatabaseSettings
from database.models import UpsertOutcome
from database.monitoring import check_health
from database.record_store import (
    BatchIngestionRequest,
    IngestionRequest,
    RecordStore,
    RetrievalRequest,
)
from log_utils import configure_logging
from security_logger import get_security_logger
from validation import validate_batch_request, validate_ingestion_request, validate_retrieval_request

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

router = APIRouter()


def verify_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If no API key is configured (API_KEY env var or api.api_key), authentication is disabled.
    """
    expected = request.app.state.api_key
    if not expected:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        get_security_logger().log_access_denied("missing API key", source=request.url.path)
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != expected:
        get_security_logger().log_access_denied("invalid API key", source=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_store(request: Request) -> RecordStore:
    """Dependency to get the record store."""
    store = request.app.state.store
    if store is None:
        raise HTTPException(
            status_code=503, detail="Record store not initialized. Service is starting up."
        )
    return store


def get_config_instance(request: Request) -> ConfigManager:
    """Dependency to get the config instance."""
    return request.app.state.config


def build_audit_sink(config: ConfigManager) -> AuditSink:
    """Create the audit sink selected by ``audit.sink``."""
    if config.audit.sink == "memory":
        return InMemoryAuditSink()
    if config.audit.sink == "pipeline":
        pipeline = AuditPipeline(
            company_id_max_length=config.pipeline.company_id_max_length,
            max_workers=config.pipeline.max_workers
        )
        return PipelineAuditSink(pipeline, PartitionedAuditStore(config.pipeline.storage_directory))
    return FileAuditSink(config.audit.sink_path)


def build_audit_dispatcher(config: ConfigManager, clock: Optional[Callable[[], datetime]] = None) -> AuditDispatcher:
    emitter = AuditEventEmitter(
        build_audit_sink(config),
        function_name=config.audit.function_name,
        clock=clock
    )
    return AuditDispatcher(
        emitter,
        max_workers=config.audit.dispatch_workers,
        timeout_seconds=config.audit.dispatch_timeout_seconds
    )


def create_app(
    config: Optional[ConfigManager] = None,
    provider: Optional[DatabaseSessionProvider] = None,
    dispatcher: Optional[AuditDispatcher] = None,
    clock: Optional[Callable[[], datetime]] = None
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Configuration (loaded from CONFIG_PATH when None)
        provider: Initialized database provider (created on startup when None)
        dispatcher: Audit dispatcher (built from config on startup when None)
        clock: Returns the current UTC time

    Returns:
        Configured FastAPI application
    """
    config = config or get_config(CONFIG_PATH)

    app = FastAPI(
        title="MVR Exchange API",
        description="API for storing and retrieving Motor Vehicle Records",
        version=API_VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    app.state.config = config
    app.state.api_key = os.getenv("API_KEY", "") or config.api.api_key
    app.state.provider = provider
    app.state.dispatcher = dispatcher
    app.state.store = RecordStore(provider, dispatcher, config.ingestion, clock) if provider else None
    app.state.startup_time = None

    # Setup middleware
    setup_cors(app, config.api.cors_origins)
    app.add_middleware(RequestLoggingMiddleware)
    setup_exception_handlers(app)

    @app.on_event("startup")
    def startup():
        """Open the database and audit dispatcher."""
        logger.info("Starting MVR Exchange API...")

        if app.state.provider is None:
            settings = DatabaseSettings.from_env()
            if config.database.url and not os.getenv("DATABASE_URL"):
                settings.url = config.database.url
            app.state.provider = DatabaseSessionProvider(settings)
            app.state.provider.init(echo=config.database.echo)
            app.state.provider.create_tables()

        if app.state.dispatcher is None:
            app.state.dispatcher = build_audit_dispatcher(config, clock)

        if app.state.store is None:
            app.state.store = RecordStore(
                app.state.provider, app.state.dispatcher, config.ingestion, clock
            )

        app.state.startup_time = datetime.now(timezone.utc)
        logger.info("API ready: audit sink=%s", config.audit.sink)

    @app.on_event("shutdown")
    def shutdown():
        """Flush audit events and release database connections."""
        logger.info("Shutting down MVR Exchange API...")
        if app.state.dispatcher is not None:
            app.state.dispatcher.close()
        if app.state.provider is not None:
            app.state.provider.close()

    app.include_router(router)
    return app


@router.post(
    "/api/v1/mvr",
    response_model=IngestionResponse,
    status_code=201,
    responses={
        200: {"model": IngestionResponse, "description": "Duplicate within 30 days; nothing stored"},
        201: {"model": IngestionResponse, "description": "MVR stored"},
        400: {"model": ErrorResponse, "description": "Validation error"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        500: {"model": ErrorResponse, "description": "Storage failed; nothing stored"},
    },
    summary="Add an MVR",
    description="Store an MVR for a subject, creating the subject if needed",
)
def add_mvr(
    response: Response,
    body: Dict[str, Any] = Body(...),
    store: RecordStore = Depends(get_store),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    """Validate and store one MVR.

    Returns 201 when a record was stored and 200 when the submission was
    suppressed as a duplicate.
    """
    validate_ingestion_request(body, config.ingestion.allowed_purposes)
    result = store.ingest(IngestionRequest.from_body(body))
    if result.outcome == UpsertOutcome.SKIPPED:
        response.status_code = 200
    return IngestionResponse(**result.to_dict())


@router.post(
    "/api/v1/mvr/batch",
    response_model=BatchResponse,
    responses={
        200: {"model": BatchResponse, "description": "Batch stored"},
        400: {"model": ErrorResponse, "description": "Validation error"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        500: {"model": BatchErrorResponse, "description": "Batch rolled back; per-record outcomes included"},
    },
    summary="Add a batch of MVRs",
    description="Store several MVRs in one transaction; any failure stores nothing",
)
def add_mvr_batch(
    body: Dict[str, Any] = Body(...),
    store: RecordStore = Depends(get_store),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    """Validate every payload, then store the batch all-or-nothing."""
    validate_batch_request(
        body,
        config.ingestion.allowed_purposes,
        max_batch_size=config.ingestion.max_batch_size
    )
    result = store.ingest_batch(BatchIngestionRequest.from_body(body))
    return BatchResponse(**result.to_dict())


@router.post(
    "/api/v1/mvr/retrieve",
    response_model=MVRResponse,
    responses={
        200: {"model": MVRResponse, "description": "Current MVR returned"},
        400: {"model": ErrorResponse, "description": "Validation error or missing consent"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        404: {"model": ErrorResponse, "description": "No subject, no record, or record too old"},
        500: {"model": ErrorResponse, "description": "Read failed"},
    },
    summary="Retrieve an MVR",
    description="Return the subject's current MVR if it falls within the requested window",
)
def get_mvr(
    request: Request,
    body: Dict[str, Any] = Body(...),
    store: RecordStore = Depends(get_store),
    api_key: str = Depends(verify_api_key),
):
    """Validate consent and purpose, then return the current record aggregate."""
    request.state.company_id = body.get("company_id", "")
    request.state.drivers_license_number = body.get("drivers_license_number", "")
    validate_retrieval_request(body)
    aggregate = store.retrieve(RetrievalRequest.from_body(body))
    return MVRResponse(**aggregate.to_dict())


@router.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check database connectivity and pool status",
)
def health_check(request: Request):
    """Return health status. Always returns HTTP 200."""
    provider = request.app.state.provider
    startup_time = request.app.state.startup_time
    uptime_seconds = None
    if startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - startup_time).total_seconds())

    if provider is None or not provider.is_initialized:
        return HealthResponse(
            status="starting",
            database_connected=False,
            version=API_VERSION,
            uptime_seconds=uptime_seconds,
            error="Database not initialized",
        )

    status = check_health(provider.engine, provider.session_factory)
    health = status.to_dict()
    return HealthResponse(
        status="healthy" if status.healthy else "degraded",
        database_connected=status.healthy,
        latency_ms=health["latency_ms"],
        pool=health["pool"],
        version=API_VERSION,
        uptime_seconds=uptime_seconds,
        error=status.error,
    )


# Root redirect to docs
@router.get("/", include_in_schema=False)
def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/api/docs")


def main() -> None:
    import uvicorn

    config = get_config(CONFIG_PATH)
    configure_logging(config.logging)
    get_security_logger(log_dir=config.logging.security_log_dir)
    uvicorn.run(create_app(config), host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
