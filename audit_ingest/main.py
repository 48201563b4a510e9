"""
FastAPI Application Entry Point

Builds the service graph once at startup (database, audit store, idempotent
writer, query service, consumer group), exposes it on `app.state` and
includes the HTTP routers.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from audit_ingest.config import settings
from audit_ingest.database import Database
from audit_ingest.routers import audit, health
from audit_ingest.services.audit_store import AuditStore
from audit_ingest.services.consumer_group import build_consumer_group
from audit_ingest.services.query import QueryService
from audit_ingest.services.writer import IdempotentWriter

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format=settings.log_format
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - Startup: connect the pool, ensure the schema, wire services, start consumers
    - Shutdown: stop consumers (final offset commits), then close the pool
    """
    logger.info("Starting Audit Ingest Service...")

    database = Database(
        dsn=settings.postgres_dsn,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout,
        application_name=settings.app_name
    )
    await database.connect()

    group = None
    try:
        store = AuditStore(database, max_page_limit=settings.max_page_limit)
        await store.ensure_schema()

        app.state.database = database
        app.state.query_service = QueryService(
            store,
            default_page=settings.default_page,
            default_limit=settings.default_page_limit
        )

        if settings.consumer_enabled:
            writer = IdempotentWriter(store, idempotency_header=settings.idempotency_header)
            group = build_consumer_group(writer, settings)
            await group.start()
        app.state.consumer_group = group
    except Exception:
        logger.exception("Startup failed, releasing resources")
        if group is not None:
            await group.stop()
        await database.disconnect()
        raise

    logger.info("Audit Ingest Service started successfully")

    yield

    logger.info("Shutting down Audit Ingest Service...")
    if group is not None:
        await group.stop()
    await database.disconnect()
    logger.info("Audit Ingest Service stopped")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # Audit Ingest Service API

    Consumes application logs and audit records from Kafka and serves the
    stored audit history.

    - **Exactly-once effect**: redelivered messages never create duplicate entries
    - **Manual offset commits**: offsets are committed only after persistence
    - **Audit history**: paginated, newest first
    - **Reference number counting**: windowed count per `refNo`
    """,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan
)


# ============================================================================
# Middleware
# ============================================================================

if settings.debug:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Add request timing header for monitoring."""
    start_time = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = str(time.time() - start_time)
    return response


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler.

    Returns a generic error; details only go to the log.
    """
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# ============================================================================
# Include Routers
# ============================================================================

# Audit history and refNo counting
app.include_router(audit.router)

# Health check and monitoring
app.include_router(health.router)


@app.get("/", tags=["root"])
async def root():
    """Basic service information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "status": "running"
    }


# ============================================================================
# Development Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "audit_ingest.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
