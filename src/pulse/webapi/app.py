"""FastAPI application for the Pulse alert engine."""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..config.logging import get_logger
from ..config.settings import get_settings
from ..ormdb.database import create_tables
from ..services.rate_limit import InMemoryRateLimitStore
from .exceptions import setup_exception_handlers
from .routers import admin_router, cron_router, health_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Pulse API")

    try:
        create_tables()
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e), exc_info=True)
        raise RuntimeError(f"Database initialization failed: {str(e)}")

    logger.info("Pulse API started successfully")

    yield

    purged = await app.state.rate_limit_store.purge_expired()
    logger.info("Pulse API shutdown completed", purged_rate_limit_windows=purged)


async def add_request_id_middleware(request: Request, call_next):
    """Add unique request ID to each request for tracking."""
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    # Authorization is never logged
    logger.info(
        "Request started",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        query_params=str(request.query_params),
        user_agent=request.headers.get("user-agent"),
        remote_addr=request.client.host if request.client else None,
    )

    response = await call_next(request)

    response.headers["X-Request-ID"] = request_id

    logger.info(
        "Request completed",
        request_id=request_id,
        status_code=response.status_code,
        method=request.method,
        path=request.url.path,
    )

    return response


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Pulse API",
        description="""
        Cloud cost alert evaluation and dispatch.

        * **Scheduled runs**: `POST /api/cron/run-alerts` with the shared cron secret
        * **Manual runs**: `POST /api/admin/ops/run-alerts-now` for organization admins
        * **Run status**: last run, run ledger and notification delivery audit
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production() else None,
        redoc_url=None,
        openapi_url="/openapi.json",
    )

    # One store per application, shared by every request
    app.state.rate_limit_store = InMemoryRateLimitStore()

    app.middleware("http")(add_request_id_middleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_exception_handlers(app)

    app.include_router(health_router, prefix="/api/v1", tags=["Health & Status"])
    app.include_router(cron_router, prefix="/api", tags=["Cron"])
    app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])

    logger.info("FastAPI application created")
    return app


# Create the application instance
app = create_app()
