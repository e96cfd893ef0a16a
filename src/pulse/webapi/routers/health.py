"""Health check endpoint for the Pulse API."""

import time
from importlib.metadata import PackageNotFoundError, version

from fastapi import APIRouter, Depends

from ...config.logging import get_logger
from ...config.settings import Settings
from ...ormdb.database import SessionFactory, check_database_health
from ..dependencies import get_app_settings, get_db_session_factory
from ..models.responses import HealthResponse, HealthStatus

logger = get_logger(__name__)
router = APIRouter()

# Track application start time for uptime calculation
_app_start_time = time.time()


def _package_version() -> str:
    try:
        return version("pulse")
    except PackageNotFoundError:
        return "unknown"


def check_configuration_health(settings: Settings) -> dict:
    """Report which optional integrations are configured."""
    checks = {
        "cron_secret_configured": bool(settings.cron_secret),
        "email_configured": bool(settings.resend_api_key),
    }
    return {
        "status": "healthy" if checks["cron_secret_configured"] else "degraded",
        "checks": checks,
    }


@router.get("/health", response_model=HealthResponse, summary="Basic Health Check")
async def basic_health_check(
    session_factory: SessionFactory = Depends(get_db_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """
    Perform a basic health check.

    Returns the database connectivity and whether the alert run can be
    triggered at all.
    """
    uptime_seconds = time.time() - _app_start_time

    services = {
        "database": check_database_health(session_factory),
        "configuration": check_configuration_health(settings),
    }

    statuses = [service["status"] for service in services.values()]
    if "unhealthy" in statuses:
        overall_status = "unhealthy"
    elif "degraded" in statuses:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    health_status = HealthStatus(
        status=overall_status,
        services=services,
        uptime_seconds=uptime_seconds,
        version=_package_version(),
    )

    logger.debug("Basic health check completed", status=overall_status)
    return HealthResponse(success=True, health=health_status)
