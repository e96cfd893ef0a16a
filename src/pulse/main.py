"""
Pulse - Main application entry point.

Serves the alert trigger API and runs the alert and retry jobs on a schedule.
"""

import sys

import uvicorn
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

from pulse.config.logging import get_logger, mask_secret, setup_logging_from_settings
from pulse.config.settings import get_missing_settings, get_settings
from pulse.ormdb.database import create_tables
from pulse.scheduler import (
    add_alert_run_job,
    add_notification_retry_job,
    list_scheduled_jobs,
    shutdown_scheduler,
    start_scheduler,
)
from pulse.services.trigger import run_alerts_sync


def initialize_application() -> None:
    """Initialize logging and the database."""
    settings = get_settings()
    setup_logging_from_settings(settings)
    create_tables()

    logger = get_logger(__name__)
    logger.info(
        "Application initialized successfully",
        environment=settings.environment,
        debug=settings.debug,
        data_dir=settings.data_directory,
        cron_secret=mask_secret(settings.cron_secret),
    )


def main() -> None:
    """Main application entry point."""
    initialize_application()

    logger = get_logger(__name__)
    settings = get_settings()

    missing = get_missing_settings()
    if missing:
        # Runs fail loudly without a cron secret; email only degrades
        logger.warning("Missing configuration", missing=missing)

    if "-once" in sys.argv:
        logger.info("Running alerts once")
        summary = run_alerts_sync()
        print(summary)
        return

    if settings.scheduler_enabled:
        start_scheduler()
        add_alert_run_job(interval_hours=settings.alert_run_interval_hours)
        add_notification_retry_job(
            interval_minutes=settings.notification_retry_interval_minutes
        )
        list_scheduled_jobs()

    logger.info(
        "Starting API server",
        host=settings.endpoint_host,
        port=settings.endpoint_port,
    )

    try:
        uvicorn.run(
            "pulse.webapi.app:app",
            host=settings.endpoint_host,
            port=settings.endpoint_port,
            reload=settings.api_reload,
            log_level=settings.api_log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    finally:
        if settings.scheduler_enabled:
            logger.info("Shutting down scheduler")
            shutdown_scheduler()


if __name__ == "__main__":
    main()
