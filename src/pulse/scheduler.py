"""Scheduler configuration using SQLAlchemy job store."""

import os

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from .config.logging import get_logger
from .config.settings import get_settings

logger = get_logger(__name__)

ALERT_RUN_JOB_ID = "run_alerts"
ALERT_RUN_FUNC = "pulse.services.trigger:run_alerts_sync"
NOTIFICATION_RETRY_JOB_ID = "retry_notifications"
NOTIFICATION_RETRY_FUNC = "pulse.services.trigger:retry_notifications_sync"


def create_scheduler(database_url: str = None) -> BackgroundScheduler:
    """
    Create and configure a BackgroundScheduler with SQLAlchemy job store.

    Args:
        database_url: Job store database, defaults to the application database

    Returns:
        Configured BackgroundScheduler instance
    """
    # Configure job store using the same database as our application
    jobstores = {
        "default": SQLAlchemyJobStore(
            url=database_url or get_settings().get_database_url(),
            tablename="apscheduler_jobs",
        )
    }

    executors = {
        "default": ThreadPoolExecutor(
            max_workers=int(os.getenv("SCHEDULER_MAX_WORKERS", "3"))
        )
    }

    job_defaults = {
        "coalesce": False,  # Don't combine multiple missed executions
        "max_instances": 1,  # Only one run of each job at a time
        "misfire_grace_time": 300,
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone="UTC",
    )

    scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
    scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
    scheduler.add_listener(job_skipped_listener, EVENT_JOB_MAX_INSTANCES)

    return scheduler


def job_executed_listener(event):
    """Log successful job executions."""
    logger.info(
        "Scheduled job executed",
        job_id=event.job_id,
        scheduled_run_time=str(event.scheduled_run_time),
        result=event.retval,
    )


def job_error_listener(event):
    """Log job execution errors."""
    logger.error(
        "Scheduled job crashed",
        job_id=event.job_id,
        error=str(event.exception),
        traceback=event.traceback,
    )


def job_skipped_listener(event):
    """Log runs skipped because the previous one is still going."""
    logger.warning(
        "Scheduled job skipped, previous run still active",
        job_id=event.job_id,
        scheduled_run_time=str(event.scheduled_run_time),
    )


def get_global_scheduler() -> BackgroundScheduler:
    """
    Get or create the global scheduler instance.

    Returns:
        Global BackgroundScheduler instance
    """
    if not hasattr(get_global_scheduler, "_scheduler"):
        get_global_scheduler._scheduler = create_scheduler()

    return get_global_scheduler._scheduler


def start_scheduler():
    """Start the global scheduler."""
    scheduler = get_global_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started with SQLAlchemy job store")


def shutdown_scheduler():
    """Shutdown the global scheduler."""
    scheduler = get_global_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler shutdown complete")


def add_alert_run_job(interval_hours: int = 2, scheduler: BackgroundScheduler = None):
    """
    Add the alert run job to the scheduler.

    Args:
        interval_hours: How often to run alerts (default: 2 hours)
        scheduler: Scheduler to add to, defaults to the global one
    """
    scheduler = scheduler or get_global_scheduler()

    try:
        scheduler.remove_job(ALERT_RUN_JOB_ID)
    except JobLookupError:
        pass

    # Module reference keeps the job serializable for the SQLAlchemy store
    scheduler.add_job(
        func=ALERT_RUN_FUNC,
        trigger="interval",
        hours=interval_hours,
        id=ALERT_RUN_JOB_ID,
        name="Alert Run",
        replace_existing=True,
    )

    logger.info("Added alert run job", interval_hours=interval_hours)


def add_notification_retry_job(
    interval_minutes: int = 5, scheduler: BackgroundScheduler = None
):
    """
    Add the notification retry job to the scheduler.

    Args:
        interval_minutes: How often to look for due retries (default: 5 minutes)
        scheduler: Scheduler to add to, defaults to the global one
    """
    scheduler = scheduler or get_global_scheduler()

    try:
        scheduler.remove_job(NOTIFICATION_RETRY_JOB_ID)
    except JobLookupError:
        pass

    scheduler.add_job(
        func=NOTIFICATION_RETRY_FUNC,
        trigger="interval",
        minutes=interval_minutes,
        id=NOTIFICATION_RETRY_JOB_ID,
        name="Notification Retry",
        replace_existing=True,
    )

    logger.info("Added notification retry job", interval_minutes=interval_minutes)


def list_scheduled_jobs(scheduler: BackgroundScheduler = None) -> list:
    """List all currently scheduled jobs."""
    scheduler = scheduler or get_global_scheduler()
    jobs = scheduler.get_jobs()

    if not jobs:
        logger.info("No scheduled jobs")
        return []

    for job in jobs:
        logger.info(
            "Scheduled job",
            job_id=job.id,
            name=job.name,
            next_run_time=str(getattr(job, "next_run_time", None)),
        )
    return jobs
