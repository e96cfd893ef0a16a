"""Admin endpoints: manual alert runs, run status, delivery audit and integrations."""

from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterator, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...comm.telegram import TelegramApiError
from ...config.logging import get_logger
from ...config.settings import Settings
from ...ormdb.database import SessionFactory, session_scope
from ...ormdb.repositories import (
    CronRunLogRepository,
    NotificationDeliveryRepository,
    OrganizationRepository,
)
from ...services.notification import RETRY_NOTIFICATIONS_JOB
from ...services.orchestrator import RUN_ALERTS_JOB
from ...services.rate_limit import InMemoryRateLimitStore
from ...services.trigger import AlertRunGateway
from ..dependencies import (
    MemberContext,
    get_app_settings,
    get_db_session_factory,
    get_gateway,
    get_rate_limit_store,
    get_telegram_bot_factory,
    require_org_admin,
)
from ..exceptions import DatabaseError, ExternalServiceError, RateLimitError
from ..models.requests import AllOrganizationsScope, parse_manual_trigger
from ..models.responses import (
    CronRunInfo,
    CronRunListResponse,
    CronStatusResponse,
    DeliveryInfo,
    DeliveryListResponse,
    ManualTriggerResponse,
    RunSummaryModel,
    TelegramIntegrationStatus,
)

logger = get_logger(__name__)

router = APIRouter()


@contextmanager
def database_read(session_factory: SessionFactory, operation: str) -> Iterator[Session]:
    """Session scope reporting database failures as DatabaseError."""
    try:
        with session_scope(session_factory) as session:
            yield session
    except SQLAlchemyError as e:
        raise DatabaseError(operation, str(e)) from e


def job_interval(job: str, settings: Settings) -> timedelta:
    """How often a scheduled job is expected to run."""
    if job == RETRY_NOTIFICATIONS_JOB:
        return timedelta(minutes=settings.notification_retry_interval_minutes)
    return timedelta(hours=settings.alert_run_interval_hours)


@router.post(
    "/ops/run-alerts-now",
    response_model=ManualTriggerResponse,
    summary="Run Alerts Now",
    description="Trigger an alert run on behalf of an organization admin",
)
async def run_alerts_now(
    payload: Optional[Dict[str, Any]] = Body(None),
    admin: MemberContext = Depends(require_org_admin),
    store: InMemoryRateLimitStore = Depends(get_rate_limit_store),
    gateway: AlertRunGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> ManualTriggerResponse:
    """
    Run alerts immediately.

    The body selects the scope: ``{"scope": "all"}`` (default) or
    ``{"scope": "org"}`` for the caller's active organization.
    """
    request = parse_manual_trigger(payload)

    limit = settings.manual_trigger_rate_limit
    window_seconds = settings.manual_trigger_rate_window_seconds
    decision = await store.hit(f"run-alerts-now:{admin.user_id}", limit, window_seconds)
    if not decision.allowed:
        raise RateLimitError(
            "manual alert runs",
            limit,
            f"{window_seconds}s",
            retry_after=decision.retry_after,
        )

    org_ids = None if isinstance(request, AllOrganizationsScope) else [admin.org_id]

    logger.info(
        "Manual alert run requested",
        user_id=admin.user_id,
        org_id=admin.org_id,
        scope=request.scope,
        remaining=decision.remaining,
    )

    summary = await gateway.trigger_manual(admin.user_id, org_ids)
    return ManualTriggerResponse(result=RunSummaryModel(**summary.to_dict()))


@router.get(
    "/cron/status",
    response_model=CronStatusResponse,
    summary="Cron Status",
    description="Last run of a scheduled job and when the next one is expected",
)
async def cron_status(
    job: str = Query(RUN_ALERTS_JOB, description="Job name"),
    admin: MemberContext = Depends(require_org_admin),
    session_factory: SessionFactory = Depends(get_db_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> CronStatusResponse:
    """Get the last run of a job plus a hint for the next one."""
    with database_read(session_factory, "cron status lookup") as session:
        last_run = CronRunLogRepository(session).get_latest_run(job)
        if last_run is None:
            return CronStatusResponse(cron_name=job)

        return CronStatusResponse(
            cron_name=job,
            last_run=CronRunInfo.from_run_log(last_run),
            next_expected_run_hint=last_run.started_at + job_interval(job, settings),
        )


@router.get(
    "/ops/cron-runs",
    response_model=CronRunListResponse,
    summary="Recent Runs",
    description="Most recent runs of a scheduled job, newest first",
)
async def recent_cron_runs(
    request: Request,
    job: str = Query(RUN_ALERTS_JOB, description="Job name"),
    limit: int = Query(20, ge=1, le=100, description="Maximum number of runs"),
    admin: MemberContext = Depends(require_org_admin),
    session_factory: SessionFactory = Depends(get_db_session_factory),
) -> CronRunListResponse:
    """List recent runs of a job, the alert job by default."""
    with database_read(session_factory, "cron run listing") as session:
        runs = CronRunLogRepository(session).get_recent_runs(job, limit=limit)
        data = [CronRunInfo.from_run_log(run) for run in runs]

    return CronRunListResponse(
        data=data, request_id=getattr(request.state, "request_id", None)
    )


@router.get(
    "/notifications/deliveries",
    response_model=DeliveryListResponse,
    summary="Recent Deliveries",
    description="Most recent notification delivery attempts of the active organization",
)
async def recent_deliveries(
    request: Request,
    limit: int = Query(50, ge=1, le=200, description="Maximum number of deliveries"),
    alert_event_id: Optional[int] = Query(
        None, alias="alertEventId", description="Only attempts for this alert event"
    ),
    admin: MemberContext = Depends(require_org_admin),
    session_factory: SessionFactory = Depends(get_db_session_factory),
) -> DeliveryListResponse:
    """List the active organization's recent deliveries, or every attempt for one event."""
    with database_read(session_factory, "delivery listing") as session:
        deliveries = NotificationDeliveryRepository(session)
        if alert_event_id is not None:
            rows = deliveries.get_deliveries_for_event(admin.org_id, alert_event_id)
        else:
            rows = deliveries.get_recent_deliveries(admin.org_id, limit=limit)
        data = [DeliveryInfo.model_validate(row) for row in rows]

    return DeliveryListResponse(
        data=data, request_id=getattr(request.state, "request_id", None)
    )


@router.get(
    "/integrations/telegram",
    response_model=TelegramIntegrationStatus,
    summary="Telegram Integration",
    description="Whether the organization's Telegram bot is configured and its token valid",
)
async def telegram_integration(
    admin: MemberContext = Depends(require_org_admin),
    session_factory: SessionFactory = Depends(get_db_session_factory),
    settings: Settings = Depends(get_app_settings),
    bot_factory=Depends(get_telegram_bot_factory),
) -> TelegramIntegrationStatus:
    """
    Check the active organization's Telegram bot.

    The token itself is never returned, only its last four characters.
    """
    with database_read(session_factory, "organization lookup") as session:
        org = OrganizationRepository(session).get_organization(admin.org_id)
        bot_token = org.telegram_bot_token if org else None
        chat_id = org.telegram_chat_id if org else None

    if not bot_token:
        return TelegramIntegrationStatus(configured=False, chat_id=chat_id)

    bot = bot_factory(bot_token, timeout_seconds=settings.telegram_timeout_seconds)
    try:
        me = await bot.get_me()
    except TelegramApiError as e:
        raise ExternalServiceError("Telegram", "getMe", str(e)) from e

    return TelegramIntegrationStatus(
        configured=True,
        token_last4=bot_token[-4:],
        chat_id=chat_id,
        bot_username=me.get("username"),
    )
