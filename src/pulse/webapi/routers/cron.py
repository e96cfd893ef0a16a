"""Scheduled triggers authenticated by the shared cron secret."""

from typing import Optional

from fastapi import APIRouter, Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ...config.logging import get_logger
from ...services.trigger import AlertRunGateway
from ..dependencies import get_gateway
from ..models.responses import RetrySummaryModel, RunSummaryModel

logger = get_logger(__name__)

router = APIRouter()

cron_bearer = HTTPBearer(auto_error=False)


@router.post(
    "/cron/run-alerts",
    response_model=RunSummaryModel,
    summary="Run Alerts",
    description="Evaluate every organization's alert rules and dispatch notifications",
)
async def run_alerts(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(cron_bearer),
    gateway: AlertRunGateway = Depends(get_gateway),
) -> RunSummaryModel:
    """
    Run alerts for all organizations.

    Requires ``Authorization: Bearer <CRON_SECRET>``. Individual
    organization or channel failures are reported in the body, never as an
    error status.
    """
    presented = credentials.credentials if credentials else None
    summary = await gateway.trigger(presented)
    return RunSummaryModel(**summary.to_dict())


@router.post(
    "/cron/retry-notifications",
    response_model=RetrySummaryModel,
    summary="Retry Notifications",
    description="Send failed notification deliveries again once their backoff has elapsed",
)
async def retry_notifications(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(cron_bearer),
    gateway: AlertRunGateway = Depends(get_gateway),
) -> RetrySummaryModel:
    """
    Retry due notification deliveries.

    Requires ``Authorization: Bearer <CRON_SECRET>``. A delivery is tried
    at most four times in total, waiting 5 minutes, 30 minutes, then 2
    hours between attempts.
    """
    presented = credentials.credentials if credentials else None
    summary = await gateway.trigger_retries(presented)
    return RetrySummaryModel(**summary.to_dict())
