"""The single code path behind scheduled and manual alert and retry runs."""

import asyncio
import hmac
from typing import Any, Dict, List, Optional

from ..config.logging import get_logger, log_audit_event
from ..config.settings import Settings, get_settings
from ..webapi.exceptions import AuthenticationError, ConfigurationError
from .notification import DeliveryRetrier, RetrySummary
from .orchestrator import AlertRunOrchestrator, RunSummary

logger = get_logger(__name__)


def verify_cron_secret(configured: Optional[str], presented: Optional[str]) -> None:
    """
    Check a presented shared secret against the configured one.

    Raises:
        ConfigurationError: If no secret is configured
        AuthenticationError: If the presented secret is missing or wrong
    """
    if not configured:
        logger.error("Cron secret not configured")
        raise ConfigurationError("CRON_SECRET", "not configured")

    if not presented or not hmac.compare_digest(
        presented.encode("utf-8"), configured.encode("utf-8")
    ):
        logger.warning(
            "Invalid cron authentication attempt",
            provided_secret_length=len(presented) if presented else 0,
        )
        raise AuthenticationError("Invalid cron secret")


class AlertRunGateway:
    """Authenticates a run request with the shared secret, then runs it."""

    def __init__(self, orchestrator: AlertRunOrchestrator, settings: Optional[Settings] = None):
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()

    async def trigger(
        self, presented_secret: Optional[str], org_ids: Optional[List[int]] = None
    ) -> RunSummary:
        """Run alerts after verifying the shared secret."""
        verify_cron_secret(self.settings.cron_secret, presented_secret)
        return await self.orchestrator.run_alerts_for_all_orgs(org_ids)

    async def trigger_manual(
        self, user_id: int, org_ids: Optional[List[int]] = None
    ) -> RunSummary:
        """
        Run alerts on behalf of an admin.

        Goes through ``trigger`` with the server-side secret, so a manual run
        fails exactly like a scheduled one when the secret is missing.
        """
        log_audit_event(
            "manual_alert_run",
            user_id=str(user_id),
            scope="all" if org_ids is None else "org",
            org_ids=org_ids,
        )
        return await self.trigger(self.settings.cron_secret, org_ids)

    async def trigger_retries(self, presented_secret: Optional[str]) -> RetrySummary:
        """Retry due notification deliveries after verifying the shared secret."""
        verify_cron_secret(self.settings.cron_secret, presented_secret)
        retrier = DeliveryRetrier(self.orchestrator.dispatcher, self.settings)
        return await retrier.retry_due_deliveries()


def run_alerts_sync() -> Dict[str, Any]:
    """Scheduler entry point: run alerts for every organization."""
    settings = get_settings()
    gateway = AlertRunGateway(AlertRunOrchestrator(settings=settings), settings)
    summary = asyncio.run(gateway.trigger(settings.cron_secret))
    return summary.to_dict()


def retry_notifications_sync() -> Dict[str, Any]:
    """Scheduler entry point: retry due notification deliveries."""
    settings = get_settings()
    gateway = AlertRunGateway(AlertRunOrchestrator(settings=settings), settings)
    summary = asyncio.run(gateway.trigger_retries(settings.cron_secret))
    return summary.to_dict()
