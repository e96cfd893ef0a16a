"""Retry of failed notification deliveries with backoff."""

import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ...config.logging import get_logger, log_performance
from ...config.settings import Settings, get_settings
from ...ormdb.database import session_scope
from ...ormdb.models import RunStatus
from ...ormdb.repositories import CronRunLogRepository, NotificationDeliveryRepository
from ...webapi.exceptions import NotFoundError, RunFailedError
from .models import DispatchResult, NotificationChannel, NotificationResult
from .service import NotificationDispatcher, OrgChannelConfig, PlannedDelivery

logger = get_logger(__name__)

RETRY_NOTIFICATIONS_JOB = "retry-notifications"

STALE_DELIVERY_ERROR = "Delivery did not complete"
MISSING_CONFIGURATION_ERROR = "Cannot retry: missing configuration"


@dataclass
class DueDelivery:
    """A retry claimed by this run, detached from its session."""

    id: int
    org_id: int
    alert_event_id: Optional[int]
    channel: str
    recipient: Optional[str]
    attempt: int


@dataclass
class RetrySummary:
    """Outcome of one retry run."""

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    requeued: int = 0
    orgs: int = 0
    deliveries: DispatchResult = field(default_factory=DispatchResult)
    errors: List[str] = field(default_factory=list)
    error_sample_size: int = 10

    @property
    def success_count(self) -> int:
        return self.deliveries.sent_total

    @property
    def fail_count(self) -> int:
        return self.deliveries.failed

    @property
    def status(self) -> RunStatus:
        return RunStatus.ERROR if self.errors else RunStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape returned by the retry endpoint."""
        return {
            "message": f"Retried {self.processed} notification deliveries",
            "runId": self.run_id,
            "processed": self.processed,
            "requeued": self.requeued,
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "errorsCount": len(self.errors),
            "errors": self.errors[: self.error_sample_size],
        }


class DeliveryRetrier:
    """
    Sends due ``retrying`` deliveries again.

    Each due row is claimed with a compare-and-set from ``retrying`` to
    ``pending`` so that overlapping runs never send it twice. Recipients
    are resolved again from the organization's current configuration: a
    chat, address or endpoint that was removed since is not retried.
    Pending rows left behind by a crashed or failed dispatch are requeued
    first once they are stale.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        settings: Optional[Settings] = None,
    ):
        self.dispatcher = dispatcher
        self.session_factory = dispatcher.session_factory
        self.clock = dispatcher.clock
        self.settings = settings or get_settings()
        self.logger = logger.bind(service="delivery_retrier")

    async def retry_due_deliveries(self) -> RetrySummary:
        """
        Run one retry pass.

        Raises:
            RunFailedError: If the run could not start or load due deliveries
        """
        run_id = str(uuid.uuid4())
        summary = RetrySummary(
            run_id=run_id,
            started_at=self.clock(),
            error_sample_size=self.settings.error_sample_size,
        )
        start_time = time.monotonic()
        run_logger = self.logger.bind(run_id=run_id)

        try:
            run_log_id = self._open_run_log(run_id, summary.started_at)
        except Exception as e:
            run_logger.error("Could not open run log", error=str(e), exc_info=True)
            raise RunFailedError(f"Could not open run log: {e}") from e

        try:
            summary.requeued = self.requeue_stale_deliveries()
            due = self.claim_due_deliveries()
        except Exception as e:
            run_logger.error("Could not load due deliveries", error=str(e), exc_info=True)
            summary.errors.append(f"Failed to load due deliveries: {e}")
            summary.finished_at = self.clock()
            self._close_run_log(run_log_id, summary)
            raise RunFailedError(f"Failed to load due deliveries: {e}") from e

        summary.processed = len(due)

        by_org: Dict[int, Dict[Optional[int], List[DueDelivery]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for delivery in due:
            by_org[delivery.org_id][delivery.alert_event_id].append(delivery)
        summary.orgs = len(by_org)

        for org_id, by_event in by_org.items():
            await self._retry_org(org_id, by_event, summary)

        summary.finished_at = self.clock()
        self._close_run_log(run_log_id, summary)

        log_performance(
            "notification_retry",
            (time.monotonic() - start_time) * 1000,
            run_id=run_id,
            deliveries=summary.processed,
        )
        run_logger.info(
            "Notification retry finished",
            status=summary.status.value,
            processed=summary.processed,
            requeued=summary.requeued,
            success_count=summary.success_count,
            fail_count=summary.fail_count,
        )
        return summary

    def requeue_stale_deliveries(self) -> int:
        """
        Fail pending deliveries that never completed and queue their next attempt.

        Returns:
            Number of stale deliveries found
        """
        now = self.clock()
        cutoff = now - timedelta(minutes=self.settings.delivery_stale_after_minutes)

        with session_scope(self.session_factory) as session:
            deliveries = NotificationDeliveryRepository(session)
            stale = deliveries.get_stale_pending(
                cutoff, limit=self.settings.notification_retry_batch_size
            )
            for delivery in stale:
                deliveries.finish_delivery(delivery.id, False, STALE_DELIVERY_ERROR, now)
                if self.dispatcher.next_retry_at(delivery.attempt, now) is not None:
                    # The backoff elapsed while the row sat stale
                    deliveries.schedule_retry(delivery.id, now, now)

        if stale:
            self.logger.warning("Requeued stale deliveries", count=len(stale))
        return len(stale)

    def claim_due_deliveries(self) -> List[DueDelivery]:
        """Claim due retries, up to the configured batch size."""
        now = self.clock()
        claimed = []

        with session_scope(self.session_factory) as session:
            deliveries = NotificationDeliveryRepository(session)
            for row in deliveries.get_due_retries(
                now, limit=self.settings.notification_retry_batch_size
            ):
                if deliveries.claim_retry(row.id, now):
                    claimed.append(
                        DueDelivery(
                            id=row.id,
                            org_id=row.org_id,
                            alert_event_id=row.alert_event_id,
                            channel=row.channel,
                            recipient=row.recipient,
                            attempt=row.attempt,
                        )
                    )
        return claimed

    async def _retry_org(
        self,
        org_id: int,
        by_event: Dict[Optional[int], List[DueDelivery]],
        summary: RetrySummary,
    ) -> None:
        dispatcher = self.dispatcher
        try:
            config = dispatcher.load_channel_config(org_id)
        except Exception as e:
            # Claimed rows stay pending and come back once stale
            self.logger.error(
                "Failed to load channel configuration", org_id=org_id, error=str(e)
            )
            summary.errors.append(f"Failed to load channel configuration for org {org_id}: {e}")
            return

        for event_id, due in by_event.items():
            try:
                notice = dispatcher.load_notice(config, event_id) if event_id else None
            except NotFoundError:
                notice = None
            except Exception as e:
                self.logger.error("Failed to load alert event", event_id=event_id, error=str(e))
                summary.errors.append(f"Failed to retry deliveries of event {event_id}: {e}")
                continue

            sendable, unsendable = self._resolve(config, due, notice is not None)

            results = await dispatcher.send_planned(notice, sendable) if sendable else []
            planned = sendable + [delivery for delivery, _ in unsendable]
            results = results + [outcome for _, outcome in unsendable]

            errors_before = len(summary.deliveries.errors)
            dispatcher.record_outcomes(event_id, planned, results, summary.deliveries)
            dispatcher.tally(planned, results, summary.deliveries)
            summary.errors.extend(summary.deliveries.errors[errors_before:])

    @staticmethod
    def _resolve(
        config: OrgChannelConfig, due: List[DueDelivery], has_notice: bool
    ) -> Tuple[List[PlannedDelivery], List[Tuple[PlannedDelivery, NotificationResult]]]:
        sendable = []
        unsendable = []
        for delivery in due:
            channel = NotificationChannel(delivery.channel)
            options = config.send_options(channel, delivery.recipient)
            planned = PlannedDelivery(
                channel=channel,
                recipient=delivery.recipient,
                options=options or {},
                delivery_id=delivery.id,
                attempt=delivery.attempt,
            )

            if has_notice and options is not None:
                sendable.append(planned)
                continue

            unsendable.append(
                (
                    planned,
                    NotificationResult(
                        channel=planned.channel,
                        success=False,
                        recipient=delivery.recipient,
                        error=MISSING_CONFIGURATION_ERROR,
                        delivery_time_ms=0,
                        retryable=False,
                    ),
                )
            )
        return sendable, unsendable

    def _open_run_log(self, run_id: str, started_at: datetime) -> int:
        with session_scope(self.session_factory) as session:
            run_log = CronRunLogRepository(session).start_run(
                RETRY_NOTIFICATIONS_JOB, run_id, started_at
            )
            return run_log.id

    def _close_run_log(self, run_log_id: int, summary: RetrySummary) -> None:
        max_length = self.settings.error_message_max_length
        sample = [error[:max_length] for error in summary.errors[: summary.error_sample_size]]
        deliveries = summary.deliveries

        try:
            with session_scope(self.session_factory) as session:
                CronRunLogRepository(session).finish_run(
                    run_log_id,
                    status=summary.status,
                    finished_at=summary.finished_at or self.clock(),
                    orgs_processed=summary.orgs,
                    sent_email=deliveries.sent_email,
                    sent_telegram=deliveries.sent_telegram,
                    sent_webhook=deliveries.sent_webhook,
                    sent_slack=deliveries.sent_slack,
                    sent_teams=deliveries.sent_teams,
                    error_count=len(summary.errors),
                    error_sample=sample,
                    last_error=sample[0] if sample else None,
                )
        except Exception as e:
            self.logger.error(
                "Could not finalize run log",
                run_log_id=run_log_id,
                error=str(e),
                exc_info=True,
            )
