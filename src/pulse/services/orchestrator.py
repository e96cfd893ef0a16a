"""Alert run orchestration across organizations."""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config.logging import get_logger, log_performance
from ..config.settings import Settings, get_settings
from ..ormdb.database import SessionFactory, get_session_factory, session_scope
from ..ormdb.models import RunStatus
from ..ormdb.repositories import (
    AlertEventRepository,
    CronRunLogRepository,
    OrganizationRepository,
)
from ..utils.clock import Clock, utcnow
from ..utils.concurrency import Ok, Result, gather_settled
from ..webapi.exceptions import RunFailedError
from .notification import NotificationDispatcher
from .rule_evaluator import RuleEvaluator

logger = get_logger(__name__)

RUN_ALERTS_JOB = "run-alerts"


@dataclass
class OrgRunResult:
    """What one organization contributed to a run."""

    org_id: int
    triggered: int = 0
    cleared: int = 0
    sent_email: int = 0
    sent_telegram: int = 0
    sent_webhook: int = 0
    sent_slack: int = 0
    sent_teams: int = 0
    sent_in_app: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class RunSummary:
    """Aggregated outcome of one run over some or all organizations."""

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed_orgs: int = 0
    triggered: int = 0
    sent_email: int = 0
    sent_telegram: int = 0
    sent_webhook: int = 0
    sent_slack: int = 0
    sent_teams: int = 0
    sent_in_app: int = 0
    errors: List[str] = field(default_factory=list)
    org_results: Dict[int, Result] = field(default_factory=dict)
    error_sample_size: int = 10

    @property
    def errors_count(self) -> int:
        return len(self.errors)

    @property
    def status(self) -> RunStatus:
        return RunStatus.ERROR if self.errors else RunStatus.OK

    def add_org_result(self, org_result: OrgRunResult) -> None:
        self.triggered += org_result.triggered
        self.sent_email += org_result.sent_email
        self.sent_telegram += org_result.sent_telegram
        self.sent_webhook += org_result.sent_webhook
        self.sent_slack += org_result.sent_slack
        self.sent_teams += org_result.sent_teams
        self.sent_in_app += org_result.sent_in_app
        self.errors.extend(org_result.errors)

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape returned by the trigger endpoints."""
        return {
            "message": f"Alerts dispatch completed for {self.processed_orgs} organizations",
            "runId": self.run_id,
            "processedOrgs": self.processed_orgs,
            "triggered": self.triggered,
            "sentEmail": self.sent_email,
            "sentTelegram": self.sent_telegram,
            "sentWebhook": self.sent_webhook,
            "sentSlack": self.sent_slack,
            "sentTeams": self.sent_teams,
            "sentInApp": self.sent_in_app,
            "errorsCount": self.errors_count,
            "errors": self.errors[: self.error_sample_size],
        }


class AlertRunOrchestrator:
    """
    Runs evaluate-then-dispatch for every organization.

    Organizations are processed concurrently and settled independently: an
    exception in one becomes an entry in the run's error list and never
    stops the others. Only failing to load the organization list is fatal.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        evaluator: Optional[RuleEvaluator] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock
        self.evaluator = evaluator or RuleEvaluator(self.session_factory, clock=clock)
        self.dispatcher = dispatcher or NotificationDispatcher(
            self.session_factory, settings=self.settings, clock=clock
        )
        self.logger = logger.bind(service="alert_orchestrator")

    async def run_alerts_for_org(self, org_id: int) -> OrgRunResult:
        """
        Evaluate one organization's rules and dispatch what triggered.

        Besides the events of this run, events an earlier run created but
        failed to dispatch are delivered too, as long as their rule is
        still latched.

        Raises:
            NotFoundError: If the organization does not exist
        """
        # Evaluation is blocking database work, keep it off the event loop
        evaluation = await asyncio.to_thread(self.evaluator.evaluate_rules, org_id)

        result = OrgRunResult(
            org_id=org_id,
            triggered=len(evaluation.triggered_now),
            cleared=len(evaluation.cleared),
            errors=list(evaluation.errors),
        )

        event_ids = [evaluation.events[rule_id].id for rule_id in evaluation.triggered_now]
        try:
            undispatched = await asyncio.to_thread(self._undispatched_event_ids, org_id)
        except Exception as e:
            self.logger.error(
                "Could not list undispatched events", org_id=org_id, error=str(e)
            )
            result.errors.append(f"Failed to list undispatched events for org {org_id}: {e}")
            undispatched = []
        event_ids.extend(event_id for event_id in undispatched if event_id not in event_ids)

        if event_ids:
            dispatch = await self.dispatcher.dispatch(org_id, event_ids)
            result.sent_email = dispatch.sent_email
            result.sent_telegram = dispatch.sent_telegram
            result.sent_webhook = dispatch.sent_webhook
            result.sent_slack = dispatch.sent_slack
            result.sent_teams = dispatch.sent_teams
            result.sent_in_app = dispatch.sent_in_app
            result.errors.extend(dispatch.errors)

        return result

    async def run_alerts_for_all_orgs(
        self, org_ids: Optional[List[int]] = None
    ) -> RunSummary:
        """
        Run alerts for every organization, or for the given subset.

        A CronRunLog entry is opened before processing and finalized after,
        whatever the individual organizations did.

        Args:
            org_ids: Restrict the run to these organizations

        Returns:
            RunSummary of the whole run

        Raises:
            RunFailedError: If the run could not start or list organizations
        """
        run_id = str(uuid.uuid4())
        summary = RunSummary(
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
            if org_ids is None:
                org_ids = self._list_org_ids()
        except Exception as e:
            run_logger.error("Could not list organizations", error=str(e), exc_info=True)
            summary.errors.append(f"Failed to list organizations: {e}")
            summary.finished_at = self.clock()
            self._close_run_log(run_log_id, summary)
            raise RunFailedError(f"Failed to list organizations: {e}") from e

        run_logger.info("Alert run started", organizations=len(org_ids))

        outcomes = await gather_settled(
            self.run_alerts_for_org(org_id) for org_id in org_ids
        )

        summary.processed_orgs = len(org_ids)
        for org_id, outcome in zip(org_ids, outcomes):
            summary.org_results[org_id] = outcome
            if isinstance(outcome, Ok):
                summary.add_org_result(outcome.value)
            else:
                run_logger.error(
                    "Organization failed during alert run",
                    org_id=org_id,
                    error=str(outcome.error),
                    exc_info=outcome.error,
                )
                summary.errors.append(f"Org {org_id}: {outcome.error}")

        summary.finished_at = self.clock()
        self._close_run_log(run_log_id, summary)

        duration_ms = (time.monotonic() - start_time) * 1000
        log_performance("alert_run", duration_ms, run_id=run_id, organizations=len(org_ids))
        run_logger.info(
            "Alert run finished",
            status=summary.status.value,
            processed_orgs=summary.processed_orgs,
            triggered=summary.triggered,
            sent_email=summary.sent_email,
            sent_telegram=summary.sent_telegram,
            sent_webhook=summary.sent_webhook,
            sent_slack=summary.sent_slack,
            sent_teams=summary.sent_teams,
            sent_in_app=summary.sent_in_app,
            errors_count=summary.errors_count,
        )
        return summary

    def _undispatched_event_ids(self, org_id: int) -> List[int]:
        with session_scope(self.session_factory) as session:
            events = AlertEventRepository(session).get_undispatched_events(org_id)
            return [event.id for event in events]

    def _list_org_ids(self) -> List[int]:
        with session_scope(self.session_factory) as session:
            return OrganizationRepository(session).list_organization_ids()

    def _open_run_log(self, run_id: str, started_at: datetime) -> int:
        with session_scope(self.session_factory) as session:
            run_log = CronRunLogRepository(session).start_run(
                RUN_ALERTS_JOB, run_id, started_at
            )
            return run_log.id

    def _close_run_log(self, run_log_id: int, summary: RunSummary) -> None:
        max_length = self.settings.error_message_max_length
        sample = [
            error[:max_length] for error in summary.errors[: summary.error_sample_size]
        ]

        try:
            with session_scope(self.session_factory) as session:
                CronRunLogRepository(session).finish_run(
                    run_log_id,
                    status=summary.status,
                    finished_at=summary.finished_at or self.clock(),
                    orgs_processed=summary.processed_orgs,
                    alerts_triggered=summary.triggered,
                    sent_email=summary.sent_email,
                    sent_telegram=summary.sent_telegram,
                    sent_webhook=summary.sent_webhook,
                    sent_slack=summary.sent_slack,
                    sent_teams=summary.sent_teams,
                    sent_in_app=summary.sent_in_app,
                    error_count=summary.errors_count,
                    error_sample=sample,
                    last_error=sample[0] if sample else None,
                )
        except Exception as e:
            # The summary is still returned to the caller
            self.logger.error(
                "Could not finalize run log",
                run_log_id=run_log_id,
                error=str(e),
                exc_info=True,
            )
