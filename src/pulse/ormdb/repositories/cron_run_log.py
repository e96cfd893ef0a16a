"""Repository for the cron run ledger."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import desc

from ..models import CronRunLog, RunStatus
from .base import BaseRepository


class CronRunLogRepository(BaseRepository):
    """Repository for cron run log operations."""

    def start_run(self, job_name: str, run_id: str, started_at: datetime) -> CronRunLog:
        """Open a run log entry in the running state."""
        run_log = CronRunLog(
            job_name=job_name,
            run_id=run_id,
            status=RunStatus.RUNNING.value,
            started_at=started_at,
        )
        self.session.add(run_log)
        self.session.flush()
        return run_log

    def finish_run(
        self,
        run_log_id: int,
        status: RunStatus,
        finished_at: datetime,
        orgs_processed: int = 0,
        alerts_triggered: int = 0,
        sent_email: int = 0,
        sent_telegram: int = 0,
        sent_webhook: int = 0,
        sent_slack: int = 0,
        sent_teams: int = 0,
        sent_in_app: int = 0,
        error_count: int = 0,
        error_sample: Optional[List[str]] = None,
        last_error: Optional[str] = None,
    ) -> CronRunLog:
        """Finalize a run log entry with its counts."""
        run_log = self.session.get(CronRunLog, run_log_id)
        run_log.status = status.value
        run_log.finished_at = finished_at
        run_log.duration_ms = int(
            (finished_at - run_log.started_at).total_seconds() * 1000
        )
        run_log.orgs_processed = orgs_processed
        run_log.alerts_triggered = alerts_triggered
        run_log.sent_email = sent_email
        run_log.sent_telegram = sent_telegram
        run_log.sent_webhook = sent_webhook
        run_log.sent_slack = sent_slack
        run_log.sent_teams = sent_teams
        run_log.sent_in_app = sent_in_app
        run_log.error_count = error_count
        run_log.error_sample = error_sample or []
        run_log.last_error = last_error
        self.session.flush()
        return run_log

    def get_latest_run(self, job_name: str) -> Optional[CronRunLog]:
        """Get the most recent run of a job."""
        return (
            self.session.query(CronRunLog)
            .filter(CronRunLog.job_name == job_name)
            .order_by(desc(CronRunLog.started_at), desc(CronRunLog.id))
            .first()
        )

    def get_recent_runs(
        self, job_name: Optional[str] = None, limit: int = 20
    ) -> List[CronRunLog]:
        """Get recent runs, optionally for one job only."""
        query = self.session.query(CronRunLog)
        if job_name:
            query = query.filter(CronRunLog.job_name == job_name)
        return query.order_by(desc(CronRunLog.started_at), desc(CronRunLog.id)).limit(limit).all()

    def count_runs(self) -> int:
        """Count every run log entry."""
        return self.session.query(CronRunLog).count()
