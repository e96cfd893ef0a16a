"""Spend aggregation over rolling and calendar windows."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..config.logging import get_logger
from ..ormdb.repositories import CostRecordRepository, OrganizationRepository
from ..utils.clock import days_before, start_of_day, start_of_month, utcnow
from ..webapi.exceptions import NotFoundError

logger = get_logger(__name__)


@dataclass
class SpendWindow:
    """Aggregated spend over a concrete date range."""

    amount_eur: Decimal
    start: datetime
    end: datetime


class CostAggregator:
    """
    Read-only spend queries for one organization at a time.

    All amounts are EUR-normalized at import time and summed as ``Decimal``,
    so no rounding happens until the value is formatted for a human.
    """

    def __init__(self, session: Session):
        self.session = session
        self.costs = CostRecordRepository(session)
        self.organizations = OrganizationRepository(session)
        self.logger = logger.bind(service="cost_aggregator")

    def _require_org(self, org_id: int) -> None:
        if self.organizations.get_organization(org_id) is None:
            raise NotFoundError("Organization", str(org_id))

    def trailing_window(
        self, org_id: int, window_days: int, now: Optional[datetime] = None
    ) -> SpendWindow:
        """Spend over ``[now - window_days, now]``."""
        if window_days < 1:
            raise ValueError("window_days must be at least 1")
        self._require_org(org_id)

        end = now or utcnow()
        start = days_before(end, window_days)
        amount = self.costs.sum_amount_eur(org_id, start, end)

        self.logger.debug(
            "Trailing window aggregated",
            org_id=org_id,
            window_days=window_days,
            amount_eur=str(amount),
        )
        return SpendWindow(amount_eur=amount, start=start, end=end)

    def month_to_date(self, org_id: int, now: Optional[datetime] = None) -> SpendWindow:
        """Spend since midnight on the first day of the current month."""
        self._require_org(org_id)

        end = now or utcnow()
        start = start_of_month(end)
        amount = self.costs.sum_amount_eur(org_id, start, end)
        return SpendWindow(amount_eur=amount, start=start, end=end)

    def today(self, org_id: int, now: Optional[datetime] = None) -> SpendWindow:
        """Spend since midnight today."""
        self._require_org(org_id)

        end = now or utcnow()
        start = start_of_day(end)
        amount = self.costs.sum_amount_eur(org_id, start, end)
        return SpendWindow(amount_eur=amount, start=start, end=end)

    def daily_baseline(
        self, org_id: int, lookback_days: int, now: Optional[datetime] = None
    ) -> Decimal:
        """Average daily spend over the ``lookback_days`` days before today."""
        if lookback_days < 1:
            raise ValueError("lookback_days must be at least 1")
        self._require_org(org_id)

        today = start_of_day(now or utcnow())
        total = self.costs.sum_amount_eur(
            org_id, days_before(today, lookback_days), today, include_end=False
        )
        return total / lookback_days


def aggregate_spend(
    session: Session, org_id: int, window_days: int, now: Optional[datetime] = None
) -> Decimal:
    """
    Sum an organization's spend over a trailing window.

    Args:
        session: Database session
        org_id: Organization ID, must exist
        window_days: Window length in days, at least 1
        now: Evaluation time, defaults to the current UTC time

    Returns:
        EUR amount, zero when there are no cost records
    """
    return CostAggregator(session).trailing_window(org_id, window_days, now).amount_eur
