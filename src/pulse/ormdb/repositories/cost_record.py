"""Repository for cost record queries."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..models import CostRecord
from .base import BaseRepository


class CostRecordRepository(BaseRepository):
    """Read access to cost records, scoped by organization and date range."""

    def sum_amount_eur(
        self,
        org_id: int,
        start: datetime,
        end: datetime,
        include_end: bool = True,
    ) -> Decimal:
        """
        Sum normalized EUR amounts for an organization in a date range.

        Args:
            org_id: Organization ID
            start: Inclusive range start
            end: Range end
            include_end: Whether records dated exactly at ``end`` count

        Returns:
            Exact Decimal sum, zero when there are no records
        """
        end_clause = CostRecord.date <= end if include_end else CostRecord.date < end
        amounts = (
            self.session.query(CostRecord.amount_eur)
            .filter(
                CostRecord.org_id == org_id,
                CostRecord.date >= start,
                end_clause,
            )
            .all()
        )
        # Summed in Python so SQLite's float arithmetic never touches the values
        return sum((Decimal(str(row.amount_eur)) for row in amounts), Decimal("0"))

    def add_cost(
        self,
        org_id: int,
        date: datetime,
        amount_eur: Decimal,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
        provider: Optional[str] = None,
        service: Optional[str] = None,
    ) -> CostRecord:
        """Record a cost line already normalized to EUR."""
        record = CostRecord(
            org_id=org_id,
            date=date,
            amount=amount if amount is not None else amount_eur,
            currency=currency,
            amount_eur=amount_eur,
            provider=provider,
            service=service,
        )
        self.session.add(record)
        self.session.flush()
        return record
