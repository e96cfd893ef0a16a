"""Repository for the append-only alert event trail and its dispatch claims."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..models import AlertDispatch, AlertEvent, AlertRule
from .base import BaseRepository


class AlertEventRepository(BaseRepository):
    """Repository for alert event operations. Events are never updated."""

    def add_event(
        self,
        org_id: int,
        rule_id: int,
        triggered_at: datetime,
        amount_eur: Decimal,
        message: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> AlertEvent:
        """Append an alert event."""
        event = AlertEvent(
            org_id=org_id,
            rule_id=rule_id,
            triggered_at=triggered_at,
            amount_eur=amount_eur,
            message=message,
            period_start=period_start,
            period_end=period_end,
            extra_data=extra_data,
        )
        self.session.add(event)
        self.session.flush()
        return event

    def get_event(self, event_id: int) -> Optional[AlertEvent]:
        """Get an alert event by ID."""
        return self.session.get(AlertEvent, event_id)

    def get_events_for_rule(self, rule_id: int) -> List[AlertEvent]:
        """Get all events of a rule, oldest first."""
        return (
            self.session.query(AlertEvent)
            .filter(AlertEvent.rule_id == rule_id)
            .order_by(AlertEvent.triggered_at, AlertEvent.id)
            .all()
        )

    def get_undispatched_events(self, org_id: int) -> List[AlertEvent]:
        """
        Get events nobody has dispatched yet from the current latch of their rule.

        An event of a rule that has since cleared, or of an earlier latch,
        describes a condition that is over.
        """
        return (
            self.session.query(AlertEvent)
            .join(AlertRule, AlertRule.id == AlertEvent.rule_id)
            .outerjoin(AlertDispatch, AlertDispatch.alert_event_id == AlertEvent.id)
            .filter(
                AlertEvent.org_id == org_id,
                AlertRule.triggered.is_(True),
                AlertEvent.triggered_at >= AlertRule.triggered_at,
                AlertDispatch.alert_event_id.is_(None),
            )
            .order_by(AlertEvent.triggered_at, AlertEvent.id)
            .all()
        )

    def is_dispatched(self, event_id: int) -> bool:
        """Whether a dispatch claim exists for the event."""
        return self.session.get(AlertDispatch, event_id) is not None

    def claim_dispatch(self, event_id: int, org_id: int, now: datetime) -> AlertDispatch:
        """
        Claim an event for dispatch.

        The event ID is the primary key of the claim, so a second claim of
        the same event fails with an IntegrityError at flush or commit.
        """
        claim = AlertDispatch(alert_event_id=event_id, org_id=org_id, claimed_at=now)
        self.session.add(claim)
        self.session.flush()
        return claim
