"""Repository for alert rules and their latch state."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update

from ..models import AlertRule, RuleType
from .base import BaseRepository


class AlertRuleRepository(BaseRepository):
    """Repository for alert rule operations."""

    def get_rule(self, rule_id: int) -> Optional[AlertRule]:
        """Get an alert rule by ID."""
        return self.session.get(AlertRule, rule_id)

    def get_enabled_rules(self, org_id: int) -> List[AlertRule]:
        """Get every enabled rule of an organization."""
        return (
            self.session.query(AlertRule)
            .filter(AlertRule.org_id == org_id, AlertRule.enabled.is_(True))
            .order_by(AlertRule.id)
            .all()
        )

    def add_rule(
        self,
        org_id: int,
        threshold_eur: Optional[Decimal],
        window_days: int = 7,
        name: str = "Spend alert",
        rule_type: RuleType = RuleType.WINDOW,
        spike_percent: Optional[float] = None,
    ) -> AlertRule:
        """Create an alert rule in the armed state."""
        rule = AlertRule(
            org_id=org_id,
            name=name,
            rule_type=rule_type.value,
            threshold_eur=threshold_eur,
            window_days=window_days,
            spike_percent=spike_percent,
            triggered=False,
            triggered_at=None,
        )
        self.session.add(rule)
        self.session.flush()
        return rule

    def mark_triggered(self, rule_id: int, now: datetime) -> bool:
        """
        Latch a rule, but only if it is currently armed.

        The conditional UPDATE is the mutual exclusion point: when two
        evaluators race on the same rule exactly one of them sees a row count
        of one.

        Returns:
            True if this call performed the transition
        """
        result = self.session.execute(
            update(AlertRule)
            .where(AlertRule.id == rule_id, AlertRule.triggered.is_(False))
            .values(triggered=True, triggered_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_cleared(self, rule_id: int, now: datetime) -> bool:
        """
        Re-arm a latched rule.

        Returns:
            True if this call performed the transition
        """
        result = self.session.execute(
            update(AlertRule)
            .where(AlertRule.id == rule_id, AlertRule.triggered.is_(True))
            .values(triggered=False, triggered_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
