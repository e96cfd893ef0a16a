"""Alert rule evaluation with latch-until-clear semantics."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..config.logging import get_logger
from ..ormdb.database import SessionFactory, get_session_factory, session_scope
from ..ormdb.models import AlertEvent, AlertRule, Organization, RuleType
from ..ormdb.repositories import (
    AlertEventRepository,
    AlertRuleRepository,
    OrganizationRepository,
)
from ..utils.clock import Clock, utcnow
from ..webapi.exceptions import NotFoundError
from .cost_aggregator import CostAggregator

logger = get_logger(__name__)


@dataclass
class RuleCheck:
    """Outcome of measuring one rule against current spend."""

    met: bool
    amount_eur: Decimal
    threshold_eur: Optional[Decimal]
    period_start: datetime
    period_end: datetime
    window_label: str
    message: str
    extra_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EvaluationResult:
    """Transitions produced by one evaluation pass over an organization."""

    org_id: int
    triggered_now: List[int] = field(default_factory=list)
    cleared: List[int] = field(default_factory=list)
    events: Dict[int, AlertEvent] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


def _eur(amount: Decimal) -> str:
    return f"€{amount:.2f}"


def describe_window(rule_type: str, window_days: int) -> str:
    """Human label for the spend window of a rule."""
    if rule_type == RuleType.MONTHLY_BUDGET.value:
        return "month to date"
    if rule_type == RuleType.DAILY_SPIKE.value:
        return "today"
    return "last day" if window_days == 1 else f"last {window_days} days"


class RuleEvaluator:
    """
    Decides which alert rules of an organization change state.

    Transition table, per rule:

    - armed and condition met: latch it, append an AlertEvent, report it
      as triggered now
    - latched and condition met: nothing, no re-alert
    - latched and condition no longer met: re-arm it, report it as cleared
    - armed and condition not met: nothing

    Every transition is a compare-and-set on ``alert_rules.triggered`` in
    its own transaction, so two evaluators racing on one rule can never
    emit two events for the same edge.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock
        self.logger = logger.bind(service="rule_evaluator")

    def evaluate_rules(self, org_id: int) -> EvaluationResult:
        """
        Evaluate every enabled rule of an organization.

        Args:
            org_id: Organization ID

        Returns:
            EvaluationResult listing rules triggered now and rules cleared

        Raises:
            NotFoundError: If the organization does not exist
        """
        result = EvaluationResult(org_id=org_id)
        now = self.clock()

        with session_scope(self.session_factory) as session:
            org = OrganizationRepository(session).get_organization(org_id)
            if org is None:
                raise NotFoundError("Organization", str(org_id))
            rule_ids = [rule.id for rule in AlertRuleRepository(session).get_enabled_rules(org_id)]

        for rule_id in rule_ids:
            try:
                self._evaluate_rule(rule_id, now, result)
            except Exception as e:
                self.logger.error(
                    "Rule evaluation failed",
                    org_id=org_id,
                    rule_id=rule_id,
                    error=str(e),
                    exc_info=True,
                )
                result.errors.append(f"Failed to evaluate rule {rule_id}: {e}")

        self.logger.info(
            "Rules evaluated",
            org_id=org_id,
            rules=len(rule_ids),
            triggered=len(result.triggered_now),
            cleared=len(result.cleared),
            errors=len(result.errors),
        )
        return result

    def _evaluate_rule(self, rule_id: int, now: datetime, result: EvaluationResult) -> None:
        with session_scope(self.session_factory) as session:
            rules = AlertRuleRepository(session)
            rule = rules.get_rule(rule_id)
            if rule is None or not rule.enabled:
                return
            org = rule.organization

            check = self.check_rule(CostAggregator(session), org, rule, now)
            if check is None:
                self.logger.debug("Rule has no usable threshold", rule_id=rule_id)
                return

            if check.met and not rule.triggered:
                if not rules.mark_triggered(rule.id, now):
                    # Another evaluator latched it first
                    return
                event = AlertEventRepository(session).add_event(
                    org_id=org.id,
                    rule_id=rule.id,
                    triggered_at=now,
                    amount_eur=check.amount_eur,
                    message=check.message,
                    period_start=check.period_start,
                    period_end=check.period_end,
                    extra_data=check.extra_data,
                )
                result.triggered_now.append(rule.id)
                result.events[rule.id] = event
                self.logger.info(
                    "Alert rule triggered",
                    org_id=org.id,
                    rule_id=rule.id,
                    amount_eur=str(check.amount_eur),
                    threshold_eur=str(check.threshold_eur),
                )

            elif not check.met and rule.triggered:
                if rules.mark_cleared(rule.id, now):
                    result.cleared.append(rule.id)
                    self.logger.info(
                        "Alert rule cleared",
                        org_id=org.id,
                        rule_id=rule.id,
                        amount_eur=str(check.amount_eur),
                    )

    def check_rule(
        self,
        aggregator: CostAggregator,
        org: Organization,
        rule: AlertRule,
        now: datetime,
    ) -> Optional[RuleCheck]:
        """
        Measure one rule against current spend.

        Returns:
            RuleCheck, or None when the rule has nothing to compare against
        """
        rule_type = rule.rule_type or RuleType.WINDOW.value
        label = describe_window(rule_type, rule.window_days)

        if rule_type == RuleType.DAILY_SPIKE.value:
            return self._check_daily_spike(aggregator, org, rule, now, label)

        if rule_type == RuleType.MONTHLY_BUDGET.value:
            threshold = rule.threshold_eur
            if threshold is None:
                threshold = org.monthly_budget_eur
            spend = aggregator.month_to_date(org.id, now)
        else:
            threshold = rule.threshold_eur
            spend = aggregator.trailing_window(org.id, rule.window_days, now)

        if threshold is None or threshold <= 0:
            return None

        threshold = Decimal(str(threshold))
        met = spend.amount_eur >= threshold
        message = (
            f"{rule.name}: {_eur(spend.amount_eur)} spent in {org.name} over the "
            f"{label}, threshold {_eur(threshold)}."
        )
        return RuleCheck(
            met=met,
            amount_eur=spend.amount_eur,
            threshold_eur=threshold,
            period_start=spend.start,
            period_end=spend.end,
            window_label=label,
            message=message,
            extra_data={
                "rule_type": rule_type,
                "window": label,
                "window_days": rule.window_days,
                "threshold_eur": str(threshold),
            },
        )

    def _check_daily_spike(
        self,
        aggregator: CostAggregator,
        org: Organization,
        rule: AlertRule,
        now: datetime,
        label: str,
    ) -> Optional[RuleCheck]:
        threshold = (
            Decimal(str(rule.threshold_eur)) if rule.threshold_eur is not None else None
        )
        if threshold is None and not rule.spike_percent:
            return None

        spend = aggregator.today(org.id, now)
        baseline = aggregator.daily_baseline(org.id, rule.window_days, now)

        spike_percent = None
        if baseline > 0:
            spike_percent = float((spend.amount_eur - baseline) / baseline * 100)

        extra_data = {
            "rule_type": RuleType.DAILY_SPIKE.value,
            "window": label,
            "window_days": rule.window_days,
            "baseline_average_eur": str(baseline),
            "spike_percent": spike_percent,
            "threshold_eur": str(threshold) if threshold is not None else None,
        }

        if threshold is not None and spend.amount_eur >= threshold:
            message = (
                f"{rule.name}: {_eur(spend.amount_eur)} spent in {org.name} today, "
                f"daily threshold {_eur(threshold)}."
            )
            extra_data["threshold_type"] = "fixed"
            met = True
        elif (
            rule.spike_percent
            and spike_percent is not None
            and spike_percent >= rule.spike_percent
        ):
            message = (
                f"{rule.name}: {_eur(spend.amount_eur)} spent in {org.name} today, "
                f"{spike_percent:.1f}% above the {rule.window_days}-day average of "
                f"{_eur(baseline)}."
            )
            extra_data["threshold_type"] = "spike"
            met = True
        else:
            message = f"{rule.name}: {_eur(spend.amount_eur)} spent in {org.name} today."
            met = False

        return RuleCheck(
            met=met,
            amount_eur=spend.amount_eur,
            threshold_eur=threshold,
            period_start=spend.start,
            period_end=spend.end,
            window_label=label,
            message=message,
            extra_data=extra_data,
        )


def evaluate_rules(
    org_id: int, session_factory: Optional[SessionFactory] = None
) -> EvaluationResult:
    """Evaluate an organization's rules with default collaborators."""
    return RuleEvaluator(session_factory).evaluate_rules(org_id)
