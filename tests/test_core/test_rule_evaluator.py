"""Tests for alert rule evaluation and the trigger latch."""

import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

sys.path.append("src")
from pulse.ormdb.database import session_scope
from pulse.ormdb.models import AlertEvent, AlertRule, RuleType
from pulse.ormdb.repositories import AlertEventRepository, AlertRuleRepository
from pulse.services.rule_evaluator import RuleEvaluator, describe_window
from pulse.webapi.exceptions import NotFoundError


def _events(session_factory, rule_id):
    with session_scope(session_factory) as session:
        return AlertEventRepository(session).get_events_for_rule(rule_id)


def _rule(session_factory, rule_id) -> AlertRule:
    with session_scope(session_factory) as session:
        return AlertRuleRepository(session).get_rule(rule_id)


class TestWindowRules:
    """Test trailing-window threshold rules."""

    def test_triggers_when_spend_reaches_threshold(self, seed, session_factory, clock):
        org_id = seed.org("Acme")
        rule_id = seed.rule(org_id, 100, name="Weekly spend")
        seed.cost(org_id, 60, clock.now - timedelta(days=1))
        seed.cost(org_id, 40, clock.now - timedelta(days=2))

        result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == [rule_id]
        assert result.errors == []
        event = result.events[rule_id]
        assert event.amount_eur == Decimal("100")
        assert event.message == (
            "Weekly spend: €100.00 spent in Acme over the last 7 days, threshold €100.00."
        )

        rule = _rule(session_factory, rule_id)
        assert rule.triggered is True
        assert rule.triggered_at == clock.now

    def test_below_threshold_never_triggers(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 100)
        seed.cost(org_id, "99.99", clock.now - timedelta(days=1))

        result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == []
        assert _events(session_factory, rule_id) == []
        assert _rule(session_factory, rule_id).triggered is False

    def test_latched_rule_does_not_alert_again(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 100)
        seed.cost(org_id, 150, clock.now - timedelta(days=1))
        evaluator = RuleEvaluator(session_factory, clock=clock)

        first = evaluator.evaluate_rules(org_id)
        clock.advance(hours=2)
        second = evaluator.evaluate_rules(org_id)

        assert first.triggered_now == [rule_id]
        assert second.triggered_now == []
        assert second.cleared == []
        assert len(_events(session_factory, rule_id)) == 1

    def test_clear_then_retrigger_emits_two_events(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 100, window_days=1)
        seed.cost(org_id, 150, clock.now - timedelta(hours=1))
        evaluator = RuleEvaluator(session_factory, clock=clock)

        assert evaluator.evaluate_rules(org_id).triggered_now == [rule_id]

        # The spike leaves the one-day window
        clock.advance(days=2)
        cleared = evaluator.evaluate_rules(org_id)
        assert cleared.cleared == [rule_id]
        assert _rule(session_factory, rule_id).triggered is False

        seed.cost(org_id, 120, clock.now - timedelta(hours=1))
        again = evaluator.evaluate_rules(org_id)

        assert again.triggered_now == [rule_id]
        assert len(_events(session_factory, rule_id)) == 2

    def test_lost_compare_and_set_creates_no_event(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 100)
        seed.cost(org_id, 150, clock.now - timedelta(days=1))

        with patch.object(AlertRuleRepository, "mark_triggered", return_value=False):
            result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == []
        assert _events(session_factory, rule_id) == []

    def test_compare_and_set_succeeds_only_once(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 100)

        with session_scope(session_factory) as session:
            assert AlertRuleRepository(session).mark_triggered(rule_id, clock.now) is True
        with session_scope(session_factory) as session:
            assert AlertRuleRepository(session).mark_triggered(rule_id, clock.now) is False

    def test_racing_evaluators_create_one_event(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 100)
        seed.cost(org_id, 150, clock.now - timedelta(days=1))
        both_checked = threading.Barrier(2, timeout=10)
        original = RuleEvaluator.check_rule

        def check_then_wait(evaluator, aggregator, org, rule, now):
            # Both threads have seen the rule unlatched before either writes
            check = original(evaluator, aggregator, org, rule, now)
            both_checked.wait()
            return check

        with patch.object(
            RuleEvaluator, "check_rule", autospec=True, side_effect=check_then_wait
        ):
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [
                    pool.submit(RuleEvaluator(session_factory, clock=clock).evaluate_rules, org_id)
                    for _ in range(2)
                ]
                results = [future.result() for future in futures]

        assert sum(len(result.triggered_now) for result in results) == 1
        assert len(_events(session_factory, rule_id)) == 1
        assert _rule(session_factory, rule_id).triggered is True

    def test_disabled_rules_are_skipped(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 1)
        seed.cost(org_id, 50, clock.now - timedelta(days=1))
        with session_scope(session_factory) as session:
            AlertRuleRepository(session).get_rule(rule_id).enabled = False

        result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == []

    def test_failing_rule_does_not_stop_others(self, seed, session_factory, clock):
        org_id = seed.org()
        broken_id = seed.rule(org_id, 10, name="Broken")
        working_id = seed.rule(org_id, 10, name="Working")
        seed.cost(org_id, 50, clock.now - timedelta(days=1))
        evaluator = RuleEvaluator(session_factory, clock=clock)
        original = evaluator.check_rule

        def check_rule(aggregator, org, rule, now):
            if rule.id == broken_id:
                raise RuntimeError("boom")
            return original(aggregator, org, rule, now)

        with patch.object(evaluator, "check_rule", side_effect=check_rule):
            result = evaluator.evaluate_rules(org_id)

        assert result.triggered_now == [working_id]
        assert result.errors == [f"Failed to evaluate rule {broken_id}: boom"]

    def test_unknown_organization_raises(self, session_factory, clock):
        with pytest.raises(NotFoundError):
            RuleEvaluator(session_factory, clock=clock).evaluate_rules(12345)


class TestOtherRuleTypes:
    """Test monthly budget and daily spike rules."""

    def test_monthly_budget_falls_back_to_org_budget(self, seed, session_factory, clock):
        org_id = seed.org("Acme", monthly_budget_eur=Decimal("500"))
        rule_id = seed.rule(org_id, None, name="Budget", rule_type=RuleType.MONTHLY_BUDGET)
        seed.cost(org_id, 300, clock.now.replace(day=2))
        seed.cost(org_id, 200, clock.now.replace(day=10))

        result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == [rule_id]
        assert "month to date" in result.events[rule_id].message

    def test_rule_without_any_threshold_is_ignored(self, seed, session_factory, clock):
        org_id = seed.org()
        seed.rule(org_id, None, rule_type=RuleType.MONTHLY_BUDGET)
        seed.cost(org_id, 300, clock.now - timedelta(hours=1))

        result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == []
        assert result.errors == []

    def test_daily_spike_over_average(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(
            org_id,
            None,
            window_days=2,
            name="Spike",
            rule_type=RuleType.DAILY_SPIKE,
            spike_percent=50,
        )
        seed.cost(org_id, 10, clock.now - timedelta(days=1))
        seed.cost(org_id, 10, clock.now - timedelta(days=2))
        seed.cost(org_id, 16, clock.now - timedelta(hours=1))

        result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == [rule_id]
        event = result.events[rule_id]
        assert event.extra_data["threshold_type"] == "spike"
        assert event.extra_data["spike_percent"] == pytest.approx(60.0)

    def test_daily_spike_fixed_threshold(self, seed, session_factory, clock):
        org_id = seed.org()
        rule_id = seed.rule(org_id, 25, name="Daily cap", rule_type=RuleType.DAILY_SPIKE)
        seed.cost(org_id, 25, clock.now - timedelta(hours=2))

        result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)

        assert result.triggered_now == [rule_id]
        assert result.events[rule_id].extra_data["threshold_type"] == "fixed"


class TestDescribeWindow:
    def test_labels(self):
        assert describe_window("window", 1) == "last day"
        assert describe_window("window", 30) == "last 30 days"
        assert describe_window("monthly_budget", 7) == "month to date"
        assert describe_window("daily_spike", 7) == "today"
