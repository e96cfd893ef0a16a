"""Service layer: aggregation, evaluation, dispatch and run orchestration."""

from .cost_aggregator import CostAggregator, aggregate_spend
from .notification import NotificationDispatcher
from .orchestrator import AlertRunOrchestrator, OrgRunResult, RunSummary
from .rate_limit import InMemoryRateLimitStore, RateLimitDecision
from .rule_evaluator import EvaluationResult, RuleEvaluator, evaluate_rules
from .trigger import AlertRunGateway, run_alerts_sync, verify_cron_secret

__all__ = [
    "AlertRunGateway",
    "AlertRunOrchestrator",
    "CostAggregator",
    "EvaluationResult",
    "InMemoryRateLimitStore",
    "NotificationDispatcher",
    "OrgRunResult",
    "RateLimitDecision",
    "RuleEvaluator",
    "RunSummary",
    "aggregate_spend",
    "evaluate_rules",
    "run_alerts_sync",
    "verify_cron_secret",
]
