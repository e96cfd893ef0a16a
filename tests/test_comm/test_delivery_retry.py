"""Tests for retrying failed notification deliveries."""

import sys
from datetime import timedelta
from unittest.mock import patch

import pytest

sys.path.append("src")
from pulse.ormdb.database import session_scope
from pulse.ormdb.models import NotificationDelivery, Organization
from pulse.ormdb.repositories import CronRunLogRepository, NotificationDeliveryRepository
from pulse.services.notification import (
    MAX_DELIVERY_ATTEMPTS,
    RETRY_NOTIFICATIONS_JOB,
    DeliveryRetrier,
    NotificationDispatcher,
    RetrySummary,
    retry_delay,
)
from pulse.services.notification.retry import (
    MISSING_CONFIGURATION_ERROR,
    STALE_DELIVERY_ERROR,
)
from pulse.services.rule_evaluator import RuleEvaluator


@pytest.fixture
def dispatcher(session_factory, test_settings, clock, fake_channels):
    return NotificationDispatcher(
        session_factory,
        email_channel=fake_channels["email"],
        telegram_channel=fake_channels["telegram"],
        webhook_channel=fake_channels["webhook"],
        settings=test_settings,
        clock=clock,
        slack_channel=fake_channels["slack"],
        teams_channel=fake_channels["teams"],
    )


@pytest.fixture
def retrier(dispatcher, test_settings):
    return DeliveryRetrier(dispatcher, test_settings)


@pytest.fixture
def acme(seed, session_factory, clock):
    """Acme with an admin, a Telegram chat and a latched rule."""
    org_id = seed.org("Acme", telegram_bot_token="123:abc", telegram_chat_id="-100")
    seed.member(org_id, "admin@acme.test")
    rule_id = seed.rule(org_id, 100)
    seed.cost(org_id, 150, clock.now - timedelta(days=1))
    result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)
    return {"org_id": org_id, "event_id": result.events[rule_id].id}


def _telegram_rows(session_factory):
    with session_scope(session_factory) as session:
        rows = (
            session.query(NotificationDelivery)
            .filter(NotificationDelivery.channel == "telegram")
            .order_by(NotificationDelivery.id)
            .all()
        )
        return [(row.attempt, row.status, row.error) for row in rows]


class TestRetryDelay:
    def test_backoff_grows_then_stops(self):
        assert retry_delay(1) == timedelta(minutes=5)
        assert retry_delay(2) == timedelta(minutes=30)
        assert retry_delay(3) == timedelta(hours=2)
        assert retry_delay(MAX_DELIVERY_ATTEMPTS) is None
        assert retry_delay(0) is None


class TestDeliveryRetrier:
    @pytest.mark.asyncio
    async def test_failed_delivery_is_sent_again_after_backoff(
        self, session_factory, clock, dispatcher, retrier, fake_channels, acme
    ):
        fake_channels["telegram"].fail_with = "Too Many Requests"
        await dispatcher.dispatch(acme["org_id"], [acme["event_id"]])
        fake_channels["telegram"].fail_with = None

        early = await retrier.retry_due_deliveries()
        clock.advance(minutes=5)
        due = await retrier.retry_due_deliveries()

        assert early.processed == 0
        assert due.processed == 1
        assert due.success_count == 1
        assert due.deliveries.sent_telegram == 1
        assert due.errors == []
        assert len(fake_channels["telegram"].calls) == 2
        assert fake_channels["telegram"].calls[1]["bot_token"] == "123:abc"
        assert len(fake_channels["email"].calls) == 1
        assert _telegram_rows(session_factory) == [
            (1, "failed", "Too Many Requests"),
            (2, "sent", None),
        ]

    @pytest.mark.asyncio
    async def test_attempts_stop_after_the_last_backoff(
        self, session_factory, clock, dispatcher, retrier, fake_channels, acme
    ):
        fake_channels["telegram"].fail_with = "Bad Gateway"
        await dispatcher.dispatch(acme["org_id"], [acme["event_id"]])

        for wait in (timedelta(minutes=5), timedelta(minutes=30), timedelta(hours=2)):
            clock.advance(seconds=wait.total_seconds())
            summary = await retrier.retry_due_deliveries()
            assert summary.processed == 1
            assert summary.errors == ["Telegram failed for chat -100: Bad Gateway"]

        clock.advance(days=1)
        exhausted = await retrier.retry_due_deliveries()

        assert exhausted.processed == 0
        assert len(fake_channels["telegram"].calls) == MAX_DELIVERY_ATTEMPTS
        assert _telegram_rows(session_factory) == [
            (attempt, "failed", "Bad Gateway") for attempt in range(1, MAX_DELIVERY_ATTEMPTS + 1)
        ]

    @pytest.mark.asyncio
    async def test_removed_recipient_is_not_retried(
        self, session_factory, clock, dispatcher, retrier, fake_channels, acme
    ):
        fake_channels["telegram"].fail_with = "Bad Request: chat not found"
        await dispatcher.dispatch(acme["org_id"], [acme["event_id"]])
        with session_scope(session_factory) as session:
            session.get(Organization, acme["org_id"]).telegram_bot_token = None

        clock.advance(minutes=5)
        summary = await retrier.retry_due_deliveries()

        assert summary.processed == 1
        assert summary.fail_count == 1
        assert summary.errors == [
            f"Telegram failed for chat -100: {MISSING_CONFIGURATION_ERROR}"
        ]
        assert len(fake_channels["telegram"].calls) == 1
        assert _telegram_rows(session_factory)[-1] == (2, "failed", MISSING_CONFIGURATION_ERROR)

        clock.advance(hours=1)
        assert (await retrier.retry_due_deliveries()).processed == 0

    @pytest.mark.asyncio
    async def test_stale_pending_delivery_is_requeued(
        self, session_factory, clock, retrier, fake_channels, acme
    ):
        with session_scope(session_factory) as session:
            NotificationDeliveryRepository(session).start_delivery(
                acme["org_id"],
                "email",
                "admin@acme.test",
                alert_event_id=acme["event_id"],
                now=clock.now,
            )

        clock.advance(minutes=10)
        fresh = await retrier.retry_due_deliveries()
        clock.advance(minutes=25)
        stale = await retrier.retry_due_deliveries()

        assert fresh.requeued == 0
        assert stale.requeued == 1
        assert stale.processed == 1
        assert stale.deliveries.sent_email == 1
        assert len(fake_channels["email"].calls) == 1
        with session_scope(session_factory) as session:
            rows = session.query(NotificationDelivery).order_by(NotificationDelivery.id).all()
            assert [(row.attempt, row.status, row.error) for row in rows] == [
                (1, "failed", STALE_DELIVERY_ERROR),
                (2, "sent", None),
            ]

    @pytest.mark.asyncio
    async def test_config_failure_keeps_claimed_rows_pending(
        self, session_factory, clock, dispatcher, retrier, fake_channels, acme
    ):
        fake_channels["telegram"].fail_with = "Bad Gateway"
        await dispatcher.dispatch(acme["org_id"], [acme["event_id"]])
        clock.advance(minutes=5)

        with patch.object(
            dispatcher, "load_channel_config", side_effect=RuntimeError("database is locked")
        ):
            summary = await retrier.retry_due_deliveries()

        assert summary.errors == [
            f"Failed to load channel configuration for org {acme['org_id']}: database is locked"
        ]
        assert _telegram_rows(session_factory)[-1] == (2, "pending", None)

    @pytest.mark.asyncio
    async def test_due_retry_is_claimed_once(
        self, clock, dispatcher, retrier, fake_channels, acme
    ):
        fake_channels["telegram"].fail_with = "Bad Gateway"
        await dispatcher.dispatch(acme["org_id"], [acme["event_id"]])
        clock.advance(minutes=5)

        first = retrier.claim_due_deliveries()
        second = retrier.claim_due_deliveries()

        assert [(due.channel, due.recipient, due.attempt) for due in first] == [
            ("telegram", "-100", 2)
        ]
        assert second == []

    @pytest.mark.asyncio
    async def test_run_is_logged(
        self, session_factory, clock, dispatcher, retrier, fake_channels, acme
    ):
        fake_channels["telegram"].fail_with = "Bad Gateway"
        await dispatcher.dispatch(acme["org_id"], [acme["event_id"]])
        fake_channels["telegram"].fail_with = None
        clock.advance(minutes=5)

        summary = await retrier.retry_due_deliveries()

        with session_scope(session_factory) as session:
            run = CronRunLogRepository(session).get_latest_run(RETRY_NOTIFICATIONS_JOB)
            assert run.run_id == summary.run_id
            assert run.status == "ok"
            assert run.orgs_processed == 1
            assert run.sent_telegram == 1
            assert run.finished_at == clock.now


class TestRetrySummary:
    def test_wire_shape(self, clock):
        summary = RetrySummary(run_id="r", started_at=clock.now, processed=3, requeued=1)
        summary.deliveries.sent_email = 2
        summary.deliveries.failed = 1
        summary.errors = ["Telegram failed for chat -100: Bad Gateway"]

        assert summary.to_dict() == {
            "message": "Retried 3 notification deliveries",
            "runId": "r",
            "processed": 3,
            "requeued": 1,
            "successCount": 2,
            "failCount": 1,
            "errorsCount": 1,
            "errors": ["Telegram failed for chat -100: Bad Gateway"],
        }
        assert summary.status.value == "error"
