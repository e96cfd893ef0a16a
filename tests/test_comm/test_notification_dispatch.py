"""Tests for notification dispatch across channels."""

import asyncio
import sys
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import text

sys.path.append("src")
from pulse.comm.email import ResendEmailClient
from pulse.ormdb.database import session_scope
from pulse.ormdb.models import AlertDispatch, InAppNotification, NotificationDelivery, User
from pulse.ormdb.repositories import (
    AlertEventRepository,
    AlertRuleRepository,
    InAppNotificationRepository,
)
from pulse.services.notification import (
    AlertNotice,
    EmailNotificationChannel,
    NotificationChannel,
    NotificationDispatcher,
    TelegramNotificationChannel,
)
from pulse.services.notification.formatting import (
    format_email,
    format_slack,
    format_teams,
    format_telegram,
)
from pulse.services.rule_evaluator import RuleEvaluator

SLACK_URL = "https://hooks.slack.test/services/T000/B000/xyz"
TEAMS_URL = "https://acme.webhook.office.test/webhookb2/abc"


@pytest.fixture
def dispatcher_factory(session_factory, test_settings, clock, fake_channels):
    def build(**channels):
        merged = {**fake_channels, **channels}
        return NotificationDispatcher(
            session_factory,
            email_channel=merged["email"],
            telegram_channel=merged["telegram"],
            webhook_channel=merged["webhook"],
            settings=test_settings,
            clock=clock,
            slack_channel=merged["slack"],
            teams_channel=merged["teams"],
        )

    return build


def _trigger(seed, session_factory, clock, org_id, threshold=100, spend=150):
    """Latch a fresh rule of an organization and return its event id."""
    rule_id = seed.rule(org_id, threshold, name="Weekly spend")
    seed.cost(org_id, spend, clock.now - timedelta(days=1))
    result = RuleEvaluator(session_factory, clock=clock).evaluate_rules(org_id)
    assert result.triggered_now == [rule_id]
    return rule_id, result.events[rule_id].id


@pytest.fixture
def triggered_org(seed, session_factory, clock):
    """Acme with one admin, one latched rule and a fresh event."""
    org_id = seed.org("Acme", telegram_bot_token="123:abc", telegram_chat_id="-100")
    seed.member(org_id, "admin@acme.test", role="admin")
    rule_id, event_id = _trigger(seed, session_factory, clock, org_id)
    return {"org_id": org_id, "rule_id": rule_id, "event_id": event_id}


def _deliveries(session_factory):
    with session_scope(session_factory) as session:
        rows = session.query(NotificationDelivery).order_by(NotificationDelivery.id).all()
        return [(row.channel, row.recipient, row.status, row.error) for row in rows]


async def _dispatch(dispatcher, org):
    return await dispatcher.dispatch(org["org_id"], [org["event_id"]])


class TestChannelIsolation:
    @pytest.mark.asyncio
    async def test_failed_telegram_does_not_block_other_channels(
        self, seed, session_factory, dispatcher_factory, fake_channels, triggered_org
    ):
        seed.webhook(triggered_org["org_id"], "https://hooks.example.test/pulse")
        fake_channels["telegram"].fail_with = "Bad Request: chat not found"

        result = await _dispatch(dispatcher_factory(), triggered_org)

        assert result.sent_email == 1
        assert result.sent_telegram == 0
        assert result.sent_webhook == 1
        assert result.sent_in_app == 1
        assert result.errors == ["Telegram failed for chat -100: Bad Request: chat not found"]

        assert _deliveries(session_factory) == [
            ("in_app", None, "sent", None),
            ("email", "admin@acme.test", "sent", None),
            ("telegram", "-100", "failed", "Bad Request: chat not found"),
            ("webhook", "https://hooks.example.test/pulse", "sent", None),
            ("telegram", "-100", "retrying", None),
        ]
        assert fake_channels["telegram"].calls[0]["bot_token"] == "123:abc"
        assert fake_channels["webhook"].calls[0]["secret"] == "whsec"

    @pytest.mark.asyncio
    async def test_in_app_failure_is_recorded(
        self, session_factory, dispatcher_factory, fake_channels, triggered_org
    ):
        with patch.object(
            InAppNotificationRepository, "add_notification", side_effect=RuntimeError("disk full")
        ):
            result = await _dispatch(dispatcher_factory(), triggered_org)

        assert result.sent_in_app == 0
        assert result.sent_email == 1
        assert result.errors == [
            f"In-app notification failed for event {triggered_org['event_id']}: disk full"
        ]
        assert ("in_app", None, "failed", "disk full") in _deliveries(session_factory)

    @pytest.mark.asyncio
    async def test_in_app_database_error_keeps_claim_and_other_channels(
        self, session_factory, dispatcher_factory, fake_channels, triggered_org
    ):
        def broken_insert(repository, **kwargs):
            repository.session.execute(text("INSERT INTO missing_table VALUES (1)"))

        with patch.object(
            InAppNotificationRepository,
            "add_notification",
            autospec=True,
            side_effect=broken_insert,
        ):
            result = await _dispatch(dispatcher_factory(), triggered_org)

        assert result.sent_in_app == 0
        assert result.sent_email == 1
        assert len(fake_channels["email"].calls) == 1
        assert result.errors[0].startswith(
            f"In-app notification failed for event {triggered_org['event_id']}:"
        )
        assert "missing_table" in result.errors[0]

        rows = _deliveries(session_factory)
        assert rows[0][:3] == ("in_app", None, "failed")
        assert ("email", "admin@acme.test", "sent", None) in rows
        with session_scope(session_factory) as session:
            assert session.query(InAppNotification).count() == 0
            assert session.get(AlertDispatch, triggered_org["event_id"]) is not None

    @pytest.mark.asyncio
    async def test_in_app_notification_written(
        self, session_factory, dispatcher_factory, triggered_org
    ):
        await _dispatch(dispatcher_factory(), triggered_org)

        with session_scope(session_factory) as session:
            notification = session.query(InAppNotification).one()
            assert notification.user_id is None
            assert notification.alert_event_id == triggered_org["event_id"]
            assert "€150.00" in notification.body

    @pytest.mark.asyncio
    async def test_nothing_triggered_sends_nothing(self, seed, dispatcher_factory, fake_channels):
        org_id = seed.org()

        result = await dispatcher_factory().dispatch(org_id, [])

        assert result.errors == []
        assert fake_channels["email"].calls == []


class TestClaims:
    @pytest.mark.asyncio
    async def test_second_dispatch_of_same_event_sends_nothing(
        self, session_factory, dispatcher_factory, fake_channels, triggered_org
    ):
        dispatcher = dispatcher_factory()

        first = await _dispatch(dispatcher, triggered_org)
        second = await _dispatch(dispatcher, triggered_org)

        assert first.sent_email == 1
        assert second.sent_email == 0
        assert second.sent_in_app == 0
        assert second.errors == []
        assert len(fake_channels["email"].calls) == 1
        with session_scope(session_factory) as session:
            assert session.query(InAppNotification).count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_dispatches_claim_once(
        self, dispatcher_factory, fake_channels, triggered_org
    ):
        results = await asyncio.gather(
            _dispatch(dispatcher_factory(), triggered_org),
            _dispatch(dispatcher_factory(), triggered_org),
        )

        assert sum(result.sent_email for result in results) == 1
        assert len(fake_channels["email"].calls) == 1

    @pytest.mark.asyncio
    async def test_config_failure_leaves_event_undispatched(
        self, session_factory, dispatcher_factory, fake_channels, triggered_org
    ):
        dispatcher = dispatcher_factory()

        with patch.object(
            dispatcher, "load_channel_config", side_effect=RuntimeError("database is locked")
        ):
            failed = await _dispatch(dispatcher, triggered_org)

        assert failed.errors == [
            f"Failed to load channel configuration for org {triggered_org['org_id']}: "
            "database is locked"
        ]
        with session_scope(session_factory) as session:
            undispatched = AlertEventRepository(session).get_undispatched_events(
                triggered_org["org_id"]
            )
            assert [event.id for event in undispatched] == [triggered_org["event_id"]]

        retried = await _dispatch(dispatcher, triggered_org)

        assert retried.sent_email == 1
        assert len(fake_channels["email"].calls) == 1

    def test_undispatched_events_follow_the_current_latch(
        self, session_factory, clock, triggered_org
    ):
        def undispatched():
            with session_scope(session_factory) as session:
                events = AlertEventRepository(session).get_undispatched_events(
                    triggered_org["org_id"]
                )
                return [event.id for event in events]

        assert undispatched() == [triggered_org["event_id"]]

        clock.advance(hours=1)
        with session_scope(session_factory) as session:
            rules = AlertRuleRepository(session)
            assert rules.mark_cleared(triggered_org["rule_id"], clock.now)
        assert undispatched() == []

        clock.advance(hours=1)
        with session_scope(session_factory) as session:
            rules = AlertRuleRepository(session)
            assert rules.mark_triggered(triggered_org["rule_id"], clock.now)
        assert undispatched() == []

    @pytest.mark.asyncio
    async def test_failed_claim_writes_nothing(
        self, session_factory, dispatcher_factory, fake_channels, triggered_org
    ):
        dispatcher = dispatcher_factory()

        with patch.object(
            dispatcher, "_plan_deliveries", side_effect=RuntimeError("database is locked")
        ):
            result = await _dispatch(dispatcher, triggered_org)

        assert result.errors == [
            f"Failed to dispatch alert event {triggered_org['event_id']}: database is locked"
        ]
        assert fake_channels["email"].calls == []
        assert _deliveries(session_factory) == []
        with session_scope(session_factory) as session:
            assert session.query(AlertDispatch).count() == 0
            assert session.query(InAppNotification).count() == 0

    @pytest.mark.asyncio
    async def test_event_of_other_org_is_rejected(
        self, seed, session_factory, clock, dispatcher_factory, fake_channels, triggered_org
    ):
        other = seed.org("Other")

        result = await dispatcher_factory().dispatch(other, [triggered_org["event_id"]])

        assert result.errors == [
            f"Failed to dispatch alert event {triggered_org['event_id']}: "
            f"AlertEvent {triggered_org['event_id']} not found"
        ]
        assert fake_channels["email"].calls == []


class TestChatChannels:
    @pytest.mark.asyncio
    async def test_slack_and_teams_receive_alert(
        self, seed, session_factory, clock, dispatcher_factory, fake_channels
    ):
        org_id = seed.org("Acme", slack_webhook_url=SLACK_URL, teams_webhook_url=TEAMS_URL)
        _, event_id = _trigger(seed, session_factory, clock, org_id)

        result = await dispatcher_factory().dispatch(org_id, [event_id])

        assert result.sent_slack == 1
        assert result.sent_teams == 1
        assert result.errors == []
        assert fake_channels["slack"].calls[0]["recipient"] == SLACK_URL
        assert fake_channels["teams"].calls[0]["recipient"] == TEAMS_URL
        assert [row[0] for row in _deliveries(session_factory)] == ["in_app", "slack", "teams"]

    @pytest.mark.asyncio
    async def test_slack_failure_hides_webhook_url(
        self, seed, session_factory, clock, dispatcher_factory, fake_channels
    ):
        org_id = seed.org("Acme", slack_webhook_url=SLACK_URL)
        _, event_id = _trigger(seed, session_factory, clock, org_id)
        fake_channels["slack"].fail_with = "no_service"

        result = await dispatcher_factory().dispatch(org_id, [event_id])

        assert result.sent_slack == 0
        assert result.errors == ["Slack failed: no_service"]
        assert ("slack", SLACK_URL, "retrying", None) in _deliveries(session_factory)


class TestRealChannels:
    @pytest.mark.asyncio
    async def test_unconfigured_email_fails_without_retry(
        self, session_factory, dispatcher_factory, triggered_org
    ):
        email = EmailNotificationChannel(ResendEmailClient(None), "https://pulse.test/dashboard")

        result = await _dispatch(dispatcher_factory(email=email), triggered_org)

        assert result.sent_email == 0
        assert "Email failed for admin@acme.test: Email service not configured" in result.errors
        email_rows = [row for row in _deliveries(session_factory) if row[0] == "email"]
        assert email_rows == [
            ("email", "admin@acme.test", "failed", "Email service not configured")
        ]

    @pytest.mark.asyncio
    async def test_slow_telegram_times_out(
        self, session_factory, dispatcher_factory, triggered_org
    ):
        class SlowBot:
            def __init__(self, bot_token, timeout_seconds):
                self.bot_token = bot_token

            async def send_message(self, text, chat_id):
                await asyncio.sleep(1)
                return "1"

        telegram = TelegramNotificationChannel(
            "https://pulse.test/dashboard", timeout_seconds=0.05, bot_factory=SlowBot
        )

        result = await _dispatch(dispatcher_factory(telegram=telegram), triggered_org)

        assert result.sent_email == 1
        assert result.errors == ["Telegram failed for chat -100: timed out after 0.05s"]


class TestRecipients:
    def test_roles_preferences_and_dedup(self, seed, session_factory, dispatcher_factory):
        org_id = seed.org("Acme", telegram_bot_token="123:abc", telegram_chat_id="-100")
        seed.member(org_id, "owner@acme.test", role="owner", telegram_chat_id="-100")
        seed.member(org_id, "finance@acme.test", role="finance", telegram_chat_id="555")
        seed.member(org_id, "muted@acme.test", role="manager", email_enabled=False)
        seed.member(org_id, "dev@acme.test", role="user")
        inactive_id = seed.member(org_id, "gone@acme.test", role="admin")
        with session_scope(session_factory) as session:
            session.get(User, inactive_id).is_active = False

        config = dispatcher_factory().load_channel_config(org_id)

        assert config.email_recipients == ["owner@acme.test", "finance@acme.test"]
        assert config.telegram_chat_ids == ["-100", "555"]
        assert config.telegram_bot_token == "123:abc"

    @pytest.mark.asyncio
    async def test_missing_bot_token_skips_telegram(
        self, seed, session_factory, clock, dispatcher_factory, fake_channels
    ):
        org_id = seed.org("Acme", telegram_chat_id="-100")
        seed.member(org_id, "admin@acme.test")
        _, event_id = _trigger(seed, session_factory, clock, org_id, threshold=10, spend=20)

        result = await dispatcher_factory().dispatch(org_id, [event_id])

        assert result.errors == []
        assert fake_channels["telegram"].calls == []
        assert [row[0] for row in _deliveries(session_factory)] == ["in_app", "email"]

    def test_unsubscribed_webhooks_are_ignored(self, seed, dispatcher_factory):
        org_id = seed.org()
        seed.webhook(org_id, "https://a.test", events=["cost_event.created"])
        seed.webhook(org_id, "https://b.test")

        config = dispatcher_factory().load_channel_config(org_id)

        assert [hook["url"] for hook in config.webhooks] == ["https://b.test"]

    def test_send_options_follow_current_configuration(self, seed, dispatcher_factory):
        org_id = seed.org("Acme", telegram_bot_token="123:abc", slack_webhook_url=SLACK_URL)
        seed.member(org_id, "admin@acme.test", telegram_chat_id="-100")
        seed.webhook(org_id, "https://b.test", secret="s3")

        config = dispatcher_factory().load_channel_config(org_id)

        assert config.send_options(NotificationChannel.EMAIL, "admin@acme.test") == {}
        assert config.send_options(NotificationChannel.EMAIL, "gone@acme.test") is None
        assert config.send_options(NotificationChannel.TELEGRAM, "-100") == {
            "bot_token": "123:abc"
        }
        assert config.send_options(NotificationChannel.WEBHOOK, "https://b.test") == {
            "secret": "s3"
        }
        assert config.send_options(NotificationChannel.SLACK, SLACK_URL) == {}
        assert config.send_options(NotificationChannel.TEAMS, TEAMS_URL) is None


class TestFormatting:
    @pytest.fixture
    def notice(self, clock):
        return AlertNotice(
            org_id=1,
            org_name="Acme",
            rule_id=2,
            rule_name="Weekly spend",
            event_id=3,
            amount_eur=Decimal("150"),
            threshold_eur=Decimal("100"),
            window_label="last 7 days",
            message="Weekly spend: €150.00 spent in Acme over the last 7 days, threshold €100.00.",
            triggered_at=clock.now,
        )

    def test_email_subject_and_body(self, notice):
        subject, html = format_email(notice, "https://pulse.test/dashboard")

        assert subject == "🔴 CRITICAL: Weekly spend - Acme"
        assert "€150.00" in html
        assert "150.0%" in html
        assert "https://pulse.test/dashboard" in html

    def test_telegram_uses_html_labels(self, notice):
        text = format_telegram(notice, "https://pulse.test/dashboard")

        assert "<b>Current Spend:</b> €150.00" in text
        assert "<b>Threshold:</b> €100.00" in text

    def test_below_threshold_is_warning(self, notice):
        notice.amount_eur = Decimal("80")

        subject, _ = format_email(notice, "https://pulse.test/dashboard")

        assert subject.startswith("⚠️ WARNING")

    def test_slack_mrkdwn_links_dashboard(self, notice):
        text = format_slack(notice, "https://pulse.test/dashboard")

        assert text.startswith("*🔴 CRITICAL: Weekly spend - Acme*")
        assert "*Current Spend:* €150.00" in text
        assert "<https://pulse.test/dashboard|View Dashboard>" in text

    def test_teams_paragraphs(self, notice):
        text = format_teams(notice, "https://pulse.test/dashboard")

        assert "**Threshold:** €100.00\n\n**Usage:**" in text
        assert text.endswith("[View Dashboard](https://pulse.test/dashboard)")
