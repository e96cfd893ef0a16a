"""Shared test configuration and fixtures."""

import os
import sys
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import pytest

sys.path.append("src")

from pulse.config.settings import Settings, get_settings
from pulse.ormdb.database import (
    create_engine_from_url,
    create_session_factory,
    create_tables,
    session_scope,
)
from pulse.ormdb.models import OrgWebhook, RuleType
from pulse.ormdb.repositories import (
    AlertRuleRepository,
    CostRecordRepository,
    MembershipRepository,
    NotificationPreferenceRepository,
    OrganizationRepository,
)
from pulse.services.notification.models import NotificationChannel, NotificationResult
from pulse.utils.clock import utcnow

NOW = datetime(2026, 3, 15, 12, 0, 0)


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeChannel:
    """Notification channel that records calls instead of sending."""

    def __init__(self, channel: NotificationChannel, fail_with: Optional[str] = None):
        self.channel = channel
        self.fail_with = fail_with
        self.calls: List[dict] = []

    async def send_notification(self, notice, recipient, **kwargs) -> NotificationResult:
        self.calls.append({"notice": notice, "recipient": recipient, **kwargs})
        return NotificationResult(
            channel=self.channel,
            success=self.fail_with is None,
            recipient=recipient,
            error=self.fail_with,
            delivery_time_ms=1.0,
        )


class Seeder:
    """Builds organizations, members, rules and costs in a test database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def org(self, name: str = "Acme", **fields) -> int:
        with session_scope(self.session_factory) as session:
            return OrganizationRepository(session).add_organization(name, **fields).id

    def member(
        self,
        org_id: int,
        email: str,
        role: str = "admin",
        email_enabled: bool = True,
        telegram_chat_id: Optional[str] = None,
    ) -> int:
        with session_scope(self.session_factory) as session:
            membership = MembershipRepository(session).add_member(org_id, email, role)
            preference = NotificationPreferenceRepository(session).get_or_create_preference(
                org_id, membership.user_id
            )
            preference.email_enabled = email_enabled
            if telegram_chat_id:
                preference.telegram_enabled = True
                preference.telegram_chat_id = telegram_chat_id
            return membership.user_id

    def session_token(self, user_id: int, token: str, expires_at: datetime = None) -> str:
        expires_at = expires_at or utcnow() + timedelta(days=1)
        with session_scope(self.session_factory) as session:
            MembershipRepository(session).add_session(user_id, token, expires_at)
        return token

    def rule(
        self,
        org_id: int,
        threshold_eur,
        window_days: int = 7,
        name: str = "Weekly spend",
        rule_type: RuleType = RuleType.WINDOW,
        spike_percent: Optional[float] = None,
    ) -> int:
        with session_scope(self.session_factory) as session:
            threshold = Decimal(str(threshold_eur)) if threshold_eur is not None else None
            return AlertRuleRepository(session).add_rule(
                org_id,
                threshold,
                window_days=window_days,
                name=name,
                rule_type=rule_type,
                spike_percent=spike_percent,
            ).id

    def cost(self, org_id: int, amount_eur, date: datetime, provider: str = "openai") -> None:
        with session_scope(self.session_factory) as session:
            CostRecordRepository(session).add_cost(
                org_id, date, Decimal(str(amount_eur)), provider=provider
            )

    def webhook(self, org_id: int, url: str, secret: str = "whsec", events=None) -> None:
        with session_scope(self.session_factory) as session:
            session.add(
                OrgWebhook(
                    org_id=org_id,
                    url=url,
                    secret=secret,
                    events=events or ["alert_event.triggered"],
                    enabled=True,
                )
            )


@pytest.fixture
def isolated_db():
    """Create an isolated database for testing."""
    temp_fd, temp_path = tempfile.mkstemp(suffix=".db")
    db_url = f"sqlite:///{temp_path}"

    engine = create_engine_from_url(db_url)
    create_tables(engine)

    try:
        yield {
            "engine": engine,
            "session_factory": create_session_factory(engine),
            "db_url": db_url,
            "db_path": temp_path,
        }
    finally:
        engine.dispose()
        os.close(temp_fd)
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(temp_path + suffix):
                os.unlink(temp_path + suffix)


@pytest.fixture
def session_factory(isolated_db):
    return isolated_db["session_factory"]


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def test_settings():
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        environment="testing",
        cron_secret="test-cron-secret",
        resend_api_key=None,
        scheduler_enabled=False,
        log_file_enabled=False,
        app_base_url="https://pulse.test",
    )


@pytest.fixture
def fake_channels():
    return {
        "email": FakeChannel(NotificationChannel.EMAIL),
        "telegram": FakeChannel(NotificationChannel.TELEGRAM),
        "webhook": FakeChannel(NotificationChannel.WEBHOOK),
        "slack": FakeChannel(NotificationChannel.SLACK),
        "teams": FakeChannel(NotificationChannel.TEAMS),
    }


@pytest.fixture(autouse=True)
def clean_lru_cache():
    """Clear cached settings between tests to avoid state pollution."""
    yield
    get_settings.cache_clear()
