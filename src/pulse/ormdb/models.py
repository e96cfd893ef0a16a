"""SQLAlchemy ORM models for the Pulse alert engine."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON

from ..utils.clock import utcnow
from .database import Base

# EUR amounts, exact to the cent fraction stored by the importers
Money = Numeric(14, 4)


class RuleType(str, Enum):
    """How an alert rule measures spend."""

    WINDOW = "window"
    MONTHLY_BUDGET = "monthly_budget"
    DAILY_SPIKE = "daily_spike"


class RunStatus(str, Enum):
    """Lifecycle of a cron run log entry."""

    RUNNING = "running"
    OK = "ok"
    ERROR = "error"


class DeliveryStatus(str, Enum):
    """States of a NotificationDelivery row."""

    PENDING = "pending"
    RETRYING = "retrying"
    SENT = "sent"
    FAILED = "failed"


class MemberRole(str, Enum):
    """Membership roles as stored, including legacy aliases."""

    OWNER = "owner"
    ADMIN = "admin"
    FINANCE = "finance"
    MANAGER = "manager"
    USER = "user"
    MEMBER = "member"


ROLE_ALIASES = {
    MemberRole.OWNER.value: MemberRole.ADMIN.value,
    MemberRole.MEMBER.value: MemberRole.USER.value,
}

ROLE_RANK = {
    MemberRole.ADMIN.value: 4,
    MemberRole.FINANCE.value: 3,
    MemberRole.MANAGER.value: 2,
    MemberRole.USER.value: 1,
}


def normalize_role(role: Optional[str]) -> str:
    """Map legacy role names onto the four-level hierarchy."""
    role = (role or MemberRole.USER.value).lower()
    return ROLE_ALIASES.get(role, role)


def role_at_least(role: Optional[str], required: str) -> bool:
    """Whether a stored role grants at least the required level."""
    return ROLE_RANK.get(normalize_role(role), 0) >= ROLE_RANK[required]


class Organization(Base):
    """Tenant owning cost data, alert rules and channel configuration."""

    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    monthly_budget_eur = Column(Money, nullable=True)
    telegram_bot_token = Column(String, nullable=True)
    telegram_chat_id = Column(String, nullable=True)
    slack_webhook_url = Column(String, nullable=True)
    teams_webhook_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    memberships = relationship(
        "Membership", back_populates="organization", cascade="all, delete-orphan"
    )
    alert_rules = relationship(
        "AlertRule", back_populates="organization", cascade="all, delete-orphan"
    )
    webhooks = relationship(
        "OrgWebhook", back_populates="organization", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Organization(id={self.id}, name='{self.name}')>"


class User(Base):
    """Person who can belong to one or more organizations."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"


class Membership(Base):
    """Role a user holds inside an organization."""

    __tablename__ = "memberships"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_membership"),)

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(
        Integer, ForeignKey("organizations.id"), nullable=False, index=True
    )
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String, default=MemberRole.USER.value, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="memberships")
    user = relationship("User", back_populates="memberships")

    def __repr__(self):
        return f"<Membership(org_id={self.org_id}, user_id={self.user_id}, role='{self.role}')>"


class UserSession(Base):
    """Opaque login session issued by the web application."""

    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    user = relationship("User")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the session can no longer be used."""
        return self.expires_at <= (now or utcnow())


class NotificationPreference(Base):
    """Per-member channel opt-ins for one organization."""

    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_notification_preference"),
    )

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    email_enabled = Column(Boolean, default=True, nullable=False)
    telegram_enabled = Column(Boolean, default=False, nullable=False)
    telegram_chat_id = Column(String, nullable=True)


class CostRecord(Base):
    """One imported or synced cost line, normalized to EUR."""

    __tablename__ = "cost_records"
    __table_args__ = (Index("ix_cost_records_org_date", "org_id", "date"),)

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    date = Column(DateTime, nullable=False)
    provider = Column(String, nullable=True)
    service = Column(String, nullable=True)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)
    amount_eur = Column(Money, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<CostRecord(org_id={self.org_id}, date={self.date}, amount_eur={self.amount_eur})>"


class AlertRule(Base):
    """Spend threshold watched by the alert engine."""

    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(
        Integer, ForeignKey("organizations.id"), nullable=False, index=True
    )
    name = Column(String, nullable=False, default="Spend alert")
    rule_type = Column(String, default=RuleType.WINDOW.value, nullable=False)
    threshold_eur = Column(Money, nullable=True)
    window_days = Column(Integer, default=7, nullable=False)
    spike_percent = Column(Float, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)
    # Latch state, only written by the rule evaluator
    triggered = Column(Boolean, default=False, nullable=False)
    triggered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="alert_rules")
    events = relationship("AlertEvent", back_populates="rule")

    def __repr__(self):
        return f"<AlertRule(id={self.id}, org_id={self.org_id}, triggered={self.triggered})>"


class AlertEvent(Base):
    """Immutable record of one not-triggered to triggered transition."""

    __tablename__ = "alert_events"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(
        Integer, ForeignKey("organizations.id"), nullable=False, index=True
    )
    rule_id = Column(Integer, ForeignKey("alert_rules.id"), nullable=False, index=True)
    triggered_at = Column(DateTime, nullable=False)
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    amount_eur = Column(Money, nullable=False)
    message = Column(Text, nullable=False)
    extra_data = Column(JSON, nullable=True)

    rule = relationship("AlertRule", back_populates="events")

    def __repr__(self):
        return f"<AlertEvent(id={self.id}, rule_id={self.rule_id}, amount_eur={self.amount_eur})>"


class AlertDispatch(Base):
    """Claim marking an alert event as handed to the notification channels."""

    __tablename__ = "alert_dispatches"

    alert_event_id = Column(Integer, ForeignKey("alert_events.id"), primary_key=True)
    org_id = Column(
        Integer, ForeignKey("organizations.id"), nullable=False, index=True
    )
    claimed_at = Column(DateTime, nullable=False)


class NotificationDelivery(Base):
    """
    One delivery attempt on one channel for one alert event.

    A failed attempt stays failed. When the channel may recover, the next
    attempt is a new ``retrying`` row pointing back at it.
    """

    __tablename__ = "notification_deliveries"
    __table_args__ = (
        Index("ix_notification_deliveries_status_retry", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(
        Integer, ForeignKey("organizations.id"), nullable=False, index=True
    )
    alert_event_id = Column(
        Integer, ForeignKey("alert_events.id"), nullable=True, index=True
    )
    channel = Column(String, nullable=False)
    recipient = Column(String, nullable=True)
    status = Column(String, nullable=False, default=DeliveryStatus.PENDING.value)
    error = Column(Text, nullable=True)
    attempt = Column(Integer, default=1, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)
    retry_of_id = Column(
        Integer, ForeignKey("notification_deliveries.id"), nullable=True
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    # When the send went out; pending rows older than this are stale
    attempted_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<NotificationDelivery(id={self.id}, channel='{self.channel}', status='{self.status}')>"


class InAppNotification(Base):
    """Notification shown inside the dashboard."""

    __tablename__ = "in_app_notifications"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(
        Integer, ForeignKey("organizations.id"), nullable=False, index=True
    )
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # None = org-wide
    alert_event_id = Column(Integer, ForeignKey("alert_events.id"), nullable=True)
    title = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class OrgWebhook(Base):
    """Outbound webhook endpoint registered by an organization."""

    __tablename__ = "org_webhooks"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(
        Integer, ForeignKey("organizations.id"), nullable=False, index=True
    )
    url = Column(String, nullable=False)
    secret = Column(String, nullable=False)
    events = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="webhooks")

    def is_subscribed(self, event_type: str) -> bool:
        return bool(self.enabled) and event_type in (self.events or [])


class CronRunLog(Base):
    """Append-only ledger of alert and notification retry runs."""

    __tablename__ = "cron_run_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String, nullable=False, index=True)
    run_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=RunStatus.RUNNING.value)
    started_at = Column(DateTime, nullable=False, index=True)
    finished_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    orgs_processed = Column(Integer, default=0, nullable=False)
    alerts_triggered = Column(Integer, default=0, nullable=False)
    sent_email = Column(Integer, default=0, nullable=False)
    sent_telegram = Column(Integer, default=0, nullable=False)
    sent_webhook = Column(Integer, default=0, nullable=False)
    sent_slack = Column(Integer, default=0, nullable=False)
    sent_teams = Column(Integer, default=0, nullable=False)
    sent_in_app = Column(Integer, default=0, nullable=False)
    error_count = Column(Integer, default=0, nullable=False)
    error_sample = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    def __repr__(self):
        return f"<CronRunLog(job_name='{self.job_name}', status='{self.status}', started_at={self.started_at})>"
