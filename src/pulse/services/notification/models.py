"""Data models for notification dispatch."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from ...ormdb.models import DeliveryStatus

# A delivery is tried at most this many times, first send included
MAX_DELIVERY_ATTEMPTS = 4

# Wait before attempt 2, 3 and 4
RETRY_BACKOFFS = (
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=2),
)


def retry_delay(attempt: int) -> Optional[timedelta]:
    """
    How long to wait after a failed attempt before the next one.

    Args:
        attempt: Number of the attempt that just failed, starting at 1

    Returns:
        The backoff, or None once the attempts are used up
    """
    if attempt < 1 or attempt >= MAX_DELIVERY_ATTEMPTS:
        return None
    return RETRY_BACKOFFS[attempt - 1]


class AlertSeverity(Enum):
    """Alert severity levels."""

    WARNING = "warning"
    CRITICAL = "critical"


class NotificationChannel(Enum):
    """Available notification channels."""

    EMAIL = "email"
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"
    SLACK = "slack"
    TEAMS = "teams"
    IN_APP = "in_app"


@dataclass
class AlertNotice:
    """Everything a channel needs to describe one triggered alert."""

    org_id: int
    org_name: str
    rule_id: int
    rule_name: str
    event_id: int
    amount_eur: Decimal
    threshold_eur: Optional[Decimal]
    window_label: str
    message: str
    triggered_at: datetime

    @property
    def severity(self) -> AlertSeverity:
        if self.threshold_eur is None or self.amount_eur >= self.threshold_eur:
            return AlertSeverity.CRITICAL
        return AlertSeverity.WARNING

    @property
    def usage_percent(self) -> Optional[float]:
        if not self.threshold_eur:
            return None
        return float(self.amount_eur / self.threshold_eur * 100)


@dataclass
class NotificationResult:
    """Result of notification delivery attempt."""

    channel: NotificationChannel
    success: bool
    recipient: Optional[str]
    error: Optional[str]
    delivery_time_ms: float
    message_id: Optional[str] = None
    # False when sending again cannot help, e.g. a missing API key
    retryable: bool = True


@dataclass
class DispatchResult:
    """Per-channel success counts and the errors of one dispatch call."""

    sent_email: int = 0
    sent_telegram: int = 0
    sent_webhook: int = 0
    sent_slack: int = 0
    sent_teams: int = 0
    sent_in_app: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def count_success(self, channel: NotificationChannel) -> None:
        attribute = f"sent_{channel.value}"
        setattr(self, attribute, getattr(self, attribute) + 1)

    @property
    def sent_total(self) -> int:
        return (
            self.sent_email
            + self.sent_telegram
            + self.sent_webhook
            + self.sent_slack
            + self.sent_teams
            + self.sent_in_app
        )
