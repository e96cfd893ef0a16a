"""Notification formatting, channels, dispatch and retry."""

from .channels import (
    EmailNotificationChannel,
    NotificationChannelProtocol,
    SlackNotificationChannel,
    TeamsNotificationChannel,
    TelegramNotificationChannel,
    WebhookNotificationChannel,
)
from .models import (
    MAX_DELIVERY_ATTEMPTS,
    RETRY_BACKOFFS,
    AlertNotice,
    AlertSeverity,
    DeliveryStatus,
    DispatchResult,
    NotificationChannel,
    NotificationResult,
    retry_delay,
)
from .retry import RETRY_NOTIFICATIONS_JOB, DeliveryRetrier, RetrySummary
from .service import NotificationDispatcher, OrgChannelConfig

__all__ = [
    "MAX_DELIVERY_ATTEMPTS",
    "RETRY_BACKOFFS",
    "RETRY_NOTIFICATIONS_JOB",
    "AlertNotice",
    "AlertSeverity",
    "DeliveryRetrier",
    "DeliveryStatus",
    "DispatchResult",
    "EmailNotificationChannel",
    "NotificationChannel",
    "NotificationChannelProtocol",
    "NotificationDispatcher",
    "NotificationResult",
    "OrgChannelConfig",
    "RetrySummary",
    "SlackNotificationChannel",
    "TeamsNotificationChannel",
    "TelegramNotificationChannel",
    "WebhookNotificationChannel",
    "retry_delay",
]
