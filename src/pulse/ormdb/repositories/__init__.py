"""Repository classes for database operations using SQLAlchemy ORM."""

from .alert_event import AlertEventRepository
from .alert_rule import AlertRuleRepository
from .base import BaseRepository
from .cost_record import CostRecordRepository
from .cron_run_log import CronRunLogRepository
from .membership import MembershipRepository
from .notification import (
    InAppNotificationRepository,
    NotificationDeliveryRepository,
    NotificationPreferenceRepository,
)
from .organization import ALERT_RECIPIENT_ROLES, OrganizationRepository

__all__ = [
    "ALERT_RECIPIENT_ROLES",
    "BaseRepository",
    "AlertEventRepository",
    "AlertRuleRepository",
    "CostRecordRepository",
    "CronRunLogRepository",
    "InAppNotificationRepository",
    "MembershipRepository",
    "NotificationDeliveryRepository",
    "NotificationPreferenceRepository",
    "OrganizationRepository",
]
