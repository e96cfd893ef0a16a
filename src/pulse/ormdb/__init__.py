"""Database module for SQLAlchemy ORM integration."""

# Import database configuration and session management
from .database import (
    Base,
    check_database_health,
    create_tables,
    get_engine,
    get_session_factory,
    reset_engine,
    session_scope,
)

# Import all models
from .models import (
    AlertDispatch,
    AlertEvent,
    AlertRule,
    CostRecord,
    CronRunLog,
    DeliveryStatus,
    InAppNotification,
    Membership,
    MemberRole,
    NotificationDelivery,
    NotificationPreference,
    Organization,
    OrgWebhook,
    RuleType,
    RunStatus,
    User,
    UserSession,
)

__all__ = [
    # Database components
    "Base",
    "check_database_health",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "reset_engine",
    "session_scope",
    # Models
    "AlertDispatch",
    "AlertEvent",
    "AlertRule",
    "CostRecord",
    "CronRunLog",
    "DeliveryStatus",
    "InAppNotification",
    "Membership",
    "MemberRole",
    "NotificationDelivery",
    "NotificationPreference",
    "Organization",
    "OrgWebhook",
    "RuleType",
    "RunStatus",
    "User",
    "UserSession",
]
