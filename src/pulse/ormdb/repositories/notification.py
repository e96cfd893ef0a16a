"""Repositories for notification deliveries, preferences and in-app notifications."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import desc, update

from ..models import (
    DeliveryStatus,
    InAppNotification,
    NotificationDelivery,
    NotificationPreference,
)
from .base import BaseRepository


class NotificationDeliveryRepository(BaseRepository):
    """Audit trail of every delivery attempt."""

    def start_delivery(
        self,
        org_id: int,
        channel: str,
        recipient: Optional[str],
        alert_event_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> NotificationDelivery:
        """Record a first delivery attempt in the pending state."""
        delivery = NotificationDelivery(
            org_id=org_id,
            alert_event_id=alert_event_id,
            channel=channel,
            recipient=recipient,
            status=DeliveryStatus.PENDING.value,
            attempt=1,
        )
        if now is not None:
            delivery.created_at = now
            delivery.attempted_at = now
        self.session.add(delivery)
        self.session.flush()
        return delivery

    def finish_delivery(
        self,
        delivery_id: int,
        success: bool,
        error: Optional[str],
        now: datetime,
    ) -> Optional[NotificationDelivery]:
        """Move a pending delivery to its terminal state."""
        delivery = self.session.get(NotificationDelivery, delivery_id)
        if delivery is None or delivery.status != DeliveryStatus.PENDING.value:
            return delivery

        delivery.status = (
            DeliveryStatus.SENT.value if success else DeliveryStatus.FAILED.value
        )
        delivery.error = None if success else error
        delivery.sent_at = now if success else None
        self.session.flush()
        return delivery

    def schedule_retry(
        self, failed_delivery_id: int, next_retry_at: datetime, now: datetime
    ) -> Optional[NotificationDelivery]:
        """
        Queue the next attempt of a failed delivery.

        Returns:
            The new ``retrying`` row, or None if the delivery is not failed
        """
        failed = self.session.get(NotificationDelivery, failed_delivery_id)
        if failed is None or failed.status != DeliveryStatus.FAILED.value:
            return None

        retry = NotificationDelivery(
            org_id=failed.org_id,
            alert_event_id=failed.alert_event_id,
            channel=failed.channel,
            recipient=failed.recipient,
            status=DeliveryStatus.RETRYING.value,
            attempt=failed.attempt + 1,
            next_retry_at=next_retry_at,
            retry_of_id=failed.id,
            created_at=now,
        )
        self.session.add(retry)
        self.session.flush()
        return retry

    def get_due_retries(self, now: datetime, limit: int = 100) -> List[NotificationDelivery]:
        """Get retrying deliveries whose backoff has elapsed, oldest first."""
        return (
            self.session.query(NotificationDelivery)
            .filter(
                NotificationDelivery.status == DeliveryStatus.RETRYING.value,
                NotificationDelivery.next_retry_at <= now,
            )
            .order_by(NotificationDelivery.next_retry_at, NotificationDelivery.id)
            .limit(limit)
            .all()
        )

    def claim_retry(self, delivery_id: int, now: datetime) -> bool:
        """
        Take a due retry for sending by moving it back to pending.

        Like the rule latch, this is a conditional UPDATE: of two retry runs
        racing on the same row only one sees a row count of one.

        Returns:
            True if this call claimed the delivery
        """
        result = self.session.execute(
            update(NotificationDelivery)
            .where(
                NotificationDelivery.id == delivery_id,
                NotificationDelivery.status == DeliveryStatus.RETRYING.value,
            )
            .values(status=DeliveryStatus.PENDING.value, attempted_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_stale_pending(self, cutoff: datetime, limit: int = 100) -> List[NotificationDelivery]:
        """Get pending deliveries whose send started before the cutoff."""
        return (
            self.session.query(NotificationDelivery)
            .filter(
                NotificationDelivery.status == DeliveryStatus.PENDING.value,
                NotificationDelivery.attempted_at < cutoff,
            )
            .order_by(NotificationDelivery.id)
            .limit(limit)
            .all()
        )

    def get_recent_deliveries(
        self, org_id: int, limit: int = 50
    ) -> List[NotificationDelivery]:
        """Get the most recent deliveries of an organization."""
        return (
            self.session.query(NotificationDelivery)
            .filter(NotificationDelivery.org_id == org_id)
            .order_by(desc(NotificationDelivery.created_at), desc(NotificationDelivery.id))
            .limit(limit)
            .all()
        )

    def get_deliveries_for_event(
        self, org_id: int, alert_event_id: int
    ) -> List[NotificationDelivery]:
        """Get every delivery attempted for one alert event of an organization."""
        return (
            self.session.query(NotificationDelivery)
            .filter(
                NotificationDelivery.org_id == org_id,
                NotificationDelivery.alert_event_id == alert_event_id,
            )
            .order_by(NotificationDelivery.id)
            .all()
        )


class NotificationPreferenceRepository(BaseRepository):
    """Per-member channel preferences."""

    def get_or_create_preference(
        self, org_id: int, user_id: int
    ) -> NotificationPreference:
        """Get a member's preference, creating the default one if missing."""
        preference = (
            self.session.query(NotificationPreference)
            .filter(
                NotificationPreference.org_id == org_id,
                NotificationPreference.user_id == user_id,
            )
            .first()
        )
        if preference is None:
            preference = NotificationPreference(
                org_id=org_id,
                user_id=user_id,
                email_enabled=True,
                telegram_enabled=False,
            )
            self.session.add(preference)
            self.session.flush()
        return preference


class InAppNotificationRepository(BaseRepository):
    """Dashboard notifications."""

    def add_notification(
        self,
        org_id: int,
        title: str,
        body: str,
        alert_event_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> InAppNotification:
        """Create an in-app notification, org-wide unless a user is given."""
        notification = InAppNotification(
            org_id=org_id,
            user_id=user_id,
            alert_event_id=alert_event_id,
            title=title,
            body=body,
        )
        self.session.add(notification)
        self.session.flush()
        return notification
