"""Repository for organizations, their members and channel configuration."""

from typing import List, Optional, Tuple

from ..models import Membership, MemberRole, Organization, OrgWebhook, User
from .base import BaseRepository

# Roles entitled to receive alert notifications
ALERT_RECIPIENT_ROLES = (
    MemberRole.OWNER.value,
    MemberRole.ADMIN.value,
    MemberRole.FINANCE.value,
    MemberRole.MANAGER.value,
)


class OrganizationRepository(BaseRepository):
    """Repository for organization operations."""

    def get_organization(self, org_id: int) -> Optional[Organization]:
        """Get an organization by ID."""
        return self.session.get(Organization, org_id)

    def list_organization_ids(self) -> List[int]:
        """Get the IDs of every organization."""
        rows = self.session.query(Organization.id).order_by(Organization.id).all()
        return [row.id for row in rows]

    def add_organization(self, name: str, **fields) -> Organization:
        """Create an organization."""
        org = Organization(name=name, **fields)
        self.session.add(org)
        self.session.flush()
        return org

    def get_alert_recipients(self, org_id: int) -> List[Tuple[User, Membership]]:
        """Get active members whose role entitles them to alert notifications."""
        return (
            self.session.query(User, Membership)
            .join(Membership, Membership.user_id == User.id)
            .filter(
                Membership.org_id == org_id,
                Membership.role.in_(ALERT_RECIPIENT_ROLES),
                User.is_active.is_(True),
            )
            .order_by(User.id)
            .all()
        )

    def get_webhooks_for_event(self, org_id: int, event_type: str) -> List[OrgWebhook]:
        """Get enabled webhooks of an organization subscribed to an event type."""
        webhooks = (
            self.session.query(OrgWebhook)
            .filter(OrgWebhook.org_id == org_id, OrgWebhook.enabled.is_(True))
            .order_by(OrgWebhook.id)
            .all()
        )
        # Subscriptions live in a JSON column, filter in Python
        return [webhook for webhook in webhooks if webhook.is_subscribed(event_type)]
