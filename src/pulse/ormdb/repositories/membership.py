"""Repository for users, memberships and login sessions."""

from datetime import datetime
from typing import Optional

from ..models import Membership, User, UserSession
from .base import BaseRepository


class MembershipRepository(BaseRepository):
    """Repository for membership and session lookups used by the web API."""

    def get_user_by_session_token(
        self, token: str, now: datetime
    ) -> Optional[User]:
        """Get the active user owning an unexpired session token."""
        user_session = (
            self.session.query(UserSession)
            .filter(UserSession.token == token)
            .first()
        )
        if user_session is None or user_session.is_expired(now):
            return None

        user = self.session.get(User, user_session.user_id)
        if user is None or not user.is_active:
            return None
        return user

    def get_membership(self, user_id: int, org_id: int) -> Optional[Membership]:
        """Get a user's membership in a specific organization."""
        return (
            self.session.query(Membership)
            .filter(Membership.user_id == user_id, Membership.org_id == org_id)
            .first()
        )

    def get_default_membership(self, user_id: int) -> Optional[Membership]:
        """Get the user's oldest membership, used when no org is selected."""
        return (
            self.session.query(Membership)
            .filter(Membership.user_id == user_id)
            .order_by(Membership.created_at, Membership.id)
            .first()
        )

    def add_member(
        self, org_id: int, email: str, role: str, name: Optional[str] = None
    ) -> Membership:
        """Create a user if needed and add them to an organization."""
        user = self.session.query(User).filter(User.email == email).first()
        if user is None:
            user = User(email=email, name=name)
            self.session.add(user)
            self.session.flush()

        membership = Membership(org_id=org_id, user_id=user.id, role=role)
        self.session.add(membership)
        self.session.flush()
        return membership

    def add_session(self, user_id: int, token: str, expires_at: datetime) -> UserSession:
        """Register a login session token."""
        user_session = UserSession(user_id=user_id, token=token, expires_at=expires_at)
        self.session.add(user_session)
        self.session.flush()
        return user_session
