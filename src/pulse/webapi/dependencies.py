"""FastAPI dependencies: settings, database, services and caller identity."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..comm.telegram import TelegramBot
from ..config.logging import get_logger
from ..config.settings import Settings, get_settings
from ..ormdb.database import SessionFactory, get_session_factory, session_scope
from ..ormdb.models import MemberRole, normalize_role, role_at_least
from ..ormdb.repositories import MembershipRepository
from ..services.orchestrator import AlertRunOrchestrator
from ..services.rate_limit import InMemoryRateLimitStore
from ..services.trigger import AlertRunGateway
from ..utils.clock import utcnow
from .exceptions import AuthenticationError, PermissionDeniedError, ValidationException

logger = get_logger(__name__)

ORG_HEADER = "X-Org-Id"

session_bearer = HTTPBearer(auto_error=False)


@dataclass
class MemberContext:
    """The authenticated caller and their active organization."""

    user_id: int
    email: str
    org_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return role_at_least(self.role, MemberRole.ADMIN.value)


def get_app_settings() -> Settings:
    """Dependency to get application settings."""
    return get_settings()


def get_db_session_factory() -> SessionFactory:
    """Dependency to get the database session factory."""
    return get_session_factory()


def get_rate_limit_store(request: Request) -> InMemoryRateLimitStore:
    """Dependency to get the application's rate-limit store."""
    return request.app.state.rate_limit_store


def get_telegram_bot_factory():
    """Dependency to get the Telegram client class used for token checks."""
    return TelegramBot


def get_orchestrator(
    session_factory: SessionFactory = Depends(get_db_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> AlertRunOrchestrator:
    """Dependency to get an alert run orchestrator."""
    return AlertRunOrchestrator(session_factory=session_factory, settings=settings)


def get_gateway(
    orchestrator: AlertRunOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> AlertRunGateway:
    """Dependency to get the secret-checked alert run gateway."""
    return AlertRunGateway(orchestrator, settings)


def _requested_org_id(request: Request) -> Optional[int]:
    raw = request.headers.get(ORG_HEADER)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationException(
            "Invalid organization header", field_errors={ORG_HEADER: "must be an integer"}
        )


def get_current_member(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(session_bearer),
    session_factory: SessionFactory = Depends(get_db_session_factory),
) -> MemberContext:
    """
    Resolve the caller from their session token.

    The active organization is taken from the ``X-Org-Id`` header, or the
    caller's first membership when the header is absent.

    Raises:
        AuthenticationError: If there is no valid session
        PermissionDeniedError: If the caller is not a member of the organization
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Unauthorized")

    requested_org_id = _requested_org_id(request)

    with session_scope(session_factory) as session:
        memberships = MembershipRepository(session)
        user = memberships.get_user_by_session_token(credentials.credentials, utcnow())
        if user is None:
            logger.warning("Invalid or expired session presented")
            raise AuthenticationError("Invalid or expired session")

        if requested_org_id is not None:
            membership = memberships.get_membership(user.id, requested_org_id)
        else:
            membership = memberships.get_default_membership(user.id)

        if membership is None:
            logger.warning(
                "Caller is not a member of the organization",
                user_id=user.id,
                org_id=requested_org_id,
            )
            raise PermissionDeniedError("Not a member of this organization")

        return MemberContext(
            user_id=user.id,
            email=user.email,
            org_id=membership.org_id,
            role=normalize_role(membership.role),
        )


def require_org_admin(member: MemberContext = Depends(get_current_member)) -> MemberContext:
    """
    Require the caller to be an admin of their active organization.

    Raises:
        PermissionDeniedError: If the caller's role is below admin
    """
    if not member.is_admin:
        logger.warning(
            "Admin role required",
            user_id=member.user_id,
            org_id=member.org_id,
            role=member.role,
        )
        raise PermissionDeniedError("Forbidden", required_role=MemberRole.ADMIN.value)
    return member
