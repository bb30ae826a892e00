"""Identity resolution and authorization checks.

AccessGate turns a bearer token into an Identity: the signature must
verify, the session holding the token must be live, and the user must be
ACTIVE. The require_* functions then decide whether that identity may
proceed. All failures are AppError (UNAUTHORIZED or FORBIDDEN).
"""

import logging
from typing import Iterable, Mapping
from uuid import UUID

from auth.credentials import CredentialStore
from auth.exceptions import AppError
from auth.session import SessionManager
from auth.tokens import TokenIssuer
from auth.types import OWNERSHIP_OVERRIDE_ROLES, Identity, Permission, UserRole, UserStatus

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"
TOKEN_QUERY_PARAM = "token"

ADMIN_ROLES = frozenset({
    UserRole.SYSTEM_ADMIN,
    UserRole.SALES_ADMIN,
    UserRole.WEB_ADMIN,
    UserRole.HELPDESK,
})


def extract_token(
    authorization: str | None,
    cookies: Mapping[str, str],
    query: Mapping[str, str] | None = None,
    allow_query: bool = False,
) -> str | None:
    """Bearer header first, then the accessToken cookie, then ?token= if allowed."""
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()

    cookie_token = cookies.get(ACCESS_TOKEN_COOKIE)
    if cookie_token:
        return cookie_token

    if allow_query and query:
        return query.get(TOKEN_QUERY_PARAM) or None

    return None


class AccessGate:
    """Resolves bearer tokens to identities."""

    def __init__(self, tokens: TokenIssuer, sessions: SessionManager, credentials: CredentialStore):
        self._tokens = tokens
        self._sessions = sessions
        self._credentials = credentials

    def authenticate(self, token: str | None) -> Identity:
        """Resolve the caller and record session activity.

        Raises:
            AppError(UNAUTHORIZED): No token, bad token, dead session, unknown user.
            AppError(FORBIDDEN): User is not ACTIVE.
        """
        if not token:
            raise AppError.unauthorized("No authentication token provided")

        claims = self._tokens.verify_access(token)

        session = self._sessions.find_active_by_access_token(token)
        if session is None or session.user_id != claims.user_id:
            raise AppError.unauthorized("Invalid or expired session")

        user = self._credentials.find_by_id(claims.user_id)
        if user is None:
            raise AppError.unauthorized("User not found")

        if user.status != UserStatus.ACTIVE:
            raise AppError.forbidden(f"Account is {user.status.value}. Please contact support.")

        session = self._sessions.extend_activity(session)

        return Identity(
            user_id=user.id,
            email=user.email,
            role=user.role,
            permissions=user.effective_permissions(),
            session_id=session.id,
        )

    def authenticate_optional(self, token: str | None) -> Identity | None:
        """Like authenticate, but any auth failure means "anonymous"."""
        if not token:
            return None
        try:
            return self.authenticate(token)
        except AppError as e:
            logger.debug(f"Optional authentication ignored: {e.message}")
            return None


# Authorization checks


def require_identity(identity: Identity | None) -> Identity:
    if identity is None:
        raise AppError.unauthorized("Authentication required")
    return identity


def require_roles(identity: Identity | None, roles: Iterable[UserRole]) -> None:
    identity = require_identity(identity)
    if identity.role not in set(roles):
        logger.warning(f"Role check failed for user {identity.user_id} ({identity.role.value})")
        raise AppError.forbidden("Insufficient role privileges")


def require_minimum_role(identity: Identity | None, minimum: UserRole) -> None:
    identity = require_identity(identity)
    if identity.role.rank < minimum.rank:
        logger.warning(f"Role level check failed for user {identity.user_id} ({identity.role.value})")
        raise AppError.forbidden("Insufficient role level")


def require_permissions(identity: Identity | None, permissions: Iterable[Permission]) -> None:
    """Pass if the identity holds at least one of the permissions."""
    identity = require_identity(identity)
    required = set(permissions)
    if not required & identity.permissions:
        logger.warning(
            f"Permission denied for user {identity.user_id}. "
            f"Required: {', '.join(sorted(p.value for p in required))}"
        )
        raise AppError.forbidden("Insufficient permissions")


def require_admin(identity: Identity | None) -> None:
    identity = require_identity(identity)
    if identity.role not in ADMIN_ROLES:
        raise AppError.forbidden("Admin access required")


def can_access_resource(identity: Identity, owner_id: UUID | None) -> bool:
    """Owners, system admins and the sales/web admins may act on a resource."""
    if identity.role in OWNERSHIP_OVERRIDE_ROLES:
        return True
    return owner_id is not None and owner_id == identity.user_id


def require_owner_or_admin(identity: Identity | None, owner_id: UUID | None) -> None:
    identity = require_identity(identity)
    if not can_access_resource(identity, owner_id):
        logger.warning(f"Resource access denied for user {identity.user_id}")
        raise AppError.forbidden("You do not have permission to access this resource")
