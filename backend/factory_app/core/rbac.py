"""Role-Based Access Control (RBAC) utilities.

Roles map to an explicit set of capabilities. The workflow engine asks
``has_capability`` instead of comparing role names, so changing what a role
may do is a change to ``ROLE_CAPABILITIES`` only.
"""

from enum import Enum
from typing import Annotated, Dict, FrozenSet

from fastapi import Depends, HTTPException, Request, status

from factory_app.core.security import decode_access_token
from factory_app.db.session import DbSession


class UserRole(str, Enum):
    """User roles for RBAC."""

    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class Capability(str, Enum):
    """Capabilities a role may hold on requisitions."""

    VIEW_ALL = "requisition:view_all"
    EDIT_ANY = "requisition:edit_any"
    DELETE_ANY = "requisition:delete_any"
    APPROVE = "requisition:approve"
    FULFILL = "requisition:fulfill"


# Plain users only act on their own records, which needs no capability.
ROLE_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.ADMIN: frozenset({
        Capability.VIEW_ALL,
        Capability.EDIT_ANY,
        Capability.DELETE_ANY,
        Capability.APPROVE,
        Capability.FULFILL,
    }),
    UserRole.MANAGER: frozenset({
        Capability.VIEW_ALL,
        Capability.EDIT_ANY,
        Capability.APPROVE,
        Capability.FULFILL,
    }),
    UserRole.USER: frozenset(),
}


def has_capability(role: UserRole, capability: Capability) -> bool:
    """Return True if ``role`` grants ``capability``."""
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


class TokenData:
    """The authenticated caller.

    Attributes:
        user_id: The user's database ID.
        email: The user's email address.
        role: The user's role (admin/manager/user).
        id: Alias for user_id.
        username: The user's login name.
    """

    def __init__(self, user_id: int, email: str, role: UserRole, username: str = ""):
        self.user_id = user_id
        self.id = user_id
        self.email = email
        self.role = role
        self.username = username or email.split("@")[0]

    def can(self, capability: Capability) -> bool:
        return has_capability(self.role, capability)


def _credentials_exception(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(request: Request, db: DbSession) -> TokenData:
    """Get the current authenticated user from a Bearer JWT.

    The token only identifies the user; role and active flag are read from
    the database so a demoted or disabled account takes effect immediately.
    """
    from factory_app.models.user import User

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise _credentials_exception("Not authenticated")

    payload = decode_access_token(auth_header.split(" ", 1)[1])
    if payload is None or payload.get("sub") is None:
        raise _credentials_exception("Invalid or expired token")

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise _credentials_exception("Invalid token payload")

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise _credentials_exception("User account is disabled")

    return TokenData(
        user_id=user.id,
        email=user.email,
        role=user.role,
        username=user.username,
    )


CurrentUser = Annotated[TokenData, Depends(get_current_user)]
