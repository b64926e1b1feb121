"""
Role based access control.

Users hold roles, roles bundle permissions, and permissions are flat
``resource:verb`` action strings. The session payload is enriched once when
a token is issued (``build_session_payload``); every request afterwards is
decided by ``evaluate_access`` from that payload alone.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from pydantic import BaseModel

from app.errors import (
    invalid_session_error,
    missing_permissions_error,
    missing_roles_error,
    unauthorized_error,
)
from app.models.models import User


class SessionPayload(BaseModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = []
    permissions: List[str] = []
    is_staff: bool = False
    email_verified: Optional[datetime] = None


@dataclass(frozen=True)
class Identity:
    """An authenticated identity as presented by the request, payload may be unusable."""

    token: str
    payload: Optional[SessionPayload] = None


@dataclass(frozen=True)
class AuthPolicy:
    require_auth: bool = True
    require_permissions: FrozenSet[str] = frozenset()
    require_roles: FrozenSet[str] = frozenset()
    require_all_permissions: bool = False
    require_all_roles: bool = False

    @classmethod
    def of(
        cls,
        require_auth: bool = True,
        permissions: Iterable[str] = (),
        roles: Iterable[str] = (),
        require_all_permissions: bool = False,
        require_all_roles: bool = False,
    ) -> "AuthPolicy":
        return cls(
            require_auth=require_auth,
            require_permissions=frozenset(permissions),
            require_roles=frozenset(roles),
            require_all_permissions=require_all_permissions,
            require_all_roles=require_all_roles,
        )


PUBLIC = AuthPolicy(require_auth=False)

MethodAuthConfig = Dict[str, AuthPolicy]


@dataclass(frozen=True)
class AuthenticatedUser:
    id: int
    name: Optional[str]
    email: Optional[str]
    is_staff: bool
    email_verified: Optional[datetime]
    roles: FrozenSet[str] = field(default_factory=frozenset)
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    def has_permission(self, action: str) -> bool:
        return action in self.permissions

    def has_any_permission(self, *actions: str) -> bool:
        return any(action in self.permissions for action in actions)


@dataclass(frozen=True)
class AuthContext:
    user: Optional[AuthenticatedUser] = None
    session: Optional[SessionPayload] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


def effective_permissions(user: User) -> Set[str]:
    return {permission.action for role in user.roles for permission in role.permissions}


def role_names(user: User) -> Set[str]:
    return {role.name for role in user.roles}


def build_session_payload(user: User) -> SessionPayload:
    return SessionPayload(
        id=user.id,
        name=user.name,
        email=user.email,
        roles=sorted(role_names(user)),
        permissions=sorted(effective_permissions(user)),
        is_staff=user.is_staff,
        email_verified=user.email_verified,
    )


def _satisfies(held: FrozenSet[str], required: FrozenSet[str], require_all: bool) -> bool:
    if require_all:
        return required <= held
    return not held.isdisjoint(required)


def evaluate_access(policy: AuthPolicy, identity: Optional[Identity]) -> AuthContext:
    """
    Decide whether a request may proceed under ``policy``.

    Parameters:
        policy (AuthPolicy): Requirements for the requested operation.
        identity (Identity | None): The caller's identity, None when anonymous.

    Returns:
        AuthContext: The authenticated user and session, empty for anonymous access.

    Raises:
        ApiError: UNAUTHORIZED, INVALID_SESSION, MISSING_PERMISSIONS or MISSING_ROLES.
    """
    if identity is None:
        if policy.require_auth:
            raise unauthorized_error()
        return AuthContext()

    session = identity.payload
    if session is None:
        raise invalid_session_error()

    user = AuthenticatedUser(
        id=session.id,
        name=session.name,
        email=session.email,
        is_staff=session.is_staff,
        email_verified=session.email_verified,
        roles=frozenset(session.roles),
        permissions=frozenset(session.permissions),
    )

    if policy.require_permissions and not _satisfies(
        user.permissions, policy.require_permissions, policy.require_all_permissions
    ):
        raise missing_permissions_error(
            policy.require_permissions, policy.require_all_permissions
        )

    if policy.require_roles and not _satisfies(
        user.roles, policy.require_roles, policy.require_all_roles
    ):
        raise missing_roles_error(policy.require_roles, policy.require_all_roles)

    return AuthContext(user=user, session=session)


def policy_for_method(config: MethodAuthConfig, method: str) -> AuthPolicy:
    return config.get(method.upper(), PUBLIC)
