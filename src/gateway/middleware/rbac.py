"""Role and org-scope checks for governance routes.

Role hierarchy:
  admin   -> read, write, policy:admin
  member  -> read, write
  viewer  -> read

A token is scoped to one org: every route with an ``{org_id}`` (or an
org_id in its body) must match the token's org.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.shared.errors import AuthorizationError

if TYPE_CHECKING:
    from uuid import UUID

    from fastapi import Request


class Role:
    """Role constants."""

    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class Permission:
    """Permission constants."""

    READ = "read"
    WRITE = "write"
    POLICY_ADMIN = "policy:admin"


_ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    Role.ADMIN: frozenset({Permission.READ, Permission.WRITE, Permission.POLICY_ADMIN}),
    Role.MEMBER: frozenset({Permission.READ, Permission.WRITE}),
    Role.VIEWER: frozenset({Permission.READ}),
}


def get_role_permissions(role: str) -> frozenset[str]:
    """Return permission set for a given role. Unknown roles get nothing."""
    return _ROLE_PERMISSIONS.get(role, frozenset())


def require_permission(request: Request, permission: str) -> None:
    """Raise AuthorizationError unless the caller's role grants permission."""
    role = getattr(request.state, "role", Role.VIEWER)
    if permission not in get_role_permissions(role):
        raise AuthorizationError(permission)


def require_org_scope(request: Request, org_id: UUID, permission: str = Permission.READ) -> None:
    """Raise AuthorizationError on cross-org access or a missing permission."""
    if getattr(request.state, "org_id", None) != org_id:
        raise AuthorizationError(f"org:{org_id}")
    require_permission(request, permission)
