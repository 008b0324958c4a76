"""
Role-based access control for the admin console.

A role owns a fixed set of permissions; the table is process-wide static configuration and never
depends on who is logged in. Unknown roles resolve to no permissions (fail closed).
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from cardshop.errors import AuthorizationError


class Role(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"


class Permission(str, Enum):
    VIEW_ORDERS = "view_orders"
    CREATE_ORDERS = "create_orders"
    UPDATE_ORDERS = "update_orders"
    DELETE_ORDERS = "delete_orders"
    SEND_EMAILS = "send_emails"
    VIEW_STATS = "view_stats"
    VIEW_CUSTOMERS = "view_customers"
    MANAGE_USERS = "manage_users"


ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = MappingProxyType({
    Role.ADMIN: frozenset(Permission),
    Role.MODERATOR: frozenset({
        Permission.VIEW_ORDERS,
        Permission.UPDATE_ORDERS,
        Permission.VIEW_STATS,
        Permission.VIEW_CUSTOMERS,
    }),
    Role.USER: frozenset(),
})

ROLE_NAMES: Mapping[Role, str] = MappingProxyType({
    Role.ADMIN: "Administrator",
    Role.MODERATOR: "Moderator",
    Role.USER: "User",
})

ADMIN_ROLES = frozenset({Role.ADMIN, Role.MODERATOR})


def _coerce_role(role: Role | str | None) -> Role | None:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except (ValueError, TypeError):
        return None


def _coerce_permission(permission: Permission | str | None) -> Permission | None:
    if isinstance(permission, Permission):
        return permission
    try:
        return Permission(permission)
    except (ValueError, TypeError):
        return None


def permissions_for(role: Role | str | None) -> frozenset[Permission]:
    resolved = _coerce_role(role)
    if resolved is None:
        return frozenset()
    return ROLE_PERMISSIONS.get(resolved, frozenset())


def has_permission(role: Role | str | None, permission: Permission | str) -> bool:
    """True only if role is known and its table entry lists permission."""
    resolved = _coerce_permission(permission)
    if resolved is None:
        return False
    return resolved in permissions_for(role)


def has_admin_access(role: Role | str | None) -> bool:
    return _coerce_role(role) in ADMIN_ROLES


def role_name(role: Role | str | None) -> str:
    resolved = _coerce_role(role)
    if resolved is None:
        return "Unknown"
    return ROLE_NAMES[resolved]


@dataclass(frozen=True)
class Principal:
    """Authenticated caller passed explicitly into every mutating operation."""
    role: Role | str
    subject: str = "admin"

    def can(self, permission: Permission) -> bool:
        return has_permission(self.role, permission)


def require_permission(principal: Principal | None, permission: Permission) -> None:
    if principal is None or not principal.can(permission):
        raise AuthorizationError()
