"""
Authorization queries over a UserProfile.

Why:
    The session layer, route guards and admin tooling all ask the same yes/no
    questions. Keeping them as pure functions here lets each caller reuse the
    exact same semantics and lets tests cover them without any store.

Behavior:
    Every function is total and fails closed: a missing profile, an unknown
    role or permission, or malformed data yields False (or the login route),
    never an exception.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence, Tuple

from backend.identity_access.domain import (
    ADMIN,
    ALLOWED_ROLES,
    GUEST,
    INSTRUCTOR,
    PARTNER_INSTRUCTOR,
    STUDENT,
    as_value,
    default_permissions_for,
)
from backend.identity_access.guest_access import is_expired

LOGIN_ROUTE = "/login"


@dataclass(frozen=True)
class RouteRule:
    prefix: str
    roles: frozenset


_ALL_ROLES = frozenset(ALLOWED_ROLES)

# Ordered: the first matching prefix wins. Unmatched paths allow any authenticated subject.
DEFAULT_ROUTE_RULES: Tuple[RouteRule, ...] = (
    RouteRule("/admin", frozenset({ADMIN})),
    RouteRule("/instructor", frozenset({INSTRUCTOR, ADMIN})),
    RouteRule("/partner-instructor", frozenset({PARTNER_INSTRUCTOR, ADMIN})),
    RouteRule("/guest", frozenset({GUEST, ADMIN})),
    RouteRule("/student", frozenset({STUDENT, INSTRUCTOR, PARTNER_INSTRUCTOR, ADMIN})),
    RouteRule("/dashboard", _ALL_ROLES),
    RouteRule("/courses", _ALL_ROLES),
    RouteRule("/analytics", frozenset({INSTRUCTOR, GUEST, ADMIN})),
    RouteRule("/settings", frozenset({ADMIN})),
)

HOME_ROUTES = {
    ADMIN: "/admin/analytics",
    INSTRUCTOR: "/instructor/analytics",
    PARTNER_INSTRUCTOR: "/partner-instructor",
    GUEST: "/guest/dashboard",
    STUDENT: "/student/analytics",
}


def _role_of(profile) -> Optional[str]:
    if profile is None:
        return None
    role = as_value(getattr(profile, "role", None))
    return role if isinstance(role, str) and role else None


def has_role(profile, role) -> bool:
    current = _role_of(profile)
    return current is not None and current == as_value(role)


def has_permission(profile, permission, now: Optional[datetime] = None) -> bool:
    """Decide a single permission.

    Order: no role → deny; expired guest → deny; admin → allow; explicit
    permission map → exact `True` match only (the map replaces the defaults);
    otherwise the role's default set.
    """
    role = _role_of(profile)
    if role is None:
        return False
    if role == GUEST and is_expired(profile, now):
        return False
    if role == ADMIN:
        return True
    name = as_value(permission)
    if not isinstance(name, str):
        return False
    permissions = getattr(profile, "permissions", None)
    if permissions is not None:
        try:
            return permissions.get(name) is True
        except (AttributeError, TypeError):
            return False
    return name in default_permissions_for(role)


def has_any_permission(profile, permissions: Iterable, now: Optional[datetime] = None) -> bool:
    if permissions is None:
        return False
    return any(has_permission(profile, p, now) for p in permissions)


def has_all_permissions(profile, permissions: Iterable, now: Optional[datetime] = None) -> bool:
    if permissions is None:
        return False
    return all(has_permission(profile, p, now) for p in permissions)


def can_access_route(
    profile,
    path: str,
    now: Optional[datetime] = None,
    *,
    routes: Sequence[RouteRule] = DEFAULT_ROUTE_RULES,
) -> bool:
    role = _role_of(profile)
    if role is None or not isinstance(path, str):
        return False
    if role == GUEST and is_expired(profile, now):
        return False
    for rule in routes:
        if path.startswith(rule.prefix):
            return role in rule.roles
    return True


def home_route_for(profile) -> str:
    return HOME_ROUTES.get(_role_of(profile) or "", LOGIN_ROUTE)


def is_valid_role_change(from_role, to_role) -> bool:
    """Shape check only: both roles known and neither side is admin."""
    src, dst = as_value(from_role), as_value(to_role)
    if not isinstance(src, str) or not isinstance(dst, str):
        return False
    if src not in ALLOWED_ROLES or dst not in ALLOWED_ROLES:
        return False
    return ADMIN not in (src, dst)


def can_manage_user(actor, target) -> bool:
    """Advisory: whether `actor` may administer `target` (enforcement lives in the store rules)."""
    actor_role, target_role = _role_of(actor), _role_of(target)
    if actor_role is None or target_role is None:
        return False
    if actor_role == ADMIN:
        return True
    if actor_role == INSTRUCTOR:
        return target_role in {PARTNER_INSTRUCTOR, GUEST, STUDENT}
    if actor_role == PARTNER_INSTRUCTOR:
        return target_role == STUDENT
    if actor_role == GUEST:
        institution = getattr(actor, "institution_id", None)
        return bool(institution) and institution == getattr(target, "institution_id", None)
    return False


__all__ = [
    "RouteRule",
    "DEFAULT_ROUTE_RULES",
    "HOME_ROUTES",
    "LOGIN_ROUTE",
    "has_role",
    "has_permission",
    "has_any_permission",
    "has_all_permissions",
    "can_access_route",
    "home_route_for",
    "is_valid_role_change",
    "can_manage_user",
]
