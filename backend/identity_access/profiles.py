"""
UserProfile: the authorization-relevant projection of an account.

Why:
    Stores hand back loosely-typed documents. Converting them once at the
    boundary keeps the engine and transition code working on a single frozen
    value, and rejects permission-map typos before they become silent no-ops.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from backend.identity_access.domain import (
    ALL_PERMISSIONS,
    ASSIGNABLE_PERMISSIONS,
    OVERRIDE_ROLES,
    as_value,
)
from backend.identity_access.errors import InvalidPermissions


PROFILE_FIELDS = (
    "role",
    "email",
    "permissions",
    "institution_id",
    "suspended",
    "guest_access_expiry",
    "updated_at",
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    role: Optional[str]
    permissions: Optional[Dict[str, bool]] = None
    institution_id: Optional[str] = None
    suspended: bool = False
    guest_access_expiry: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_document(cls, profile_id: str, doc: Mapping[str, Any]) -> "UserProfile":
        """Build a profile from a stored document.

        Unknown roles are kept verbatim (queries deny them). Permission maps are
        kept as stored; validation happens when a new map is written.
        """
        perms = doc.get("permissions")
        known = set(PROFILE_FIELDS) | {"id"}
        return cls(
            id=str(doc.get("id") or profile_id),
            email=str(doc.get("email") or ""),
            role=doc.get("role"),
            permissions=dict(perms) if isinstance(perms, Mapping) else None,
            institution_id=doc.get("institution_id") or None,
            suspended=doc.get("suspended") is True,
            guest_access_expiry=parse_timestamp(doc.get("guest_access_expiry")),
            updated_at=parse_timestamp(doc.get("updated_at")),
            extra={k: v for k, v in doc.items() if k not in known},
        )

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = dict(self.extra)
        doc.update(
            {
                "id": self.id,
                "email": self.email,
                "role": self.role,
                "permissions": dict(self.permissions) if self.permissions is not None else None,
                "institution_id": self.institution_id,
                "suspended": self.suspended,
                "guest_access_expiry": self.guest_access_expiry,
                "updated_at": self.updated_at,
            }
        )
        return doc

    def apply(self, patch: Mapping[str, Any]) -> "UserProfile":
        """Return a copy with `patch` applied. Keys outside the profile schema are rejected."""
        unknown = set(patch) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"unknown profile fields: {sorted(unknown)}")
        return replace(self, **dict(patch))


def validate_permission_map(role: object, permissions: Mapping[Any, Any]) -> Dict[str, bool]:
    """Validate a permission map for `role` and return a plain `{str: bool}` copy.

    Raises:
        InvalidPermissions: role does not take overrides, a key is unknown or
        outside the role's assignable set, or a value is not a bool.
    """
    role = as_value(role)
    if role not in OVERRIDE_ROLES:
        raise InvalidPermissions("role_without_overrides", f"role {role!r} does not take a permission map")
    if not isinstance(permissions, Mapping):
        raise InvalidPermissions("malformed_permissions")
    allowed = ASSIGNABLE_PERMISSIONS[role]
    out: Dict[str, bool] = {}
    for key, value in permissions.items():
        name = as_value(key)
        if name not in ALL_PERMISSIONS:
            raise InvalidPermissions("unknown_permission", f"unknown permission {name!r}")
        if name not in allowed:
            raise InvalidPermissions("permission_not_assignable", f"{name!r} not assignable to {role}")
        if not isinstance(value, bool):
            raise InvalidPermissions("malformed_permissions", f"{name!r} must be a boolean")
        out[name] = value
    return out


ProfileListener = Callable[[Optional[UserProfile]], None]


class ProfileStoreProtocol(Protocol):
    """Profile documents keyed by opaque subject id.

    `update` is a per-document atomic read-modify-write applying a partial
    patch (last writer wins). `subscribe` delivers the current profile (or
    None when absent) immediately and again after every change, and returns
    an unsubscribe callable.
    """

    def get(self, profile_id: str) -> Optional[UserProfile]: ...

    def create(self, profile: UserProfile) -> UserProfile: ...

    def update(self, profile_id: str, patch: Mapping[str, Any]) -> UserProfile: ...

    def delete(self, profile_id: str) -> bool: ...

    def subscribe(self, profile_id: str, listener: ProfileListener) -> Callable[[], None]: ...


__all__ = [
    "PROFILE_FIELDS",
    "ProfileListener",
    "ProfileStoreProtocol",
    "UserProfile",
    "parse_timestamp",
    "validate_permission_map",
]
