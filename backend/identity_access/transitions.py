"""
Role transition planning.

Why:
    Changing a role is more than writing `role`: guest and partner-instructor
    roles carry a bootstrap permission bundle and an institution binding that
    must be set or cleared together with the role. This module computes the
    full field patch and the audit entries it owes, and never writes anything.

Behavior:
    - States are the four non-admin roles; admin is outside the graph.
    - Guards run before any patch is built, so a rejected transition leaves
      no partial state behind.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from backend.identity_access.audit import AuditType
from backend.identity_access.authorization import is_valid_role_change
from backend.identity_access.domain import (
    GUEST,
    PARTNER_INSTRUCTOR,
    as_value,
    guest_bootstrap,
    partner_instructor_bootstrap,
    role_display_name,
)
from backend.identity_access.errors import InvalidTransition, MissingInstitution
from backend.identity_access.guest_access import calculate_expiry
from backend.identity_access.profiles import UserProfile


@dataclass(frozen=True)
class AuditObligation:
    """An audit entry the caller must append once the patch is written."""

    type: AuditType
    payload: Dict[str, Any]
    reason: str = ""


@dataclass
class TransitionPlan:
    patch: Dict[str, Any]
    obligations: List[AuditObligation] = field(default_factory=list)

    @property
    def bootstraps_permissions(self) -> bool:
        return any(o.type is AuditType.PERMISSION_CHANGE for o in self.obligations)


def plan_role_change(
    profile: UserProfile,
    from_role: str,
    to_role: str,
    now: datetime,
    *,
    guest_duration_hours: Optional[int] = None,
) -> TransitionPlan:
    """Compute the patch and audit obligations for `from_role → to_role`.

    Raises:
        InvalidTransition: unknown/admin role, `from_role` does not match the
            stored role, or the role would not change.
        MissingInstitution: target is guest and the profile has no institution.
    """
    src, dst = as_value(from_role), as_value(to_role)
    if not is_valid_role_change(src, dst):
        raise InvalidTransition("invalid_role_change", f"{src!r} -> {dst!r} is not allowed")
    if as_value(profile.role) != src:
        raise InvalidTransition("stale_role", f"profile role is {profile.role!r}, not {src!r}")
    if src == dst:
        raise InvalidTransition("role_unchanged")

    patch: Dict[str, Any] = {"role": dst}
    new_permissions: Optional[Dict[str, bool]] = None

    if dst == GUEST and not profile.institution_id:
        raise MissingInstitution("missing_institution", "guest access requires an institution")

    # Leaving an override role: its grants do not survive the change.
    if src == GUEST:
        patch["guest_access_expiry"] = None
        patch["permissions"] = None
    elif src == PARTNER_INSTRUCTOR:
        patch["permissions"] = None
        if dst != GUEST:
            patch["institution_id"] = None

    # Entering an override role: bootstrap bundle (and window for guests).
    if dst == GUEST:
        patch["guest_access_expiry"] = calculate_expiry(now, guest_duration_hours)
        new_permissions = guest_bootstrap()
        patch["permissions"] = new_permissions
    elif dst == PARTNER_INSTRUCTOR:
        new_permissions = partner_instructor_bootstrap()
        patch["permissions"] = new_permissions
    else:
        # Leftovers from direct data edits must not survive on a plain role.
        if profile.permissions is not None:
            patch["permissions"] = None
        if profile.guest_access_expiry is not None:
            patch["guest_access_expiry"] = None

    patch["updated_at"] = now

    obligations = [AuditObligation(AuditType.ROLE_CHANGE, {"old_role": src, "new_role": dst})]
    if new_permissions is not None:
        obligations.append(
            AuditObligation(
                AuditType.PERMISSION_CHANGE,
                {"old_permissions": dict(profile.permissions or {}), "new_permissions": dict(new_permissions)},
                reason=f"Initial {role_display_name(dst).lower()} permissions",
            )
        )
    if "institution_id" in patch and profile.institution_id:
        obligations.append(AuditObligation(AuditType.INSTITUTION_REMOVED, {"institution_id": profile.institution_id}))
    return TransitionPlan(patch=patch, obligations=obligations)


__all__ = ["AuditObligation", "TransitionPlan", "plan_role_change"]
