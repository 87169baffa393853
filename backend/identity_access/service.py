"""Access administration service: every privilege-affecting mutation.

Each operation runs in two phases:

1. validate, then write the profile patch;
2. append the audit entries the change owes.

The two writes are not one transaction. A failure between them leaves the
profile mutated without its audit entries (`AuditWriteError` carries the
applied profile); the reverse order never happens. A failed guard or a failed
profile write appends nothing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from backend.identity_access.audit import Actor, AuditLogWriter, AuditStoreProtocol, AuditType
from backend.identity_access.authorization import is_valid_role_change
from backend.identity_access.config import AccessConfig
from backend.identity_access.domain import GUEST, as_value
from backend.identity_access.errors import (
    AccessError,
    AuditWriteError,
    GuestAccessError,
    InvalidTransition,
    MissingInstitution,
    ProfileNotFound,
    StoreError,
)
from backend.identity_access.guest_access import calculate_expiry, utcnow
from backend.identity_access.profiles import ProfileStoreProtocol, UserProfile, validate_permission_map
from backend.identity_access.transitions import AuditObligation, plan_role_change


logger = logging.getLogger("coursegate.identity_access")


def mask_email(email: str) -> str:
    """Mask email for logs to reduce PII exposure."""
    local, sep, domain = (email or "").partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


@dataclass
class MutationResult:
    profile: Optional[UserProfile]
    audit_ids: List[str] = field(default_factory=list)


@dataclass
class AccessAdminService:
    """Mutation surface consumed by admin screens and self-service flows."""

    profiles: ProfileStoreProtocol
    audit: AuditStoreProtocol
    config: AccessConfig = field(default_factory=AccessConfig)
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self) -> None:
        self.writer = AuditLogWriter(self.audit, clock=self.clock)

    # --- Roles ------------------------------------------------------------------
    def change_role(self, profile_id: str, from_role: str, to_role: str, actor: Actor, reason: str = "") -> MutationResult:
        profile = self._load(profile_id)
        plan = plan_role_change(
            profile,
            from_role,
            to_role,
            self.clock(),
            guest_duration_hours=self.config.guest_access_duration_hours,
        )
        return self._commit(profile, plan.patch, plan.obligations, actor, reason)

    # --- Permissions ------------------------------------------------------------
    def update_permissions(
        self,
        profile_id: str,
        new_permissions: Mapping[Any, Any],
        actor: Actor,
        reason: str = "",
    ) -> MutationResult:
        profile = self._load(profile_id)
        validated = validate_permission_map(profile.role, new_permissions)
        patch = {"permissions": validated, "updated_at": self.clock()}
        obligations = [
            AuditObligation(
                AuditType.PERMISSION_CHANGE,
                {"old_permissions": dict(profile.permissions or {}), "new_permissions": dict(validated)},
            )
        ]
        return self._commit(profile, patch, obligations, actor, reason)

    # --- Suspension -------------------------------------------------------------
    def set_suspended(self, profile_id: str, suspended: bool, actor: Actor, reason: str = "") -> MutationResult:
        profile = self._load(profile_id)
        suspended = bool(suspended)
        kind = AuditType.USER_SUSPENDED if suspended else AuditType.USER_UNSUSPENDED
        default_reason = "User suspended by admin" if suspended else "User unsuspended by admin"
        patch = {"suspended": suspended, "updated_at": self.clock()}
        obligations = [AuditObligation(kind, {"suspended": suspended}, reason=default_reason)]
        return self._commit(profile, patch, obligations, actor, reason)

    # --- Institutions -----------------------------------------------------------
    def assign_institution(
        self,
        profile_id: str,
        institution_id: str,
        actor: Actor,
        *,
        institution_name: Optional[str] = None,
        reason: str = "",
    ) -> MutationResult:
        institution_id = (institution_id or "").strip()
        if not institution_id:
            raise MissingInstitution("missing_institution")
        profile = self._load(profile_id)
        patch = {"institution_id": institution_id, "updated_at": self.clock()}
        obligations = [
            AuditObligation(
                AuditType.INSTITUTION_ASSIGNED,
                {
                    "institution_id": institution_id,
                    "institution_name": institution_name,
                    "previous_institution_id": profile.institution_id,
                },
            )
        ]
        return self._commit(profile, patch, obligations, actor, reason)

    def remove_institution(self, profile_id: str, actor: Actor, reason: str = "") -> MutationResult:
        profile = self._load(profile_id)
        if as_value(profile.role) == GUEST:
            raise MissingInstitution("guest_requires_institution")
        if not profile.institution_id:
            raise MissingInstitution("no_institution")
        patch = {"institution_id": None, "updated_at": self.clock()}
        obligations = [AuditObligation(AuditType.INSTITUTION_REMOVED, {"institution_id": profile.institution_id})]
        return self._commit(profile, patch, obligations, actor, reason)

    # --- Guest window -----------------------------------------------------------
    def grant_guest_access(
        self,
        profile_id: str,
        actor: Actor,
        *,
        institution_id: Optional[str] = None,
        institution_name: Optional[str] = None,
        duration_hours: Optional[int] = None,
        reason: str = "",
    ) -> MutationResult:
        """Bind an institution (optional), move the subject to guest and open the window."""
        profile = self._load(profile_id)
        if as_value(profile.role) == GUEST:
            raise GuestAccessError("already_guest", "use extend_guest_access for an existing guest")
        if not is_valid_role_change(profile.role, GUEST):
            raise InvalidTransition("invalid_role_change", f"{profile.role!r} -> 'guest' is not allowed")
        target_institution = (institution_id or "").strip() or profile.institution_id
        if not target_institution:
            raise MissingInstitution("missing_institution", "guest access requires an institution")
        hours = duration_hours if duration_hours is not None else self.config.guest_access_duration_hours

        bound = profile.apply({"institution_id": target_institution})
        plan = plan_role_change(bound, profile.role, GUEST, self.clock(), guest_duration_hours=hours)

        patch = dict(plan.patch)
        obligations: List[AuditObligation] = []
        if target_institution != profile.institution_id:
            patch["institution_id"] = target_institution
            obligations.append(
                AuditObligation(
                    AuditType.INSTITUTION_ASSIGNED,
                    {
                        "institution_id": target_institution,
                        "institution_name": institution_name,
                        "previous_institution_id": profile.institution_id,
                    },
                )
            )
        obligations.extend(plan.obligations)
        obligations.append(
            AuditObligation(
                AuditType.GUEST_ACCESS_CREATED,
                {
                    "institution_id": target_institution,
                    "new_expiry": patch["guest_access_expiry"],
                    "duration_hours": hours,
                },
            )
        )
        return self._commit(profile, patch, obligations, actor, reason)

    def extend_guest_access(
        self,
        profile_id: str,
        actor: Actor,
        *,
        duration_hours: Optional[int] = None,
        reason: str = "",
    ) -> MutationResult:
        """Restart the window at `now + duration`, whether or not it already lapsed."""
        profile = self._require_guest(profile_id)
        hours = duration_hours if duration_hours is not None else self.config.guest_access_duration_hours
        now = self.clock()
        new_expiry = calculate_expiry(now, hours)
        patch = {"guest_access_expiry": new_expiry, "updated_at": now}
        obligations = [
            AuditObligation(
                AuditType.GUEST_ACCESS_EXTENDED,
                {"old_expiry": profile.guest_access_expiry, "new_expiry": new_expiry, "duration_hours": hours},
            )
        ]
        return self._commit(profile, patch, obligations, actor, reason)

    def revoke_guest_access(self, profile_id: str, actor: Actor, reason: str = "") -> MutationResult:
        """Close the window immediately; the subject stays a guest of its institution."""
        profile = self._require_guest(profile_id)
        now = self.clock()
        patch = {"guest_access_expiry": now, "updated_at": now}
        obligations = [
            AuditObligation(
                AuditType.GUEST_ACCESS_REVOKED,
                {"old_expiry": profile.guest_access_expiry, "new_expiry": now},
            )
        ]
        return self._commit(profile, patch, obligations, actor, reason)

    # --- Deletion ---------------------------------------------------------------
    def delete_user(self, profile_id: str, actor: Actor, reason: str = "") -> MutationResult:
        profile = self._load(profile_id)
        try:
            deleted = self.profiles.delete(profile_id)
        except AccessError:
            raise
        except Exception as exc:
            logger.warning("Profile delete failed: err=%s", exc.__class__.__name__)
            raise StoreError("profile_delete_failed", exc.__class__.__name__) from exc
        if not deleted:
            raise ProfileNotFound("profile_not_found", profile_id)
        obligations = [
            AuditObligation(
                AuditType.USER_DELETED,
                {
                    "role": profile.role,
                    "institution_id": profile.institution_id,
                    "suspended": profile.suspended,
                },
            )
        ]
        audit_ids = self._append_all(profile, None, obligations, actor, reason)
        logger.info("Deleted profile %s (%s)", profile.id, mask_email(profile.email))
        return MutationResult(profile=None, audit_ids=audit_ids)

    # --- Internals --------------------------------------------------------------
    def _load(self, profile_id: str) -> UserProfile:
        try:
            profile = self.profiles.get(profile_id)
        except AccessError:
            raise
        except Exception as exc:
            logger.warning("Profile read failed: err=%s", exc.__class__.__name__)
            raise StoreError("profile_read_failed", exc.__class__.__name__) from exc
        if profile is None:
            raise ProfileNotFound("profile_not_found", profile_id)
        return profile

    def _require_guest(self, profile_id: str) -> UserProfile:
        profile = self._load(profile_id)
        if as_value(profile.role) != GUEST:
            raise GuestAccessError("not_a_guest", f"profile role is {profile.role!r}")
        return profile

    def _commit(
        self,
        profile: UserProfile,
        patch: Dict[str, Any],
        obligations: Sequence[AuditObligation],
        actor: Actor,
        reason: str,
    ) -> MutationResult:
        # Phase 1: profile write. Nothing is appended when it fails.
        try:
            updated = self.profiles.update(profile.id, patch)
        except AccessError:
            raise
        except Exception as exc:
            logger.warning("Profile write failed: err=%s", exc.__class__.__name__)
            raise StoreError("profile_write_failed", exc.__class__.__name__) from exc
        # Phase 2: audit append(s). A failure here leaves the profile mutated.
        audit_ids = self._append_all(profile, updated, obligations, actor, reason)
        logger.info(
            "Applied %s to %s by %s",
            ",".join(o.type.value for o in obligations),
            profile.id,
            mask_email(actor.email),
        )
        return MutationResult(profile=updated, audit_ids=audit_ids)

    def _append_all(
        self,
        target: UserProfile,
        applied: Optional[UserProfile],
        obligations: Sequence[AuditObligation],
        actor: Actor,
        reason: str,
    ) -> List[str]:
        ids: List[str] = []
        for obligation in obligations:
            try:
                ids.append(
                    self.writer.record(
                        obligation.type,
                        actor,
                        target_user_id=target.id,
                        target_user_email=target.email,
                        payload=obligation.payload,
                        reason=reason or obligation.reason,
                    )
                )
            except StoreError as exc:
                logger.error(
                    "Audit gap: %s for %s not recorded after profile write (err=%s)",
                    obligation.type.value,
                    target.id,
                    exc.detail or exc.code,
                )
                raise AuditWriteError("audit_write_failed", applied_profile=applied, detail=exc.detail) from exc
        return ids


__all__ = ["AccessAdminService", "MutationResult", "mask_email"]
