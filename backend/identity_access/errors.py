"""
Error taxonomy for the identity_access bounded context.

Validation errors (InvalidTransition, MissingInstitution, InvalidPermissions,
GuestAccessError, ProfileNotFound) are raised before any write. Store errors
(StoreError, AuditWriteError) are raised by or around persistence calls.
Authorization denials are never errors; queries return False instead.
"""
from __future__ import annotations

from typing import Any, Optional


class AccessError(Exception):
    """Base class carrying a machine-readable `code`."""

    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(detail or code)
        self.code = code
        self.detail = detail


class InvalidTransition(AccessError):
    """Role change rejected by the transition guard."""


class MissingInstitution(AccessError):
    """A guest grant or guest profile requires an institution binding."""


class InvalidPermissions(AccessError):
    """Permission map with unknown or non-assignable keys, or a non-boolean value."""


class GuestAccessError(AccessError):
    """Guest window operation attempted on a profile that is not a guest."""


class ProfileNotFound(AccessError):
    """No profile exists for the given subject id."""


class StoreError(AccessError):
    """Profile or audit store unavailable or rejected the write."""


class AuditWriteError(StoreError):
    """Audit append failed after the profile write already succeeded.

    The profile mutation stands; `applied_profile` is the post-write snapshot.
    """

    def __init__(self, code: str, *, applied_profile: Any = None, detail: Optional[str] = None):
        super().__init__(code, detail)
        self.applied_profile = applied_profile


__all__ = [
    "AccessError",
    "InvalidTransition",
    "MissingInstitution",
    "InvalidPermissions",
    "GuestAccessError",
    "ProfileNotFound",
    "StoreError",
    "AuditWriteError",
]
