"""
Live access session for one authenticated subject.

Why:
    Route guards and views need fast yes/no answers about the signed-in
    subject. Instead of a process-wide "current user", callers create one
    `AccessSession` per authenticated subject and pass it explicitly. The
    session subscribes to the subject's profile so every answer reflects the
    latest pushed snapshot (eventually consistent with the store).

Behavior:
    - Until the first snapshot arrives the session is `loading` and denies.
    - An expired guest is denied every permission and route; signing out is
      the caller's concern and never goes through this object.
    - Suspension is exposed separately (`suspended`, `can_act`); it does not
      change permission answers.
"""
from __future__ import annotations

from datetime import datetime
import logging
import threading
from typing import Callable, Iterable, Optional, Sequence

from backend.identity_access import authorization as authz
from backend.identity_access.guest_access import GuestTimeRemaining, is_expired, time_remaining, utcnow
from backend.identity_access.profiles import ProfileStoreProtocol, UserProfile


logger = logging.getLogger("coursegate.identity_access.session")


class AccessSession:
    def __init__(
        self,
        subject_id: str,
        email: str,
        profiles: ProfileStoreProtocol,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.subject_id = subject_id
        self.email = email
        self._clock = clock
        self._lock = threading.Lock()
        self._profile: Optional[UserProfile] = None
        self._loading = True
        self._unsubscribe: Optional[Callable[[], None]] = profiles.subscribe(subject_id, self._on_profile)

    # Subscription callback
    def _on_profile(self, profile: Optional[UserProfile]) -> None:
        with self._lock:
            self._profile = profile
            self._loading = False
        if profile is None:
            logger.info("No profile for subject %s", self.subject_id)

    @property
    def profile(self) -> Optional[UserProfile]:
        with self._lock:
            return self._profile

    @property
    def loading(self) -> bool:
        with self._lock:
            return self._loading

    @property
    def guest_expired(self) -> bool:
        return is_expired(self.profile, self._clock())

    @property
    def suspended(self) -> bool:
        profile = self.profile
        return bool(profile and profile.suspended)

    def time_remaining(self) -> Optional[GuestTimeRemaining]:
        return time_remaining(self.profile, self._clock())

    def has_role(self, role) -> bool:
        return authz.has_role(self.profile, role)

    def has_permission(self, permission) -> bool:
        return authz.has_permission(self.profile, permission, self._clock())

    def has_any_permission(self, permissions: Iterable) -> bool:
        return authz.has_any_permission(self.profile, permissions, self._clock())

    def has_all_permissions(self, permissions: Iterable) -> bool:
        return authz.has_all_permissions(self.profile, permissions, self._clock())

    def can_access(self, path: str) -> bool:
        return authz.can_access_route(self.profile, path, self._clock())

    def home_route(self) -> str:
        return authz.home_route_for(self.profile)

    def can_act(self) -> bool:
        """Profile present, not suspended, and not an expired guest."""
        profile = self.profile
        if profile is None or profile.suspended:
            return False
        return not is_expired(profile, self._clock())

    def close(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def __enter__(self) -> "AccessSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def require_access(
    session: AccessSession,
    *,
    roles: Sequence[str] = (),
    permissions: Sequence[str] = (),
) -> Optional[str]:
    """Route-guard helper: None when allowed, otherwise the redirect target.

    No profile, suspension or an expired guest window → login route (signing
    out and back in is all that remains); wrong role or missing permission →
    the subject's home route.
    """
    profile = session.profile
    if profile is None:
        return authz.LOGIN_ROUTE
    if not session.can_act():
        return authz.LOGIN_ROUTE
    if roles and not any(session.has_role(r) for r in roles):
        return authz.home_route_for(profile)
    if permissions and not session.has_all_permissions(permissions):
        return authz.home_route_for(profile)
    return None


__all__ = ["AccessSession", "require_access"]
