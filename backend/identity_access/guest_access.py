"""
Guest access window arithmetic.

Pure functions of their inputs: callers pass `now` explicitly (or a clock) so
expiry logic is deterministic under test. Writing the expiry back to a profile
is the transition code's job.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from backend.identity_access.config import GUEST_ACCESS_DURATION_HOURS_DEFAULT
from backend.identity_access.domain import GUEST, as_value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GuestTimeRemaining:
    hours: int
    minutes: int
    expired: bool


def calculate_expiry(now: datetime, duration_hours: Optional[int] = None) -> datetime:
    """Return `now + duration_hours` (default 48 when unset).

    Only whole hours are accepted; 1.5 or "2" raise `ValueError`.
    """
    if duration_hours is None:
        hours = GUEST_ACCESS_DURATION_HOURS_DEFAULT
    elif isinstance(duration_hours, bool) or not isinstance(duration_hours, int):
        raise ValueError(f"duration_hours must be an integer, got: {duration_hours!r}")
    else:
        hours = duration_hours
    if hours <= 0:
        raise ValueError("duration_hours must be positive")
    return now + timedelta(hours=hours)


def _guest_expiry(profile) -> Optional[datetime]:
    if profile is None or as_value(getattr(profile, "role", None)) != GUEST:
        return None
    return getattr(profile, "guest_access_expiry", None)


def is_expired(profile, now: Optional[datetime] = None) -> bool:
    """True iff `profile` is a guest with an expiry and `now >= expiry`.

    A guest without an expiry is treated as not expired.
    """
    expiry = _guest_expiry(profile)
    if expiry is None:
        return False
    try:
        return (now or utcnow()) >= expiry
    except TypeError:
        # naive vs aware timestamps: fail closed
        return True


def time_remaining(profile, now: Optional[datetime] = None) -> Optional[GuestTimeRemaining]:
    """Floored hours/minutes left in the guest window, or None outside it."""
    expiry = _guest_expiry(profile)
    if expiry is None:
        return None
    try:
        diff = expiry - (now or utcnow())
    except TypeError:
        return GuestTimeRemaining(hours=0, minutes=0, expired=True)
    if diff <= timedelta(0):
        return GuestTimeRemaining(hours=0, minutes=0, expired=True)
    total_minutes = int(diff.total_seconds() // 60)
    return GuestTimeRemaining(hours=total_minutes // 60, minutes=total_minutes % 60, expired=False)


__all__ = ["GuestTimeRemaining", "calculate_expiry", "is_expired", "time_remaining", "utcnow"]
