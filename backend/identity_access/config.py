"""
Configuration for the access core (guest window, store DSNs, environment).

Intent:
    Provide a single place to read environment variables that control the
    guest-access window and where profiles and audit entries are persisted.

Why:
    Centralising configuration keeps defaults and validation explicit and lets
    tests exercise config behaviour without touching a database.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


GUEST_ACCESS_DURATION_HOURS_DEFAULT = 48
_MAX_GUEST_HOURS = 24 * 365


@dataclass(frozen=True)
class AccessConfig:
    guest_access_duration_hours: int = GUEST_ACCESS_DURATION_HOURS_DEFAULT
    profiles_dsn: Optional[str] = None
    audit_dsn: Optional[str] = None
    env: str = "dev"

    @property
    def is_prod_like(self) -> bool:
        return self.env in {"prod", "production", "stage", "staging"}


def _int_env(name: str, default: int, *, maximum: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value <= 0 or value > maximum:
        raise ValueError(f"{name} out of range (1..{maximum}), got: {value}")
    return value


def load_access_config() -> AccessConfig:
    """
    Parse and validate access configuration from environment variables.

    Behavior:
        - `GUEST_ACCESS_DURATION_HOURS` sets the guest window (default 48).
        - `IDENTITY_DATABASE_URL` (fallback `DATABASE_URL`) selects the profile store.
        - `AUDIT_DATABASE_URL` selects the audit store; defaults to the profile DSN.
        - `COURSEGATE_ENV` names the environment (default: dev).
    """
    hours = _int_env("GUEST_ACCESS_DURATION_HOURS", GUEST_ACCESS_DURATION_HOURS_DEFAULT, maximum=_MAX_GUEST_HOURS)
    profiles_dsn = os.getenv("IDENTITY_DATABASE_URL") or os.getenv("DATABASE_URL") or None
    audit_dsn = os.getenv("AUDIT_DATABASE_URL") or profiles_dsn
    env = (os.getenv("COURSEGATE_ENV") or "dev").strip().lower()
    return AccessConfig(
        guest_access_duration_hours=hours,
        profiles_dsn=profiles_dsn,
        audit_dsn=audit_dsn,
        env=env,
    )


__all__ = ["AccessConfig", "GUEST_ACCESS_DURATION_HOURS_DEFAULT", "load_access_config"]
