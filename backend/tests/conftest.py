"""
Pytest configuration for backend tests.

Why: Make `backend.*` importable from a plain checkout and provide shared
fixtures (fixed clock, in-memory stores, service) so unit tests stay
deterministic and never touch a database.
"""
import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.identity_access.audit import Actor  # noqa: E402
from backend.identity_access.config import AccessConfig  # noqa: E402
from backend.identity_access.profiles import UserProfile  # noqa: E402
from backend.identity_access.service import AccessAdminService  # noqa: E402
from backend.identity_access.stores import InMemoryAuditStore, InMemoryProfileStore  # noqa: E402
from backend.tests.utils.clock import FakeClock  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_access_env(monkeypatch: pytest.MonkeyPatch):
    """Keep developer shells from leaking access configuration into tests."""
    for var in (
        "GUEST_ACCESS_DURATION_HOURS",
        "IDENTITY_DATABASE_URL",
        "AUDIT_DATABASE_URL",
        "COURSEGATE_ENV",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def profiles() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def audit_store(clock: FakeClock) -> InMemoryAuditStore:
    return InMemoryAuditStore(clock=clock)


@pytest.fixture
def service(profiles, audit_store, clock) -> AccessAdminService:
    return AccessAdminService(profiles, audit_store, config=AccessConfig(), clock=clock)


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", email="admin@example.org")


@pytest.fixture
def make_profile(profiles: InMemoryProfileStore):
    """Create and store a profile; keyword arguments override the defaults."""

    def _make(profile_id: str = "u-1", role: str = "student", **fields) -> UserProfile:
        fields.setdefault("email", f"{profile_id}@example.org")
        return profiles.create(UserProfile(id=profile_id, role=role, **fields))

    return _make
