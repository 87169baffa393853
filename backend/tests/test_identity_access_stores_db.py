"""
Unit-style tests for the Postgres-backed stores using a fake psycopg driver.

Rationale: Keep CI/self-contained runs green without a real Postgres. The fake
implements the subset of SQL issued by DBProfileStore and DBAuditStore so the
statement flow and row mapping are validated. No network or external DB required.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.identity_access import stores_db
from backend.identity_access.audit import Actor, AuditLogWriter, AuditType, verify_digest
from backend.identity_access.domain import guest_bootstrap
from backend.identity_access.errors import AuditWriteError, ProfileNotFound, StoreError
from backend.identity_access.profiles import UserProfile
from backend.identity_access.service import AccessAdminService

from backend.tests.utils.clock import T0, FakeClock
from backend.tests.utils.fake_psycopg import FakeDatabaseError, install_fake_psycopg


DSN = "postgresql://fake/access"
ACTOR = Actor(id="admin-1", email="admin@example.org")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(monkeypatch, clock):
    return install_fake_psycopg(monkeypatch, stores_db, now_func=clock)


@pytest.fixture
def profile_store(db) -> stores_db.DBProfileStore:
    return stores_db.DBProfileStore(DSN)


@pytest.fixture
def audit_db_store(db) -> stores_db.DBAuditStore:
    return stores_db.DBAuditStore(DSN)


def test_requires_psycopg(monkeypatch):
    monkeypatch.setattr(stores_db, "HAVE_PSYCOPG", False)
    with pytest.raises(RuntimeError):
        stores_db.DBProfileStore(DSN)


def test_requires_dsn(db, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        stores_db.DBAuditStore()


def test_dsn_falls_back_to_config(db, monkeypatch):
    monkeypatch.setenv("IDENTITY_DATABASE_URL", "postgresql://from-env")
    store = stores_db.DBProfileStore()
    store.get("u-1")
    assert db.dsns == ["postgresql://from-env"]


@pytest.mark.parametrize("table", ["public.profiles; drop table x", "a.b.c", "1bad", ""])
def test_invalid_table_names_are_rejected(db, table):
    with pytest.raises(ValueError):
        stores_db.DBProfileStore(DSN, table=table)


def test_ensure_schema_creates_tables_and_trigger(db):
    stores_db.ensure_schema(DSN)
    ddl = "\n".join(db.ddl)
    assert "create table if not exists public.access_profiles" in ddl
    assert "create table if not exists public.access_audit_log" in ddl
    assert "clock_timestamp()" in ddl
    assert "before update or delete on public.access_audit_log" in ddl
    assert "drop trigger if exists access_audit_log_append_only" in ddl


def test_profile_round_trip(profile_store):
    created = profile_store.create(
        UserProfile(
            id="g-1",
            email="g@example.org",
            role="guest",
            institution_id="inst-1",
            permissions=guest_bootstrap(),
            guest_access_expiry=T0 + timedelta(hours=48),
            updated_at=T0,
        )
    )
    loaded = profile_store.get("g-1")
    assert loaded == created
    assert loaded.permissions == guest_bootstrap()
    assert loaded.guest_access_expiry == T0 + timedelta(hours=48)
    assert profile_store.get("missing") is None


def test_duplicate_create_is_a_store_error(profile_store):
    profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    with pytest.raises(StoreError) as exc:
        profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    assert exc.value.code == "profile_exists"


def test_update_applies_partial_patch_and_notifies(profile_store):
    profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    seen = []
    unsubscribe = profile_store.subscribe("u-1", seen.append)
    updated = profile_store.update("u-1", {"suspended": True, "updated_at": T0 + timedelta(minutes=1)})
    assert updated.suspended is True
    assert updated.role == "student"
    assert [p.suspended for p in seen] == [False, True]
    unsubscribe()
    profile_store.delete("u-1")
    assert len(seen) == 2


def test_update_rejects_unknown_fields_and_missing_rows(profile_store):
    with pytest.raises(ValueError):
        profile_store.update("u-1", {"is_admin": True})
    with pytest.raises(ProfileNotFound):
        profile_store.update("u-1", {"suspended": True})


def test_delete_reports_whether_a_row_was_removed(profile_store):
    profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    assert profile_store.delete("u-1") is True
    assert profile_store.delete("u-1") is False


def test_refresh_pushes_external_changes(profile_store, db):
    profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    seen = []
    profile_store.subscribe("u-1", seen.append)
    db.profiles["u-1"]["role"] = "instructor"
    profile_store.refresh("u-1")
    assert [p.role for p in seen] == ["student", "instructor"]


def test_timestamps_are_normalised_to_utc(profile_store, db):
    profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    berlin = timezone(timedelta(hours=1))
    db.profiles["u-1"]["updated_at"] = T0.astimezone(berlin)
    loaded = profile_store.get("u-1")
    assert loaded.updated_at == T0
    assert loaded.updated_at.tzinfo == timezone.utc


def test_audit_append_and_history(audit_db_store, clock):
    writer = AuditLogWriter(audit_db_store, clock=clock)
    first = writer.record(
        AuditType.ROLE_CHANGE,
        ACTOR,
        target_user_id="u-1",
        target_user_email="u@example.org",
        payload={"old_role": "student", "new_role": "instructor"},
    )
    clock.advance(seconds=30)
    second = writer.record(
        AuditType.USER_SUSPENDED,
        ACTOR,
        target_user_id="u-1",
        target_user_email="u@example.org",
        payload={"suspended": True},
    )
    entries = writer.history("u-1")
    assert [e.id for e in entries] == [first, second]
    assert entries[0].server_timestamp == T0
    assert all(verify_digest(e) for e in entries)
    assert [e.type for e in writer.history("u-1", type="USER_SUSPENDED")] == [AuditType.USER_SUSPENDED]
    assert writer.history("u-2") == []


def test_audit_rows_cannot_be_rewritten(db, audit_db_store):
    with pytest.raises(FakeDatabaseError):
        with stores_db.psycopg.connect(DSN) as conn:
            with conn.cursor() as cur:
                cur.execute("update public.access_audit_log set reason = %s", ("edited",))


def test_service_over_db_stores_reports_audit_gap(db, profile_store, audit_db_store, clock):
    profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    svc = AccessAdminService(profile_store, audit_db_store, clock=clock)
    db.fail_on = "insert into public.access_audit_log"
    with pytest.raises(AuditWriteError):
        svc.set_suspended("u-1", True, ACTOR)
    assert profile_store.get("u-1").suspended is True
    assert db.audit == []


def test_service_over_db_stores_full_flow(db, profile_store, audit_db_store, clock):
    profile_store.create(UserProfile(id="u-1", email="u@example.org", role="student", updated_at=T0))
    svc = AccessAdminService(profile_store, audit_db_store, clock=clock)
    svc.grant_guest_access("u-1", ACTOR, institution_id="inst-1")
    guest = profile_store.get("u-1")
    assert guest.role == "guest"
    assert guest.guest_access_expiry == datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)
    assert [row["type"] for row in db.audit] == [
        "INSTITUTION_ASSIGNED",
        "ROLE_CHANGE",
        "PERMISSION_CHANGE",
        "GUEST_ACCESS_CREATED",
    ]
