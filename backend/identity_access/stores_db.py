"""
Database-backed profile and audit stores for production use (Postgres).

Why: In-memory stores are not durable and do not scale across instances.
These stores persist profiles and the audit trail in Postgres while keeping
the service layer unaware of SQL.

Security:
- Intended to be used with a service connection string; end-user clients must
  not reach these tables directly.
- The audit table carries a trigger that rejects UPDATE and DELETE, so the
  trail stays append-only even for callers that bypass this module.

Behavior:
- Short-lived connection per call, mirroring the other DB adapters.
- Profile `update` is a single UPDATE statement (atomic per document, last
  writer wins).
- `subscribe` fans out to in-process listeners after writes made through the
  same store instance; call `refresh` when another process signals a change.
- Timestamps read back are normalised to UTC so stored digests still verify.

Note: This module uses psycopg3. Tests monkeypatch `psycopg` and `Json` with a
fake (see tests/utils/fake_psycopg.py).
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

try:
    import psycopg
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from backend.identity_access.config import load_access_config
from backend.identity_access.errors import ProfileNotFound, StoreError
from backend.identity_access.guest_access import utcnow
from backend.identity_access.profiles import PROFILE_FIELDS, ProfileListener, UserProfile, parse_timestamp


logger = logging.getLogger("coursegate.identity_access.stores_db")

PROFILES_TABLE = "public.access_profiles"
AUDIT_TABLE = "public.access_audit_log"

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

_PROFILE_COLUMNS = (
    "id",
    "email",
    "role",
    "permissions",
    "institution_id",
    "suspended",
    "guest_access_expiry",
    "updated_at",
)

_AUDIT_INSERT_COLUMNS = (
    "type",
    "actor_id",
    "actor_email",
    "target_user_id",
    "target_user_email",
    "payload",
    "reason",
    "created_at",
    "digest",
)

_AUDIT_SELECT_COLUMNS = ("id",) + _AUDIT_INSERT_COLUMNS + ("server_timestamp",)


def _require_psycopg() -> None:
    if not HAVE_PSYCOPG:
        raise RuntimeError("psycopg3 is required for the database-backed stores")


def _validate_table(table: str) -> str:
    if not _TABLE_RE.match(table or ""):
        raise ValueError("Invalid table name")
    return table


def _split_table(table: str) -> Tuple[str, str]:
    if "." in table:
        schema, name = table.split(".", 1)
        return schema, name
    return "public", table


def _utc(value: Any) -> Optional[datetime]:
    ts = parse_timestamp(value)
    return ts.astimezone(timezone.utc) if ts is not None else None


def _resolve_dsn(dsn: Optional[str], *, audit: bool) -> str:
    if dsn:
        return dsn
    cfg = load_access_config()
    resolved = cfg.audit_dsn if audit else cfg.profiles_dsn
    if not resolved:
        raise RuntimeError("No database DSN configured (set IDENTITY_DATABASE_URL or DATABASE_URL)")
    return resolved


def ensure_schema(
    dsn: Optional[str] = None,
    *,
    profiles_table: str = PROFILES_TABLE,
    audit_table: str = AUDIT_TABLE,
) -> None:
    """Create the profile and audit tables (idempotent).

    The audit table gets a BEFORE UPDATE OR DELETE trigger that raises, which
    makes stored entries immutable at the database level.
    """
    _require_psycopg()
    profiles_table = _validate_table(profiles_table)
    audit_table = _validate_table(audit_table)
    schema, audit_name = _split_table(audit_table)
    func = f"{schema}.{audit_name}_append_only"
    trigger = f"{audit_name}_append_only"
    statements = [
        f"create table if not exists {profiles_table} ("
        " id text primary key,"
        " email text not null default '',"
        " role text,"
        " permissions jsonb,"
        " institution_id text,"
        " suspended boolean not null default false,"
        " guest_access_expiry timestamptz,"
        " updated_at timestamptz not null default now()"
        ")",
        f"create table if not exists {audit_table} ("
        " seq bigserial not null,"
        " id uuid primary key default gen_random_uuid(),"
        " type text not null,"
        " actor_id text not null,"
        " actor_email text not null,"
        " target_user_id text not null,"
        " target_user_email text not null,"
        " payload jsonb not null default '{}'::jsonb,"
        " reason text not null default '',"
        " created_at timestamptz not null,"
        " server_timestamp timestamptz not null default clock_timestamp(),"
        " digest text not null"
        ")",
        f"create index if not exists {audit_name}_target_ts_idx"
        f" on {audit_table} (target_user_id, server_timestamp, seq)",
        f"create index if not exists {audit_name}_type_idx on {audit_table} (type)",
        f"create or replace function {func}() returns trigger language plpgsql as $$"
        f" begin raise exception '{audit_name} is append-only'; end $$",
        f"drop trigger if exists {trigger} on {audit_table}",
        f"create trigger {trigger} before update or delete on {audit_table}"
        f" for each row execute function {func}()",
    ]
    with psycopg.connect(_resolve_dsn(dsn, audit=False), autocommit=True) as conn:
        with conn.cursor() as cur:
            for stmt in statements:
                cur.execute(stmt)
    logger.info("Access schema ensured: profiles=%s audit=%s", profiles_table, audit_table)


class DBProfileStore:
    """Postgres-backed profile store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string. Defaults to the configured profile DSN.
    table:
        Fully qualified table name. Defaults to `public.access_profiles`.
    """

    def __init__(self, dsn: Optional[str] = None, table: str = PROFILES_TABLE) -> None:
        _require_psycopg()
        self._dsn = _resolve_dsn(dsn, audit=False)
        self._table = _validate_table(table)
        self._listeners: Dict[str, List[ProfileListener]] = {}
        self._lock = threading.Lock()

    def _row_to_profile(self, row) -> UserProfile:
        doc = dict(zip(_PROFILE_COLUMNS, row))
        doc["guest_access_expiry"] = _utc(doc.get("guest_access_expiry"))
        doc["updated_at"] = _utc(doc.get("updated_at"))
        return UserProfile.from_document(str(doc["id"]), doc)

    def get(self, profile_id: str) -> Optional[UserProfile]:
        cols = ", ".join(_PROFILE_COLUMNS)
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {cols} from {self._table} where id = %s", (profile_id,))
                row = cur.fetchone()
        return self._row_to_profile(row) if row else None

    def create(self, profile: UserProfile) -> UserProfile:
        cols = ", ".join(_PROFILE_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_PROFILE_COLUMNS))
        params = (
            profile.id,
            profile.email,
            profile.role,
            Json(profile.permissions) if profile.permissions is not None else None,
            profile.institution_id,
            profile.suspended,
            profile.guest_access_expiry,
            profile.updated_at or utcnow(),
        )
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"insert into {self._table} ({cols}) values ({placeholders}) "
                    f"on conflict (id) do nothing returning {cols}",
                    params,
                )
                row = cur.fetchone()
        if not row:
            raise StoreError("profile_exists", profile.id)
        created = self._row_to_profile(row)
        self._notify(created.id, created)
        return created

    def update(self, profile_id: str, patch: Mapping[str, Any]) -> UserProfile:
        unknown = set(patch) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"unknown profile fields: {sorted(unknown)}")
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        assignments = []
        params: List[Any] = []
        for column in _PROFILE_COLUMNS:
            if column not in values:
                continue
            value = values[column]
            if column == "permissions" and value is not None:
                value = Json(dict(value))
            assignments.append(f"{column} = %s")
            params.append(value)
        params.append(profile_id)
        cols = ", ".join(_PROFILE_COLUMNS)
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"update {self._table} set {', '.join(assignments)} where id = %s returning {cols}",
                    tuple(params),
                )
                row = cur.fetchone()
        if not row:
            raise ProfileNotFound("profile_not_found", profile_id)
        updated = self._row_to_profile(row)
        self._notify(profile_id, updated)
        return updated

    def delete(self, profile_id: str) -> bool:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(f"delete from {self._table} where id = %s returning id", (profile_id,))
                row = cur.fetchone()
        if not row:
            return False
        self._notify(profile_id, None)
        return True

    def subscribe(self, profile_id: str, listener: ProfileListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(profile_id, []).append(listener)
        listener(self.get(profile_id))

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(profile_id) or []
                if listener in listeners:
                    listeners.remove(listener)

        return _unsubscribe

    def refresh(self, profile_id: str) -> Optional[UserProfile]:
        """Re-read `profile_id` and push the snapshot to its listeners."""
        profile = self.get(profile_id)
        self._notify(profile_id, profile)
        return profile

    def _notify(self, profile_id: str, profile: Optional[UserProfile]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(profile_id) or [])
        for listener in listeners:
            listener(profile)


class DBAuditStore:
    """Postgres-backed, append-only audit store.

    Ids and server timestamps are assigned by the database
    (`gen_random_uuid()`, `clock_timestamp()`); `seq` breaks ties.
    """

    def __init__(self, dsn: Optional[str] = None, table: str = AUDIT_TABLE) -> None:
        _require_psycopg()
        self._dsn = _resolve_dsn(dsn, audit=True)
        self._table = _validate_table(table)

    def append(self, doc: Dict[str, Any]) -> Tuple[str, datetime]:
        cols = ", ".join(_AUDIT_INSERT_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_AUDIT_INSERT_COLUMNS))
        params = (
            doc["type"],
            doc["actor_id"],
            doc["actor_email"],
            doc["target_user_id"],
            doc["target_user_email"],
            Json(dict(doc.get("payload") or {})),
            doc.get("reason") or "",
            _utc(doc["created_at"]),
            doc["digest"],
        )
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"insert into {self._table} ({cols}) values ({placeholders}) "
                    f"returning id::text, server_timestamp",
                    params,
                )
                row = cur.fetchone()
        if not row:
            raise StoreError("audit_append_failed", "insert returned no row")
        return str(row[0]), _utc(row[1])

    def list_entries(
        self,
        *,
        target_user_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        cols = ", ".join("id::text" if c == "id" else c for c in _AUDIT_SELECT_COLUMNS)
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select {cols} from {self._table} "
                    "where (%s::text is null or target_user_id = %s) "
                    "and (%s::text is null or type = %s) "
                    "order by server_timestamp asc, created_at asc, seq asc limit %s",
                    (target_user_id, target_user_id, type, type, int(limit)),
                )
                rows = cur.fetchall()
        out: List[Dict[str, Any]] = []
        for row in rows:
            doc = dict(zip(_AUDIT_SELECT_COLUMNS, row))
            doc["id"] = str(doc["id"])
            doc["payload"] = dict(doc.get("payload") or {})
            doc["created_at"] = _utc(doc["created_at"])
            doc["server_timestamp"] = _utc(doc["server_timestamp"])
            out.append(doc)
        return out


__all__ = ["AUDIT_TABLE", "DBAuditStore", "DBProfileStore", "PROFILES_TABLE", "ensure_schema"]
