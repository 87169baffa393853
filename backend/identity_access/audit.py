"""
Append-only audit trail for authorization-relevant mutations.

Why:
    Every role, permission, suspension, institution and guest-window change
    must leave an immutable record that outlives the subject it describes.

Design:
    - `AuditLogEntry` is a frozen pydantic model. Its `digest` is a SHA-256
      over the canonical JSON of the entry content, so a stored row edited
      behind the store's back no longer verifies.
    - `AuditLogWriter` exposes append and read operations only. There is no
      update or delete path.
    - `created_at` is captured at call time; `server_timestamp` is assigned by
      the store and is the primary ordering key.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import hashlib
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

from backend.identity_access.errors import StoreError
from backend.identity_access.guest_access import utcnow


logger = logging.getLogger("coursegate.identity_access.audit")


class AuditType(str, Enum):
    ROLE_CHANGE = "ROLE_CHANGE"
    PERMISSION_CHANGE = "PERMISSION_CHANGE"
    USER_SUSPENDED = "USER_SUSPENDED"
    USER_UNSUSPENDED = "USER_UNSUSPENDED"
    INSTITUTION_ASSIGNED = "INSTITUTION_ASSIGNED"
    INSTITUTION_REMOVED = "INSTITUTION_REMOVED"
    GUEST_ACCESS_CREATED = "GUEST_ACCESS_CREATED"
    GUEST_ACCESS_EXTENDED = "GUEST_ACCESS_EXTENDED"
    GUEST_ACCESS_REVOKED = "GUEST_ACCESS_REVOKED"
    USER_DELETED = "USER_DELETED"


# Payload keys each entry type must carry.
REQUIRED_PAYLOAD: Mapping[AuditType, Tuple[str, ...]] = {
    AuditType.ROLE_CHANGE: ("old_role", "new_role"),
    AuditType.PERMISSION_CHANGE: ("old_permissions", "new_permissions"),
    AuditType.USER_SUSPENDED: ("suspended",),
    AuditType.USER_UNSUSPENDED: ("suspended",),
    AuditType.INSTITUTION_ASSIGNED: ("institution_id",),
    AuditType.INSTITUTION_REMOVED: ("institution_id",),
    AuditType.GUEST_ACCESS_CREATED: ("institution_id", "new_expiry"),
    AuditType.GUEST_ACCESS_EXTENDED: ("old_expiry", "new_expiry"),
    AuditType.GUEST_ACCESS_REVOKED: ("old_expiry", "new_expiry"),
    AuditType.USER_DELETED: ("role",),
}


@dataclass(frozen=True)
class Actor:
    """The administrator or self-service subject performing a mutation."""

    id: str
    email: str


class AuditLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: AuditType
    actor_id: str
    actor_email: str
    target_user_id: str
    target_user_email: str
    payload: Dict[str, Any] = {}
    reason: str = ""
    created_at: datetime
    server_timestamp: Optional[datetime] = None
    id: Optional[str] = None
    digest: Optional[str] = None

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "AuditLogEntry":
        missing = [k for k in REQUIRED_PAYLOAD.get(self.type, ()) if k not in self.payload]
        if missing:
            raise ValueError(f"{self.type.value} payload missing keys: {missing}")
        return self

    def content(self) -> Dict[str, Any]:
        """Fields covered by the digest (everything the store does not assign)."""
        return self.model_dump(mode="json", exclude={"id", "server_timestamp", "digest"})


def compute_digest(entry: AuditLogEntry) -> str:
    canonical = json.dumps(entry.content(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_digest(entry: AuditLogEntry) -> bool:
    return bool(entry.digest) and entry.digest == compute_digest(entry)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(_jsonable(k)): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, Mapping):
        return entry.get(name)
    return getattr(entry, name, None)


def describe(entry: Any) -> str:
    """One-line, display-only summary of an entry (model or raw document)."""
    kind = _field(entry, "type")
    kind = kind.value if isinstance(kind, Enum) else kind
    payload = _field(entry, "payload") or {}
    if kind == AuditType.ROLE_CHANGE.value:
        return f"Changed role from {payload.get('old_role')} to {payload.get('new_role')}"
    if kind == AuditType.PERMISSION_CHANGE.value:
        return "Updated permissions"
    if kind == AuditType.USER_SUSPENDED.value:
        return "Suspended user"
    if kind == AuditType.USER_UNSUSPENDED.value:
        return "Unsuspended user"
    if kind == AuditType.INSTITUTION_ASSIGNED.value:
        return f"Assigned to institution: {payload.get('institution_name') or payload.get('institution_id')}"
    if kind == AuditType.INSTITUTION_REMOVED.value:
        return "Removed from institution"
    if kind == AuditType.GUEST_ACCESS_CREATED.value:
        return f"Granted guest access until {payload.get('new_expiry')}"
    if kind == AuditType.GUEST_ACCESS_EXTENDED.value:
        return f"Extended guest access until {payload.get('new_expiry')}"
    if kind == AuditType.GUEST_ACCESS_REVOKED.value:
        return "Revoked guest access"
    if kind == AuditType.USER_DELETED.value:
        return "Deleted user"
    return "Unknown action"


class AuditStoreProtocol(Protocol):
    """Append-only event store.

    `append` persists a document and returns `(entry_id, server_timestamp)`.
    `list_entries` returns documents ordered by server timestamp, then
    `created_at`, then insertion order.
    """

    def append(self, doc: Dict[str, Any]) -> Tuple[str, datetime]: ...

    def list_entries(
        self,
        *,
        target_user_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]: ...


class AuditLogWriter:
    def __init__(self, store: AuditStoreProtocol, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def build(
        self,
        type: AuditType | str,
        actor: Actor,
        *,
        target_user_id: str,
        target_user_email: str,
        payload: Optional[Mapping[str, Any]] = None,
        reason: str = "",
    ) -> AuditLogEntry:
        """Create a fully populated, digested entry without persisting it."""
        kind = AuditType(type)
        entry = AuditLogEntry(
            type=kind,
            actor_id=actor.id,
            actor_email=actor.email,
            target_user_id=target_user_id,
            target_user_email=target_user_email,
            payload=_jsonable(dict(payload or {})),
            reason=reason or describe({"type": kind.value, "payload": _jsonable(dict(payload or {}))}),
            created_at=self._clock(),
        )
        return entry.model_copy(update={"digest": compute_digest(entry)})

    def append(self, entry: AuditLogEntry) -> str:
        """Persist `entry` and return its store-assigned id.

        Raises:
            StoreError: the store rejected or could not take the write.
        """
        if entry.id is not None or entry.server_timestamp is not None:
            raise ValueError("entry already persisted")
        if not entry.digest:
            entry = entry.model_copy(update={"digest": compute_digest(entry)})
        doc = entry.model_dump(mode="json", exclude={"id", "server_timestamp"})
        try:
            entry_id, _server_ts = self._store.append(doc)
        except StoreError:
            raise
        except Exception as exc:
            logger.error("Audit append failed: type=%s err=%s", entry.type.value, exc.__class__.__name__)
            raise StoreError("audit_append_failed", exc.__class__.__name__) from exc
        return entry_id

    def record(
        self,
        type: AuditType | str,
        actor: Actor,
        *,
        target_user_id: str,
        target_user_email: str,
        payload: Optional[Mapping[str, Any]] = None,
        reason: str = "",
    ) -> str:
        entry = self.build(
            type,
            actor,
            target_user_id=target_user_id,
            target_user_email=target_user_email,
            payload=payload,
            reason=reason,
        )
        return self.append(entry)

    def history(
        self,
        target_user_id: Optional[str] = None,
        *,
        type: AuditType | str | None = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Entries for a subject (or all subjects) in server-timestamp order."""
        kind = AuditType(type).value if type is not None else None
        limit = max(1, min(1000, int(limit)))
        docs = self._store.list_entries(target_user_id=target_user_id, type=kind, limit=limit)
        return [AuditLogEntry.model_validate(d) for d in docs]


def render_history(entries: Sequence[AuditLogEntry]) -> List[str]:
    out: List[str] = []
    for e in entries:
        ts = e.server_timestamp or e.created_at
        out.append(f"{ts.isoformat()} {e.actor_email} -> {e.target_user_email}: {describe(e)}")
    return out


__all__ = [
    "Actor",
    "AuditLogEntry",
    "AuditLogWriter",
    "AuditStoreProtocol",
    "AuditType",
    "REQUIRED_PAYLOAD",
    "compute_digest",
    "describe",
    "render_history",
    "verify_digest",
]
