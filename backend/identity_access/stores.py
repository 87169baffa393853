"""
In-memory stores for development and tests: profiles and audit entries.

Why: Keep the service and session layers runnable without Postgres. For
production, use the DB-backed stores in `stores_db`.

Behavior:
- Profile updates are atomic per document (a single lock guards the
  read-modify-write); listeners are notified outside the lock.
- The audit store has no update or delete operation. Server timestamps are
  taken from the injected clock and never run backwards.
"""
from __future__ import annotations

from datetime import datetime
import itertools
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from backend.identity_access.errors import ProfileNotFound, StoreError
from backend.identity_access.guest_access import utcnow
from backend.identity_access.profiles import ProfileListener, UserProfile


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._data: Dict[str, UserProfile] = {}
        self._listeners: Dict[str, List[ProfileListener]] = {}
        self._lock = threading.Lock()

    def get(self, profile_id: str) -> Optional[UserProfile]:
        with self._lock:
            return self._data.get(profile_id)

    def create(self, profile: UserProfile) -> UserProfile:
        with self._lock:
            if profile.id in self._data:
                raise StoreError("profile_exists", profile.id)
            self._data[profile.id] = profile
        self._notify(profile.id, profile)
        return profile

    def update(self, profile_id: str, patch: Mapping[str, Any]) -> UserProfile:
        with self._lock:
            current = self._data.get(profile_id)
            if current is None:
                raise ProfileNotFound("profile_not_found", profile_id)
            updated = current.apply(patch)
            self._data[profile_id] = updated
        self._notify(profile_id, updated)
        return updated

    def delete(self, profile_id: str) -> bool:
        with self._lock:
            removed = self._data.pop(profile_id, None)
        if removed is None:
            return False
        self._notify(profile_id, None)
        return True

    def subscribe(self, profile_id: str, listener: ProfileListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(profile_id, []).append(listener)
            current = self._data.get(profile_id)
        listener(current)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(profile_id) or []
                if listener in listeners:
                    listeners.remove(listener)

        return _unsubscribe

    def _notify(self, profile_id: str, profile: Optional[UserProfile]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(profile_id) or [])
        for listener in listeners:
            listener(profile)


class InMemoryAuditStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._rows: List[Tuple[int, Dict[str, Any]]] = []
        self._seq = itertools.count(1)
        self._last_ts: Optional[datetime] = None
        self._lock = threading.Lock()

    def append(self, doc: Dict[str, Any]) -> Tuple[str, datetime]:
        with self._lock:
            ts = self._clock()
            if self._last_ts is not None and ts < self._last_ts:
                ts = self._last_ts
            self._last_ts = ts
            entry_id = str(uuid4())
            row = dict(doc)
            row["id"] = entry_id
            row["server_timestamp"] = ts
            self._rows.append((next(self._seq), row))
        return entry_id, ts

    def list_entries(
        self,
        *,
        target_user_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(self._rows)
        matched = [
            (seq, row)
            for seq, row in rows
            if (target_user_id is None or row.get("target_user_id") == target_user_id)
            and (type is None or row.get("type") == type)
        ]
        matched.sort(key=lambda item: (item[1]["server_timestamp"], str(item[1].get("created_at")), item[0]))
        return [dict(row) for _, row in matched[:limit]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


__all__ = ["InMemoryAuditStore", "InMemoryProfileStore"]
