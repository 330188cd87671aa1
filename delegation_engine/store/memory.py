"""In-process permission store for single-process deployments and testing."""

from __future__ import annotations

import threading
from datetime import datetime

from delegation_engine.permissions.errors import NotFound, PersistenceFailure
from delegation_engine.permissions.schema import (
    AuditEntry,
    AutoRevokeEvent,
    Permission,
    PermissionStatus,
    ensure_utc,
)
from delegation_engine.store.base import (
    PermissionStore,
    guard_append,
    guard_commit,
    guard_update,
)


class InMemoryPermissionStore(PermissionStore):
    """
    Memory-backed store. All state is lost when the process exits.

    Reads and writes go through deep copies so callers can never mutate
    stored state behind the store's back.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._permissions: dict[str, Permission] = {}
        self._events: list[AutoRevokeEvent] = []

    # ─── Permissions ──────────────────────────────────────────────────────────

    def find_by_id(self, permission_id: str) -> Permission | None:
        with self._lock:
            permission = self._permissions.get(permission_id)
            return permission.model_copy(deep=True) if permission else None

    def find_all(self) -> list[Permission]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._permissions.values()]

    def find_by_status(self, status: PermissionStatus) -> list[Permission]:
        with self._lock:
            return [
                p.model_copy(deep=True)
                for p in self._permissions.values()
                if p.status == status
            ]

    def find_by_user(self, user_id: str) -> list[Permission]:
        with self._lock:
            return [
                p.model_copy(deep=True)
                for p in self._permissions.values()
                if p.user_id == user_id
            ]

    def save(self, permission: Permission) -> None:
        with self._lock:
            stored = self._permissions.get(permission.id)
            if stored is not None:
                guard_update(stored, permission)
            self._permissions[permission.id] = permission.model_copy(deep=True)

    def append_audit(self, permission_id: str, entry: AuditEntry) -> None:
        with self._lock:
            stored = self._permissions.get(permission_id)
            if stored is None:
                raise NotFound("Permission", permission_id)
            guard_append(stored, entry)
            updated = stored.model_copy(deep=True)
            updated.audit_log.append(entry)
            self._permissions[permission_id] = updated

    def commit(self, permission: Permission, entry: AuditEntry) -> None:
        with self._lock:
            stored = self._permissions.get(permission.id)
            if stored is None:
                raise NotFound("Permission", permission.id)
            guard_commit(stored, permission, entry)
            self._permissions[permission.id] = permission.model_copy(deep=True)

    # ─── Events ───────────────────────────────────────────────────────────────

    def record_event(self, event: AutoRevokeEvent) -> None:
        with self._lock:
            if any(e.id == event.id for e in self._events):
                raise PersistenceFailure(f"Event {event.id} already recorded")
            self._events.append(event)

    def list_events(self, since: datetime | None = None) -> list[AutoRevokeEvent]:
        with self._lock:
            if since is None:
                return list(self._events)
            since = ensure_utc(since)
            return [e for e in self._events if e.timestamp >= since]
