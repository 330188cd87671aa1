"""
Permission Store — persistence contract for the delegation engine.

Implementors may back this with PostgreSQL, SQLite, a document store or
memory. Whatever the backend, three guarantees are required:

1. Atomic transitions — commit() persists the permission's fields and its new
   audit entry together or not at all.
2. Append-only audit — an update may only extend the stored audit trail,
   never rewrite or drop an earlier entry.
3. Terminal immutability — a revoked or expired permission accepts audit
   appends and nothing else.

The module-level guard functions enforce (2) and (3) so every backend
applies the same rules.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from delegation_engine.permissions.errors import ConcurrentModification, InvalidState
from delegation_engine.permissions.schema import (
    AuditEntry,
    AutoRevokeEvent,
    Permission,
    PermissionStatus,
)

_MUTABLE_FIELDS = ("status", "scope", "conditions", "metadata", "expires_at", "revoked_at", "granted_at")


def guard_update(stored: Permission, updated: Permission) -> None:
    """
    Reject updates that rewrite audit history or touch a terminal permission.

    Raises:
        ConcurrentModification: the stored audit trail is not a prefix of
            the updated one (someone else appended in between).
        InvalidState: the stored permission is terminal and a non-audit
            field changed.
    """
    stored_log = stored.audit_log
    if updated.audit_log[: len(stored_log)] != stored_log:
        raise ConcurrentModification(
            f"Audit trail of {stored.id} diverged from the stored trail "
            f"({len(stored_log)} stored entries)"
        )
    if stored.is_terminal:
        for name in _MUTABLE_FIELDS:
            if getattr(stored, name) != getattr(updated, name):
                raise InvalidState(stored.id, stored.status.value, f"modify {name} of")


def guard_commit(stored: Permission, updated: Permission, entry: AuditEntry) -> None:
    """Compare-and-swap check for a single lifecycle transition."""
    if not updated.audit_log or updated.audit_log[-1].id != entry.id:
        raise ValueError("commit() requires the entry to be the permission's last audit entry")
    if len(stored.audit_log) != len(updated.audit_log) - 1:
        raise ConcurrentModification(
            f"Permission {stored.id} has {len(stored.audit_log)} audit entries, "
            f"transition was built on {len(updated.audit_log) - 1}"
        )
    guard_update(stored, updated)


def guard_append(stored: Permission, entry: AuditEntry) -> None:
    expected_hash = stored.audit_log[-1].entry_hash if stored.audit_log else entry.previous_hash
    if entry.sequence != len(stored.audit_log) or entry.previous_hash != expected_hash:
        raise ConcurrentModification(
            f"Audit entry {entry.id} does not extend the trail of {stored.id} "
            f"(sequence {entry.sequence}, stored length {len(stored.audit_log)})"
        )


class PermissionStore(ABC):
    """Durable, queryable repository of permissions and auto-revoke events."""

    # ─── Permissions ──────────────────────────────────────────────────────────

    @abstractmethod
    def find_by_id(self, permission_id: str) -> Permission | None:
        ...

    @abstractmethod
    def find_all(self) -> list[Permission]:
        ...

    @abstractmethod
    def find_by_status(self, status: PermissionStatus) -> list[Permission]:
        ...

    @abstractmethod
    def find_by_user(self, user_id: str) -> list[Permission]:
        ...

    def find_all_active(self) -> list[Permission]:
        return self.find_by_status(PermissionStatus.ACTIVE)

    def find_active_by_user(self, user_id: str) -> list[Permission]:
        return [
            p for p in self.find_by_user(user_id) if p.status == PermissionStatus.ACTIVE
        ]

    @abstractmethod
    def save(self, permission: Permission) -> None:
        """Insert a new permission or overwrite a stored one (guarded)."""

    @abstractmethod
    def append_audit(self, permission_id: str, entry: AuditEntry) -> None:
        """Append one audit entry without touching any other field."""

    @abstractmethod
    def commit(self, permission: Permission, entry: AuditEntry) -> None:
        """Persist a transition: the permission's fields plus `entry`, atomically."""

    # ─── Events ───────────────────────────────────────────────────────────────

    @abstractmethod
    def record_event(self, event: AutoRevokeEvent) -> None:
        ...

    @abstractmethod
    def list_events(self, since: datetime | None = None) -> list[AutoRevokeEvent]:
        ...

    # ─── Integrity ────────────────────────────────────────────────────────────

    def verify_chains(self) -> list[tuple[str, bool, int, str]]:
        """
        Verify the audit hash chain of every stored permission.

        Returns:
            One (permission_id, is_valid, entries_verified, message) per permission.
        """
        return [(p.id, *p.verify_audit_chain()) for p in self.find_all()]
