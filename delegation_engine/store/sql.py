"""
SQL Permission Store — SQLAlchemy-backed persistence for the delegation engine.

Every write runs in a single transaction:
- the stored permission is read back and checked with the shared guards
  (append-only audit, terminal immutability),
- the permissions row is updated with a compare-and-swap on `version`,
- new audit rows are inserted; the unique (permission_id, sequence) pair
  rejects a concurrent append at the same position.

A lost race raises ConcurrentModification. Any other database error is
raised as PersistenceFailure. Nothing is committed in either case.

Works on PostgreSQL (JSONB columns) and SQLite.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from sqlalchemy import create_engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from delegation_engine.permissions.errors import (
    ConcurrentModification,
    NotFound,
    PersistenceFailure,
)
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
from delegation_engine.store.models import (
    AuditEntryDB,
    AutoRevokeEventDB,
    Base,
    PermissionDB,
)

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Row Mapping
# ════════════════════════════════════════════════════════════════


def _permission_values(permission: Permission) -> dict:
    data = permission.model_dump(mode="json", exclude={"audit_log"})
    return {
        "user_id": permission.user_id,
        "agent_id": permission.agent_id,
        "type": permission.type.value,
        "status": permission.status.value,
        "scope": data["scope"],
        "conditions": data["conditions"],
        "permission_metadata": data["metadata"],
        "granted_at": permission.granted_at,
        "expires_at": permission.expires_at,
        "revoked_at": permission.revoked_at,
        "created_at": permission.created_at,
        "updated_at": permission.updated_at,
    }


def _audit_row(permission_id: str, entry: AuditEntry) -> AuditEntryDB:
    return AuditEntryDB(
        id=entry.id,
        permission_id=permission_id,
        sequence=entry.sequence,
        action=entry.action.value,
        details=entry.model_dump(mode="json")["details"],
        timestamp=entry.timestamp,
        triggered_by=entry.triggered_by.value,
        reason=entry.reason,
        previous_hash=entry.previous_hash,
        entry_hash=entry.entry_hash,
    )


def _to_audit_entry(row: AuditEntryDB) -> AuditEntry:
    return AuditEntry.model_validate({
        "id": row.id,
        "sequence": row.sequence,
        "action": row.action,
        "details": row.details,
        "timestamp": row.timestamp,
        "triggered_by": row.triggered_by,
        "reason": row.reason,
        "previous_hash": row.previous_hash,
        "entry_hash": row.entry_hash,
    })


def _to_permission(row: PermissionDB, audit_rows: list[AuditEntryDB]) -> Permission:
    return Permission.model_validate({
        "id": row.id,
        "user_id": row.user_id,
        "agent_id": row.agent_id,
        "type": row.type,
        "status": row.status,
        "scope": row.scope,
        "conditions": row.conditions,
        "metadata": row.permission_metadata,
        "granted_at": row.granted_at,
        "expires_at": row.expires_at,
        "revoked_at": row.revoked_at,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "audit_log": [_to_audit_entry(a) for a in audit_rows],
    })


def _event_row(event: AutoRevokeEvent) -> AutoRevokeEventDB:
    data = event.model_dump(mode="json")
    return AutoRevokeEventDB(
        id=event.id,
        rule_id=event.rule_id,
        permission_id=event.permission_id,
        user_id=event.user_id,
        action=event.action.value,
        reason=event.reason,
        market_data=data["market_data"],
        signal_value=event.signal_value,
        timestamp=event.timestamp,
        severity=event.severity.value,
    )


def _to_event(row: AutoRevokeEventDB) -> AutoRevokeEvent:
    return AutoRevokeEvent.model_validate({
        "id": row.id,
        "rule_id": row.rule_id,
        "permission_id": row.permission_id,
        "user_id": row.user_id,
        "action": row.action,
        "reason": row.reason,
        "market_data": row.market_data,
        "signal_value": row.signal_value,
        "timestamp": row.timestamp,
        "severity": row.severity,
    })


# ════════════════════════════════════════════════════════════════
# Store
# ════════════════════════════════════════════════════════════════


class SqlPermissionStore(PermissionStore):
    """
    PermissionStore over any SQLAlchemy-supported database.

    Usage:
        store = SqlPermissionStore(settings.resolved_database_url)
        store.initialize()  # Create tables
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        """
        Args:
            database_url: SQLAlchemy connection string (sync driver).
            echo: Log emitted SQL.
        """
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        Base.metadata.create_all(self.engine)
        logger.info("Delegation store initialized at %s", self.engine.url.render_as_string())

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _read(self) -> Iterator[Session]:
        try:
            with self.SessionLocal() as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Store read failed: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self.SessionLocal.begin() as session:
                yield session
        except IntegrityError as exc:
            raise ConcurrentModification(f"Conflicting write: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Store write failed: {exc}") from exc

    # ── Loading ─────────────────────────────────────────────────

    @staticmethod
    def _audit_rows(session: Session, permission_ids: list[str]) -> dict[str, list[AuditEntryDB]]:
        grouped: dict[str, list[AuditEntryDB]] = {pid: [] for pid in permission_ids}
        if not permission_ids:
            return grouped
        rows = session.execute(
            select(AuditEntryDB)
            .where(AuditEntryDB.permission_id.in_(permission_ids))
            .order_by(AuditEntryDB.permission_id, AuditEntryDB.sequence.asc())
        ).scalars().all()
        for row in rows:
            grouped[row.permission_id].append(row)
        return grouped

    def _load_many(self, session: Session, stmt) -> list[Permission]:
        rows = session.execute(stmt.order_by(PermissionDB.created_at.asc())).scalars().all()
        audit = self._audit_rows(session, [row.id for row in rows])
        return [_to_permission(row, audit[row.id]) for row in rows]

    def _load_row(self, session: Session, permission_id: str) -> tuple[PermissionDB, Permission] | None:
        row = session.get(PermissionDB, permission_id)
        if row is None:
            return None
        audit = self._audit_rows(session, [permission_id])[permission_id]
        return row, _to_permission(row, audit)

    # ── Queries ─────────────────────────────────────────────────

    def find_by_id(self, permission_id: str) -> Permission | None:
        with self._read() as session:
            loaded = self._load_row(session, permission_id)
            return loaded[1] if loaded else None

    def find_all(self) -> list[Permission]:
        with self._read() as session:
            return self._load_many(session, select(PermissionDB))

    def find_by_status(self, status: PermissionStatus) -> list[Permission]:
        with self._read() as session:
            return self._load_many(
                session, select(PermissionDB).where(PermissionDB.status == status.value)
            )

    def find_by_user(self, user_id: str) -> list[Permission]:
        with self._read() as session:
            return self._load_many(
                session, select(PermissionDB).where(PermissionDB.user_id == user_id)
            )

    def find_active_by_user(self, user_id: str) -> list[Permission]:
        with self._read() as session:
            return self._load_many(
                session,
                select(PermissionDB).where(
                    PermissionDB.user_id == user_id,
                    PermissionDB.status == PermissionStatus.ACTIVE.value,
                ),
            )

    # ── Writes ──────────────────────────────────────────────────

    def _swap(self, session: Session, permission: Permission, expected_version: int) -> None:
        result = session.execute(
            update(PermissionDB)
            .where(
                PermissionDB.id == permission.id,
                PermissionDB.version == expected_version,
            )
            .values(version=expected_version + 1, **_permission_values(permission))
        )
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Permission {permission.id} changed since version {expected_version}"
            )

    def save(self, permission: Permission) -> None:
        with self._transaction() as session:
            loaded = self._load_row(session, permission.id)
            if loaded is None:
                session.add(PermissionDB(
                    id=permission.id, version=0, **_permission_values(permission)
                ))
                session.flush()
                new_entries = permission.audit_log
            else:
                row, stored = loaded
                guard_update(stored, permission)
                self._swap(session, permission, row.version)
                new_entries = permission.audit_log[len(stored.audit_log):]
            for entry in new_entries:
                session.add(_audit_row(permission.id, entry))

    def commit(self, permission: Permission, entry: AuditEntry) -> None:
        with self._transaction() as session:
            loaded = self._load_row(session, permission.id)
            if loaded is None:
                raise NotFound("Permission", permission.id)
            row, stored = loaded
            guard_commit(stored, permission, entry)
            self._swap(session, permission, row.version)
            session.add(_audit_row(permission.id, entry))
        logger.debug(
            "Committed %s on %s (seq=%d hash=%s)",
            entry.action.value, permission.id, entry.sequence, entry.entry_hash[:16],
        )

    def append_audit(self, permission_id: str, entry: AuditEntry) -> None:
        with self._transaction() as session:
            loaded = self._load_row(session, permission_id)
            if loaded is None:
                raise NotFound("Permission", permission_id)
            row, stored = loaded
            guard_append(stored, entry)
            result = session.execute(
                update(PermissionDB)
                .where(PermissionDB.id == permission_id, PermissionDB.version == row.version)
                .values(version=row.version + 1)
            )
            if result.rowcount != 1:
                raise ConcurrentModification(
                    f"Permission {permission_id} changed since version {row.version}"
                )
            session.add(_audit_row(permission_id, entry))

    # ── Events ──────────────────────────────────────────────────

    def record_event(self, event: AutoRevokeEvent) -> None:
        try:
            with self.SessionLocal.begin() as session:
                if session.get(AutoRevokeEventDB, event.id) is not None:
                    raise PersistenceFailure(f"Event {event.id} already recorded")
                session.add(_event_row(event))
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to record event {event.id}: {exc}") from exc

    def list_events(self, since: datetime | None = None) -> list[AutoRevokeEvent]:
        with self._read() as session:
            stmt = select(AutoRevokeEventDB).order_by(AutoRevokeEventDB.timestamp.asc())
            if since is not None:
                stmt = stmt.where(AutoRevokeEventDB.timestamp >= ensure_utc(since))
            return [_to_event(row) for row in session.execute(stmt).scalars().all()]
