"""
Delegation Store — SQLAlchemy models for permissions, their audit trails and
auto-revoke events.

Three tables:

1. permissions — current state of each permission. Scope, conditions and
   metadata are JSON documents (JSONB on PostgreSQL). `version` is bumped on
   every write and used for optimistic compare-and-swap.
2. permission_audit_entries — APPEND-ONLY, hash-chained audit trail. The
   (permission_id, sequence) pair is unique, so two writers racing to append
   the same position cannot both succeed.
3. auto_revoke_events — WRITE-ONCE record of every rule firing.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all delegation store models."""
    pass


class PermissionDB(Base):
    """Current state of one delegated permission."""

    __tablename__ = "permissions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    agent_id = Column(String(128), nullable=False)
    type = Column(
        String(50), nullable=False,
        comment="PermissionType value",
    )
    status = Column(
        String(20), nullable=False, index=True,
        comment="pending, active, revoked or expired",
    )

    scope = Column(
        JSONDocument, nullable=False,
        comment="Tokens, amount caps, time windows and frequency limit",
    )
    conditions = Column(JSONDocument, nullable=False, default=list)
    # `metadata` is reserved on declarative classes
    permission_metadata = Column("metadata", JSONDocument, nullable=False, default=dict)

    granted_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    version = Column(
        Integer, nullable=False, default=0,
        comment="Incremented on every write; compare-and-swap token",
    )

    __table_args__ = (
        Index("ix_permissions_user_status", "user_id", "status"),
        {"comment": "Delegated agent permissions (current state)"},
    )

    def __repr__(self) -> str:
        return f"<Permission id={self.id} status={self.status} v{self.version}>"


class AuditEntryDB(Base):
    """
    One entry in a permission's audit trail.

    This table is APPEND-ONLY. Each entry stores the SHA-256 hash of
    (previous_hash || canonical_json(entry)).
    """

    __tablename__ = "permission_audit_entries"

    id = Column(String(64), primary_key=True)
    permission_id = Column(
        String(64), ForeignKey("permissions.id"), nullable=False, index=True,
    )
    sequence = Column(
        Integer, nullable=False,
        comment="Position in the permission's audit trail, from 0",
    )
    action = Column(String(30), nullable=False)
    details = Column(JSONDocument, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    triggered_by = Column(
        String(20), nullable=False,
        comment="user, system, community or ai",
    )
    reason = Column(Text, nullable=True)
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)

    __table_args__ = (
        UniqueConstraint("permission_id", "sequence", name="uq_audit_permission_sequence"),
        {"comment": "Append-only, hash-chained permission audit trail"},
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntry permission={self.permission_id} seq={self.sequence} "
            f"action={self.action} hash={self.entry_hash[:12]}...>"
        )


class AutoRevokeEventDB(Base):
    """A rule firing against a permission. Rows are never updated."""

    __tablename__ = "auto_revoke_events"

    id = Column(String(64), primary_key=True)
    rule_id = Column(String(128), nullable=False, index=True)
    permission_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(128), nullable=False)
    action = Column(
        String(20), nullable=False,
        comment="revoked, restricted or escalated",
    )
    reason = Column(Text, nullable=False)
    market_data = Column(
        JSONDocument, nullable=False,
        comment="Market snapshot the rule was evaluated against",
    )
    signal_value = Column(Float, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    severity = Column(String(20), nullable=False)

    __table_args__ = (
        Index("ix_auto_revoke_events_severity_timestamp", "severity", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AutoRevokeEvent rule={self.rule_id} permission={self.permission_id} {self.action}>"
