"""
Permission Lifecycle Manager — the only writer of permission state.

Legal transitions:
    pending → active            grant()
    active  → revoked           revoke()
    active  → expired           expire(), or lazily via materialize()
    active  → active            restrict(), escalate(), condition edits,
                                community decisions

Revoked and expired permissions are terminal. Every transition appends
exactly one hash-chained audit entry and is committed through
PermissionStore.commit(), so the field changes and the audit entry land
together or not at all. Transitions are built on a deep copy of the stored
permission; a failed commit leaves the stored permission untouched.

All mutations of a single permission are serialized through a per-permission
re-entrant lock (lock_for), shared with the auto-revoke engine so a periodic
pass and a manual trigger never interleave on the same permission.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from delegation_engine.integrations.community import CommunityVoting
from delegation_engine.integrations.events import EventKind, EventSink, publish_safely
from delegation_engine.permissions.errors import (
    DelegationError,
    InvalidState,
    NotFound,
    PersistenceFailure,
)
from delegation_engine.permissions.schema import (
    AuditAction,
    AuditEntry,
    Permission,
    PermissionCondition,
    PermissionMetadata,
    PermissionScope,
    PermissionStatus,
    PermissionType,
    TriggerSource,
    ensure_utc,
    utcnow,
)
from delegation_engine.store.base import PermissionStore

logger = logging.getLogger(__name__)


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_REVOKED = "already_revoked"
    ALREADY_EXPIRED = "already_expired"
    ALREADY_APPLIED = "already_applied"


@dataclass
class TransitionResult:
    """What a lifecycle call did and the permission as it now stands."""

    outcome: TransitionOutcome
    permission: Permission
    entry: AuditEntry | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


_CONDITION_FIELDS = {"type", "parameters", "operator", "priority", "is_active"}


class PermissionLifecycleManager:
    """
    Creates permissions and drives them through their lifecycle.

    Usage:
        manager = PermissionLifecycleManager(store, sink=LoggingEventSink())
        permission = manager.create(
            user_id="user_1",
            agent_id="agent_7",
            type=PermissionType.TRADE_EXECUTION,
            scope=scope,
        )
        manager.grant(permission.id)
        manager.revoke(permission.id, reason="user request")
    """

    def __init__(
        self,
        store: PermissionStore,
        sink: EventSink | None = None,
        voting: CommunityVoting | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sink = sink
        self.voting = voting
        self._clock = clock
        # Entries disappear once no caller holds the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def lock_for(self, permission_id: str) -> threading.RLock:
        """The re-entrant lock serializing all mutations of one permission."""
        with self._locks_guard:
            lock = self._locks.get(permission_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[permission_id] = lock
            return lock

    def resolve_now(self, now: datetime | None) -> datetime:
        return ensure_utc(now) if now is not None else self._clock()

    def _load(self, permission_id: str) -> Permission:
        permission = self.store.find_by_id(permission_id)
        if permission is None:
            raise NotFound("Permission", permission_id)
        return permission

    def _commit(
        self,
        permission: Permission,
        action: AuditAction,
        triggered_by: TriggerSource,
        now: datetime,
        kind: str,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Append the audit entry to the working copy and persist both at once."""
        entry = permission.new_audit_entry(
            action, triggered_by, reason=reason, details=details, timestamp=now
        )
        permission.audit_log.append(entry)
        permission.updated_at = now
        try:
            self.store.commit(permission, entry)
        except DelegationError:
            raise
        except Exception as exc:
            raise PersistenceFailure(
                f"Failed to commit {action.value} of {permission.id}: {exc}"
            ) from exc

        logger.info(
            "Permission %s: %s (status=%s, by=%s)",
            permission.id, action.value, permission.status.value, triggered_by.value,
        )
        publish_safely(self.sink, kind, {
            "permission_id": permission.id,
            "user_id": permission.user_id,
            "agent_id": permission.agent_id,
            "status": permission.status.value,
            "action": action.value,
            "triggered_by": triggered_by.value,
            "reason": reason,
            "timestamp": now.isoformat(),
        })
        return TransitionResult(TransitionOutcome.APPLIED, permission, entry)

    # ════════════════════════════════════════════════════════════════
    # Creation & Grant
    # ════════════════════════════════════════════════════════════════

    def create(
        self,
        user_id: str,
        agent_id: str,
        type: PermissionType,
        scope: PermissionScope,
        conditions: list[PermissionCondition] | None = None,
        metadata: PermissionMetadata | None = None,
        expires_at: datetime | None = None,
        triggered_by: TriggerSource = TriggerSource.USER,
        now: datetime | None = None,
    ) -> Permission:
        """Create a pending permission with its `created` audit entry."""
        now = self.resolve_now(now)
        permission = Permission(
            user_id=user_id,
            agent_id=agent_id,
            type=type,
            scope=scope,
            conditions=conditions or [],
            metadata=metadata or PermissionMetadata(),
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        entry = permission.new_audit_entry(
            AuditAction.CREATED, triggered_by,
            details={"type": type.value, "agent_id": agent_id},
            timestamp=now,
        )
        permission.audit_log.append(entry)
        try:
            self.store.save(permission)
        except DelegationError:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"Failed to create {permission.id}: {exc}") from exc

        logger.info(
            "Permission %s created: user=%s agent=%s type=%s",
            permission.id, user_id, agent_id, type.value,
        )
        publish_safely(self.sink, EventKind.PERMISSION_CREATED, {
            "permission_id": permission.id,
            "user_id": user_id,
            "agent_id": agent_id,
            "type": type.value,
        })
        return permission

    def grant(
        self,
        permission_id: str,
        triggered_by: TriggerSource = TriggerSource.USER,
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Activate a pending permission.

        Raises:
            InvalidState: the permission is not pending, its scope allows more
                than 100% of the portfolio, or it is already past its expiry.
        """
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._load(permission_id)
            if permission.status != PermissionStatus.PENDING:
                raise InvalidState(permission_id, permission.status.value, "grant")
            if permission.scope.max_percentage > 1:
                raise InvalidState(
                    permission_id, permission.status.value,
                    f"grant (max_percentage {permission.scope.max_percentage} > 1)",
                )
            if permission.is_expired_at(now):
                raise InvalidState(
                    permission_id, permission.status.value, "grant (already past expiry)"
                )
            permission.status = PermissionStatus.ACTIVE
            permission.granted_at = now
            return self._commit(
                permission, AuditAction.GRANTED, triggered_by, now,
                EventKind.PERMISSION_GRANTED,
            )

    # ════════════════════════════════════════════════════════════════
    # Terminal Transitions
    # ════════════════════════════════════════════════════════════════

    def revoke(
        self,
        permission_id: str,
        reason: str,
        triggered_by: TriggerSource = TriggerSource.USER,
        now: datetime | None = None,
        details: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """
        Revoke an active permission. Revoking twice is a no-op.

        Raises:
            InvalidState: the permission is still pending.
        """
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._materialize_locked(self._load(permission_id), now)
            if permission.status == PermissionStatus.REVOKED:
                return TransitionResult(TransitionOutcome.ALREADY_REVOKED, permission)
            if permission.status == PermissionStatus.EXPIRED:
                return TransitionResult(TransitionOutcome.ALREADY_EXPIRED, permission)
            if permission.status == PermissionStatus.PENDING:
                raise InvalidState(permission_id, permission.status.value, "revoke")

            permission.status = PermissionStatus.REVOKED
            permission.revoked_at = now
            return self._commit(
                permission, AuditAction.REVOKED, triggered_by, now,
                EventKind.PERMISSION_REVOKED,
                reason=reason,
                details={"reason": reason, **(details or {})},
            )

    def expire(
        self,
        permission_id: str,
        triggered_by: TriggerSource = TriggerSource.SYSTEM,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Expire an active permission regardless of its expires_at."""
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._load(permission_id)
            if permission.status == PermissionStatus.REVOKED:
                return TransitionResult(TransitionOutcome.ALREADY_REVOKED, permission)
            if permission.status == PermissionStatus.EXPIRED:
                return TransitionResult(TransitionOutcome.ALREADY_EXPIRED, permission)
            if permission.status == PermissionStatus.PENDING:
                raise InvalidState(permission_id, permission.status.value, "expire")
            return self._apply_expiry(permission, triggered_by, now)

    def _apply_expiry(
        self, permission: Permission, triggered_by: TriggerSource, now: datetime
    ) -> TransitionResult:
        permission.status = PermissionStatus.EXPIRED
        reason = "expires_at passed" if permission.is_expired_at(now) else "expired on request"
        return self._commit(
            permission, AuditAction.EXPIRED, triggered_by, now,
            EventKind.PERMISSION_EXPIRED,
            reason=reason,
            details={
                "expires_at": (
                    permission.expires_at.isoformat() if permission.expires_at else None
                ),
            },
        )

    # ════════════════════════════════════════════════════════════════
    # Read Boundary
    # ════════════════════════════════════════════════════════════════

    def materialize(self, permission: Permission, now: datetime | None = None) -> Permission:
        """
        Apply lazy expiry: an active permission past expires_at is committed
        as expired before anyone acts on it. Other permissions pass through.
        """
        now = self.resolve_now(now)
        if permission.status != PermissionStatus.ACTIVE or not permission.is_expired_at(now):
            return permission
        with self.lock_for(permission.id):
            return self._materialize_locked(self._load(permission.id), now)

    def _materialize_locked(self, permission: Permission, now: datetime) -> Permission:
        if permission.status == PermissionStatus.ACTIVE and permission.is_expired_at(now):
            return self._apply_expiry(permission, TriggerSource.SYSTEM, now).permission
        return permission

    def get(self, permission_id: str, now: datetime | None = None) -> Permission:
        return self.materialize(self._load(permission_id), now)

    def list_active(self, now: datetime | None = None) -> list[Permission]:
        now = self.resolve_now(now)
        materialized = (self.materialize(p, now) for p in self.store.find_all_active())
        return [p for p in materialized if p.status == PermissionStatus.ACTIVE]

    def list_active_for_user(self, user_id: str, now: datetime | None = None) -> list[Permission]:
        now = self.resolve_now(now)
        materialized = (
            self.materialize(p, now) for p in self.store.find_active_by_user(user_id)
        )
        return [p for p in materialized if p.status == PermissionStatus.ACTIVE]

    # ════════════════════════════════════════════════════════════════
    # Active → Active Mutations
    # ════════════════════════════════════════════════════════════════

    def _load_active(self, permission_id: str, attempted: str, now: datetime) -> Permission:
        permission = self._materialize_locked(self._load(permission_id), now)
        if permission.status != PermissionStatus.ACTIVE:
            raise InvalidState(permission_id, permission.status.value, attempted)
        return permission

    def restrict(
        self,
        permission_id: str,
        rule_id: str,
        factor: Decimal = Decimal("0.5"),
        reason: str | None = None,
        triggered_by: TriggerSource = TriggerSource.SYSTEM,
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Scale max_amount and max_percentage by `factor` on behalf of `rule_id`.

        A rule restricts a permission at most once; a repeat is reported as
        ALREADY_APPLIED and leaves the scope alone.
        """
        if not Decimal("0") < factor <= Decimal("1"):
            raise ValueError(f"restrict factor must be in (0, 1], got {factor}")
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._load_active(permission_id, "restrict", now)
            if rule_id in permission.metadata.restricted_by:
                return TransitionResult(TransitionOutcome.ALREADY_APPLIED, permission)

            scope = permission.scope
            previous = {
                "max_amount": str(scope.max_amount),
                "max_percentage": str(scope.max_percentage),
            }
            scope.max_amount = scope.max_amount * factor
            scope.max_percentage = scope.max_percentage * factor
            permission.metadata.restricted = True
            permission.metadata.restricted_by.append(rule_id)
            return self._commit(
                permission, AuditAction.MODIFIED, triggered_by, now,
                EventKind.PERMISSION_MODIFIED,
                reason=reason or f"Scope restricted by rule {rule_id}",
                details={
                    "rule_id": rule_id,
                    "factor": str(factor),
                    "previous": previous,
                    "max_amount": str(scope.max_amount),
                    "max_percentage": str(scope.max_percentage),
                },
            )

    def escalate(
        self,
        permission_id: str,
        rule_id: str,
        threshold: float = 0.6,
        reason: str | None = None,
        triggered_by: TriggerSource = TriggerSource.SYSTEM,
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Hand the permission to community oversight on behalf of `rule_id`.

        Enables community voting, lowers escalation_threshold to `threshold`
        (never raises it) and, when a voting collaborator is wired, opens a
        vote whose id is kept in metadata.pending_vote_id.
        If the commit fails, that vote is withdrawn again.
        """
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._load_active(permission_id, "escalate", now)
            if rule_id in permission.metadata.escalated_by:
                return TransitionResult(TransitionOutcome.ALREADY_APPLIED, permission)

            reason = reason or f"Escalated to community by rule {rule_id}"
            metadata = permission.metadata
            previous_threshold = metadata.escalation_threshold
            metadata.community_voting_enabled = True
            metadata.escalation_threshold = min(previous_threshold, threshold)
            metadata.escalated = True
            metadata.escalated_by.append(rule_id)
            vote_id = None
            if self.voting is not None:
                try:
                    vote_id = self.voting.propose_vote(permission_id, reason)
                    metadata.pending_vote_id = vote_id
                except Exception:
                    logger.exception("Community vote proposal failed for %s", permission_id)
            try:
                return self._commit(
                    permission, AuditAction.ESCALATED, triggered_by, now,
                    EventKind.PERMISSION_ESCALATED,
                    reason=reason,
                    details={
                        "rule_id": rule_id,
                        "previous_threshold": previous_threshold,
                        "escalation_threshold": metadata.escalation_threshold,
                        "vote_id": metadata.pending_vote_id,
                    },
                )
            except DelegationError:
                if vote_id is not None:
                    self._withdraw_vote(permission_id, vote_id)
                raise

    def _withdraw_vote(self, permission_id: str, vote_id: str) -> None:
        try:
            self.voting.withdraw_vote(vote_id)
        except Exception:
            logger.exception(
                "Could not withdraw vote %s for %s after a failed escalation",
                vote_id, permission_id,
            )

    def apply_community_decision(
        self,
        permission_id: str,
        approved: bool,
        vote_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Resolve an escalation. A rejection revokes the permission; an approval
        clears the pending vote and keeps the permission active.
        """
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._materialize_locked(self._load(permission_id), now)
            vote_id = vote_id or permission.metadata.pending_vote_id
            if not approved:
                return self.revoke(
                    permission_id,
                    reason=f"Community rejected permission (vote {vote_id})",
                    triggered_by=TriggerSource.COMMUNITY,
                    now=now,
                    details={"vote_id": vote_id},
                )
            if permission.status != PermissionStatus.ACTIVE:
                raise InvalidState(
                    permission_id, permission.status.value, "approve community decision for"
                )
            permission.metadata.escalated = False
            permission.metadata.pending_vote_id = None
            return self._commit(
                permission, AuditAction.MODIFIED, TriggerSource.COMMUNITY, now,
                EventKind.PERMISSION_MODIFIED,
                reason=f"Community approved permission (vote {vote_id})",
                details={"vote_id": vote_id, "approved": True},
            )

    # ── Conditions ──────────────────────────────────────────────

    def add_condition(
        self,
        permission_id: str,
        condition: PermissionCondition,
        triggered_by: TriggerSource = TriggerSource.USER,
        now: datetime | None = None,
    ) -> TransitionResult:
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._load_active(permission_id, "add condition to", now)
            permission.conditions.append(condition)
            return self._commit(
                permission, AuditAction.MODIFIED, triggered_by, now,
                EventKind.PERMISSION_MODIFIED,
                reason=f"Condition {condition.id} added",
                details={"condition_added": condition.model_dump(mode="json")},
            )

    def update_condition(
        self,
        permission_id: str,
        condition_id: str,
        updates: dict[str, Any],
        triggered_by: TriggerSource = TriggerSource.USER,
        now: datetime | None = None,
    ) -> TransitionResult:
        unknown = set(updates) - _CONDITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update condition field(s): {sorted(unknown)}")
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._load_active(permission_id, "update condition of", now)
            for i, condition in enumerate(permission.conditions):
                if condition.id == condition_id:
                    merged = condition.model_dump() | updates
                    permission.conditions[i] = PermissionCondition.model_validate(merged)
                    break
            else:
                raise NotFound("Condition", condition_id)
            return self._commit(
                permission, AuditAction.MODIFIED, triggered_by, now,
                EventKind.PERMISSION_MODIFIED,
                reason=f"Condition {condition_id} updated",
                details={"condition_id": condition_id, "updates": _jsonable(updates)},
            )

    def remove_condition(
        self,
        permission_id: str,
        condition_id: str,
        triggered_by: TriggerSource = TriggerSource.USER,
        now: datetime | None = None,
    ) -> TransitionResult:
        now = self.resolve_now(now)
        with self.lock_for(permission_id):
            permission = self._load_active(permission_id, "remove condition from", now)
            remaining = [c for c in permission.conditions if c.id != condition_id]
            if len(remaining) == len(permission.conditions):
                raise NotFound("Condition", condition_id)
            permission.conditions = remaining
            return self._commit(
                permission, AuditAction.MODIFIED, triggered_by, now,
                EventKind.PERMISSION_MODIFIED,
                reason=f"Condition {condition_id} removed",
                details={"condition_removed": condition_id},
            )


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in values.items()
    }
