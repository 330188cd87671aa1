"""
Tests for the Permission Lifecycle Manager.

Validates:
- Legal transitions and InvalidState on illegal ones
- Idempotent revocation (no duplicate audit entries)
- max_percentage boundary at grant time
- Terminal immutability and append-only audit enforced by the store
- Atomic commits: a failed write leaves the stored permission untouched
- A failed escalation withdraws the vote it opened
- Per-permission locks are shared while held and dropped once released
- Lazy expiry at the read boundary
- Restriction, escalation, community decisions and condition edits
"""

from __future__ import annotations

import gc
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from delegation_engine.integrations.community import InMemoryCommunityVoting
from delegation_engine.integrations.events import EventKind, EventSink, RecordingEventSink
from delegation_engine.permissions.errors import (
    ConcurrentModification,
    InvalidState,
    NotFound,
    PersistenceFailure,
)
from delegation_engine.permissions.lifecycle import (
    PermissionLifecycleManager,
    TransitionOutcome,
)
from delegation_engine.permissions.schema import (
    AuditAction,
    ConditionType,
    FrequencyLimit,
    FrequencyPeriod,
    PermissionCondition,
    PermissionScope,
    PermissionStatus,
    PermissionType,
    TriggerSource,
)
from delegation_engine.store.memory import InMemoryPermissionStore

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _scope(**overrides) -> PermissionScope:
    values = {
        "tokens": ["ETH"],
        "max_amount": Decimal("5000"),
        "max_percentage": Decimal("0.1"),
        "frequency": FrequencyLimit(max_transactions=10, period=FrequencyPeriod.DAY),
    }
    values.update(overrides)
    return PermissionScope(**values)


class FailingStore(InMemoryPermissionStore):
    """Memory store whose commits can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_commits = False

    def commit(self, permission, entry):
        if self.fail_commits:
            raise RuntimeError("disk full")
        super().commit(permission, entry)


class ExplodingSink(EventSink):
    def publish(self, kind, payload):
        raise RuntimeError("sink down")


class LifecycleTestBase:
    def setup_method(self):
        self.store = FailingStore()
        self.sink = RecordingEventSink()
        self.voting = InMemoryCommunityVoting()
        self.manager = PermissionLifecycleManager(
            self.store, sink=self.sink, voting=self.voting, clock=lambda: NOW
        )

    def _create(self, **kwargs):
        values = {
            "user_id": "user_1",
            "agent_id": "agent_1",
            "type": PermissionType.TRADE_EXECUTION,
            "scope": _scope(),
        }
        values.update(kwargs)
        return self.manager.create(**values)

    def _active(self, **kwargs):
        permission = self._create(**kwargs)
        return self.manager.grant(permission.id).permission

    def _actions(self, permission_id):
        return [e.action for e in self.store.find_by_id(permission_id).audit_log]


class TestCreateAndGrant(LifecycleTestBase):
    def test_create_is_pending_with_created_entry(self):
        permission = self._create()
        stored = self.store.find_by_id(permission.id)
        assert stored.status == PermissionStatus.PENDING
        assert self._actions(permission.id) == [AuditAction.CREATED]
        assert self.sink.kinds() == [EventKind.PERMISSION_CREATED]

    def test_grant_activates(self):
        permission = self._create()
        result = self.manager.grant(permission.id)
        assert result.outcome == TransitionOutcome.APPLIED
        assert result.permission.status == PermissionStatus.ACTIVE
        assert result.permission.granted_at == NOW
        assert self._actions(permission.id) == [AuditAction.CREATED, AuditAction.GRANTED]

    def test_grant_twice_is_invalid(self):
        permission = self._active()
        with pytest.raises(InvalidState):
            self.manager.grant(permission.id)

    def test_grant_unknown_permission(self):
        with pytest.raises(NotFound):
            self.manager.grant("perm_missing")

    def test_full_portfolio_percentage_can_be_granted(self):
        permission = self._create(scope=_scope(max_percentage=Decimal("1.0")))
        assert self.manager.grant(permission.id).applied

    def test_percentage_above_one_rejected_at_grant(self):
        """A scope that slipped past construction-time validation is still refused."""
        scope = _scope().model_copy(update={"max_percentage": Decimal("1.0001")})
        permission = self._create(scope=scope)
        with pytest.raises(InvalidState):
            self.manager.grant(permission.id)
        assert self.store.find_by_id(permission.id).status == PermissionStatus.PENDING

    def test_grant_past_expiry_is_invalid(self):
        permission = self._create(expires_at=NOW - timedelta(hours=1))
        with pytest.raises(InvalidState):
            self.manager.grant(permission.id)


class TestRevocation(LifecycleTestBase):
    def test_revoke_active(self):
        permission = self._active()
        result = self.manager.revoke(permission.id, reason="user request")
        assert result.applied
        stored = self.store.find_by_id(permission.id)
        assert stored.status == PermissionStatus.REVOKED
        assert stored.revoked_at == NOW
        assert stored.audit_log[-1].reason == "user request"
        assert stored.audit_log[-1].triggered_by == TriggerSource.USER

    def test_revoke_twice_is_a_noop(self):
        """The second revoke reports ALREADY_REVOKED and appends nothing."""
        permission = self._active()
        self.manager.revoke(permission.id, reason="first")
        audit_before = len(self.store.find_by_id(permission.id).audit_log)

        result = self.manager.revoke(permission.id, reason="second")

        assert result.outcome == TransitionOutcome.ALREADY_REVOKED
        assert len(self.store.find_by_id(permission.id).audit_log) == audit_before

    def test_revoke_expired_reports_already_expired(self):
        permission = self._active()
        self.manager.expire(permission.id)
        result = self.manager.revoke(permission.id, reason="late")
        assert result.outcome == TransitionOutcome.ALREADY_EXPIRED

    def test_revoke_pending_is_invalid(self):
        permission = self._create()
        with pytest.raises(InvalidState):
            self.manager.revoke(permission.id, reason="never granted")

    def test_every_transition_appends_exactly_one_entry(self):
        permission = self._active()
        self.manager.restrict(permission.id, "rule_a")
        self.manager.escalate(permission.id, "rule_b")
        self.manager.revoke(permission.id, reason="done")
        assert self._actions(permission.id) == [
            AuditAction.CREATED,
            AuditAction.GRANTED,
            AuditAction.MODIFIED,
            AuditAction.ESCALATED,
            AuditAction.REVOKED,
        ]
        is_valid, count, _ = self.store.find_by_id(permission.id).verify_audit_chain()
        assert is_valid and count == 5


class TestStoreGuarantees(LifecycleTestBase):
    """The store itself refuses to rewrite terminal permissions or history."""

    def test_terminal_permission_rejects_field_changes(self):
        permission = self._active()
        self.manager.revoke(permission.id, reason="done")

        tampered = self.store.find_by_id(permission.id)
        tampered.scope.max_amount = Decimal("1")
        entry = tampered.new_audit_entry(AuditAction.MODIFIED, TriggerSource.SYSTEM)
        tampered.audit_log.append(entry)

        with pytest.raises(InvalidState):
            self.store.commit(tampered, entry)
        assert self.store.find_by_id(permission.id).scope.max_amount == Decimal("5000")

    def test_terminal_permission_accepts_audit_appends(self):
        permission = self._active()
        self.manager.revoke(permission.id, reason="done")
        stored = self.store.find_by_id(permission.id)
        entry = stored.new_audit_entry(
            AuditAction.CONDITION_TRIGGERED, TriggerSource.SYSTEM, reason="post-mortem note"
        )
        self.store.append_audit(permission.id, entry)
        assert len(self.store.find_by_id(permission.id).audit_log) == len(stored.audit_log) + 1

    def test_history_cannot_be_rewritten(self):
        permission = self._active()
        stored = self.store.find_by_id(permission.id)
        stored.audit_log[0] = stored.audit_log[0].model_copy(update={"reason": "forged"})
        with pytest.raises(ConcurrentModification):
            self.store.save(stored)

    def test_stale_transition_loses_race(self):
        permission = self._active()
        first = self.store.find_by_id(permission.id)
        second = self.store.find_by_id(permission.id)

        for copy, reason in [(first, "a"), (second, "b")]:
            copy.status = PermissionStatus.REVOKED
            entry = copy.new_audit_entry(AuditAction.REVOKED, TriggerSource.USER, reason=reason)
            copy.audit_log.append(entry)
            if reason == "a":
                self.store.commit(copy, entry)
            else:
                with pytest.raises(ConcurrentModification):
                    self.store.commit(copy, entry)

        stored = self.store.find_by_id(permission.id)
        assert stored.audit_log[-1].reason == "a"
        assert self._actions(permission.id).count(AuditAction.REVOKED) == 1


class TestAtomicity(LifecycleTestBase):
    def test_failed_commit_changes_nothing(self):
        permission = self._active()
        before = self.store.find_by_id(permission.id)
        self.store.fail_commits = True

        with pytest.raises(PersistenceFailure):
            self.manager.revoke(permission.id, reason="will fail")
        with pytest.raises(PersistenceFailure):
            self.manager.restrict(permission.id, "rule_a")

        after = self.store.find_by_id(permission.id)
        assert after == before
        assert after.status == PermissionStatus.ACTIVE
        assert after.scope.max_amount == Decimal("5000")

    def test_failed_commit_publishes_nothing(self):
        permission = self._active()
        published = len(self.sink.events)
        self.store.fail_commits = True
        with pytest.raises(PersistenceFailure):
            self.manager.revoke(permission.id, reason="will fail")
        assert len(self.sink.events) == published

    def test_failed_escalation_withdraws_its_vote(self):
        permission = self._active()
        self.store.fail_commits = True

        with pytest.raises(PersistenceFailure):
            self.manager.escalate(permission.id, "bear_market")

        assert self.voting.proposals == {}
        assert self.store.find_by_id(permission.id).metadata.pending_vote_id is None

    def test_sink_failure_does_not_undo_transition(self):
        manager = PermissionLifecycleManager(self.store, sink=ExplodingSink(), clock=lambda: NOW)
        permission = manager.create(
            user_id="u", agent_id="a", type=PermissionType.DCA_EXECUTION, scope=_scope()
        )
        manager.grant(permission.id)
        manager.revoke(permission.id, reason="sink is down")
        assert self.store.find_by_id(permission.id).status == PermissionStatus.REVOKED


class TestPermissionLocks(LifecycleTestBase):
    def test_lock_is_shared_while_held(self):
        lock = self.manager.lock_for("perm_1")
        assert self.manager.lock_for("perm_1") is lock
        assert self.manager.lock_for("perm_2") is not lock

    def test_released_locks_are_dropped(self):
        for _ in range(3):
            permission = self._active()
            self.manager.revoke(permission.id, reason="done")
        gc.collect()
        assert len(self.manager._locks) == 0


class TestLazyExpiry(LifecycleTestBase):
    """Expiry is applied at the read boundary, not by a background job."""

    def setup_method(self):
        super().setup_method()
        self.permission = self._active(expires_at=NOW + timedelta(hours=1))
        self.later = NOW + timedelta(hours=2)

    def test_get_before_expiry_is_active(self):
        assert self.manager.get(self.permission.id).status == PermissionStatus.ACTIVE

    def test_get_after_expiry_commits_expired(self):
        materialized = self.manager.get(self.permission.id, now=self.later)
        assert materialized.status == PermissionStatus.EXPIRED
        stored = self.store.find_by_id(self.permission.id)
        assert stored.status == PermissionStatus.EXPIRED
        assert stored.audit_log[-1].action == AuditAction.EXPIRED
        assert stored.audit_log[-1].triggered_by == TriggerSource.SYSTEM

    def test_materialize_is_idempotent(self):
        self.manager.get(self.permission.id, now=self.later)
        self.manager.get(self.permission.id, now=self.later)
        assert self._actions(self.permission.id).count(AuditAction.EXPIRED) == 1

    def test_list_active_excludes_expired(self):
        other = self._active()
        active = self.manager.list_active(now=self.later)
        assert [p.id for p in active] == [other.id]
        assert self.manager.list_active_for_user("user_1", now=self.later)[0].id == other.id

    def test_revoke_after_expiry_reports_expired(self):
        result = self.manager.revoke(self.permission.id, reason="too late", now=self.later)
        assert result.outcome == TransitionOutcome.ALREADY_EXPIRED


class TestRestrictAndEscalate(LifecycleTestBase):
    def test_restrict_halves_limits(self):
        permission = self._active()
        result = self.manager.restrict(permission.id, "volatility_high")
        scope = result.permission.scope
        assert scope.max_amount == Decimal("2500")
        assert scope.max_percentage == Decimal("0.05")
        assert result.permission.metadata.restricted
        assert result.permission.metadata.restricted_by == ["volatility_high"]
        assert result.entry.details["previous"]["max_amount"] == "5000"

    def test_restrict_once_per_rule(self):
        permission = self._active()
        self.manager.restrict(permission.id, "volatility_high")
        result = self.manager.restrict(permission.id, "volatility_high")
        assert result.outcome == TransitionOutcome.ALREADY_APPLIED
        assert self.store.find_by_id(permission.id).scope.max_amount == Decimal("2500")

    def test_different_rules_compound(self):
        permission = self._active()
        self.manager.restrict(permission.id, "rule_a")
        self.manager.restrict(permission.id, "rule_b")
        assert self.store.find_by_id(permission.id).scope.max_amount == Decimal("1250")

    def test_restrict_factor_bounds(self):
        permission = self._active()
        with pytest.raises(ValueError):
            self.manager.restrict(permission.id, "rule_a", factor=Decimal("0"))
        with pytest.raises(ValueError):
            self.manager.restrict(permission.id, "rule_a", factor=Decimal("1.5"))

    def test_restrict_revoked_is_invalid(self):
        permission = self._active()
        self.manager.revoke(permission.id, reason="done")
        with pytest.raises(InvalidState):
            self.manager.restrict(permission.id, "rule_a")

    def test_escalate_enables_voting_and_lowers_threshold(self):
        permission = self._active()
        result = self.manager.escalate(permission.id, "bear_market")
        metadata = result.permission.metadata
        assert metadata.community_voting_enabled
        assert metadata.escalation_threshold == 0.6
        assert metadata.escalated_by == ["bear_market"]
        assert metadata.pending_vote_id in self.voting.proposals
        assert result.permission.status == PermissionStatus.ACTIVE

    def test_escalate_never_raises_threshold(self):
        from delegation_engine.permissions.schema import PermissionMetadata

        permission = self._active(metadata=PermissionMetadata(escalation_threshold=0.4))
        result = self.manager.escalate(permission.id, "bear_market")
        assert result.permission.metadata.escalation_threshold == 0.4

    def test_escalate_once_per_rule(self):
        permission = self._active()
        self.manager.escalate(permission.id, "bear_market")
        result = self.manager.escalate(permission.id, "bear_market")
        assert result.outcome == TransitionOutcome.ALREADY_APPLIED
        assert len(self.voting.proposals) == 1

    def test_community_rejection_revokes(self):
        permission = self._active()
        self.manager.escalate(permission.id, "bear_market")
        result = self.manager.apply_community_decision(permission.id, approved=False)
        assert result.permission.status == PermissionStatus.REVOKED
        assert result.entry.triggered_by == TriggerSource.COMMUNITY

    def test_community_approval_clears_pending_vote(self):
        permission = self._active()
        self.manager.escalate(permission.id, "bear_market")
        result = self.manager.apply_community_decision(permission.id, approved=True)
        assert result.permission.status == PermissionStatus.ACTIVE
        assert result.permission.metadata.pending_vote_id is None
        assert not result.permission.metadata.escalated
        assert result.permission.metadata.escalated_by == ["bear_market"]


class TestConditionEdits(LifecycleTestBase):
    def setup_method(self):
        super().setup_method()
        self.permission = self._active()
        self.condition = PermissionCondition(
            type=ConditionType.VOLATILITY_THRESHOLD, parameters={"max_volatility": 0.3}
        )

    def test_add_condition(self):
        result = self.manager.add_condition(self.permission.id, self.condition)
        assert [c.id for c in result.permission.conditions] == [self.condition.id]
        assert result.entry.action == AuditAction.MODIFIED

    def test_update_condition(self):
        self.manager.add_condition(self.permission.id, self.condition)
        result = self.manager.update_condition(
            self.permission.id, self.condition.id, {"parameters": {"max_volatility": 0.5}}
        )
        assert result.permission.conditions[0].parameters == {"max_volatility": 0.5}
        assert result.permission.conditions[0].id == self.condition.id

    def test_update_condition_rejects_id_change(self):
        self.manager.add_condition(self.permission.id, self.condition)
        with pytest.raises(ValueError):
            self.manager.update_condition(self.permission.id, self.condition.id, {"id": "x"})

    def test_update_unknown_condition(self):
        with pytest.raises(NotFound):
            self.manager.update_condition(self.permission.id, "cond_missing", {"priority": 2})

    def test_remove_condition(self):
        self.manager.add_condition(self.permission.id, self.condition)
        result = self.manager.remove_condition(self.permission.id, self.condition.id)
        assert result.permission.conditions == []
        with pytest.raises(NotFound):
            self.manager.remove_condition(self.permission.id, self.condition.id)
