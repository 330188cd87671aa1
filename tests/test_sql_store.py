"""
Tests for the SQLAlchemy permission store (SQLite file database).

Validates:
- Permissions and audit trails round-trip with their hash chain intact
- Compare-and-swap rejects stale transitions
- Terminal immutability and append-only audit at the database layer
- Write-once auto-revoke events and time-filtered listing
- Chain verification detects rows edited behind the store's back
- The rule engine running over the SQL store
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from delegation_engine.autorevoke.engine import AutoRevokeEngine
from delegation_engine.permissions.errors import (
    ConcurrentModification,
    InvalidState,
    NotFound,
    PersistenceFailure,
)
from delegation_engine.permissions.lifecycle import PermissionLifecycleManager
from delegation_engine.permissions.schema import (
    AuditAction,
    AutoRevokeEvent,
    ConditionType,
    EventAction,
    FrequencyLimit,
    FrequencyPeriod,
    MarketCondition,
    MarketTrend,
    PermissionCondition,
    PermissionScope,
    PermissionStatus,
    PermissionType,
    Severity,
    TimeWindow,
    TriggerSource,
)
from delegation_engine.store.models import AuditEntryDB
from delegation_engine.store.sql import SqlPermissionStore

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
STORM = MarketCondition(volatility=0.7, trend=MarketTrend.SIDEWAYS, volume=1e6, liquidity=0.8)


class SqlTestBase:
    @pytest.fixture(autouse=True)
    def _database(self, tmp_path):
        self.store = SqlPermissionStore(f"sqlite:///{tmp_path / 'delegation.db'}")
        self.store.initialize()
        self.manager = PermissionLifecycleManager(self.store, clock=lambda: NOW)
        yield
        self.store.dispose()

    def _active(self, user_id: str = "user_1"):
        permission = self.manager.create(
            user_id=user_id,
            agent_id="agent_1",
            type=PermissionType.TRADE_EXECUTION,
            scope=PermissionScope(
                tokens=["ETH", "USDC"],
                max_amount=Decimal("5000.25"),
                max_percentage=Decimal("0.1"),
                time_windows=[TimeWindow(start="22:00", end="02:00", days=[1])],
                frequency=FrequencyLimit(
                    max_transactions=10, period=FrequencyPeriod.DAY, reset_time="00:00"
                ),
            ),
            conditions=[
                PermissionCondition(
                    type=ConditionType.VOLATILITY_THRESHOLD,
                    parameters={"max_volatility": 0.3},
                ),
            ],
            expires_at=NOW + timedelta(days=30),
        )
        return self.manager.grant(permission.id).permission


class TestRoundTrip(SqlTestBase):
    def test_permission_round_trip(self):
        permission = self._active()
        loaded = self.store.find_by_id(permission.id)

        assert loaded == permission
        assert loaded.scope.max_amount == Decimal("5000.25")
        assert loaded.expires_at == NOW + timedelta(days=30)
        assert loaded.expires_at.tzinfo is not None
        assert [e.action for e in loaded.audit_log] == [AuditAction.CREATED, AuditAction.GRANTED]

    def test_chain_survives_transitions(self):
        permission = self._active()
        self.manager.restrict(permission.id, "volatility_high")
        self.manager.escalate(permission.id, "bear_market")
        self.manager.revoke(permission.id, reason="done")

        loaded = self.store.find_by_id(permission.id)
        assert loaded.status == PermissionStatus.REVOKED
        assert loaded.scope.max_amount == Decimal("2500.125")
        is_valid, count, _ = loaded.verify_audit_chain()
        assert is_valid and count == 5

    def test_queries(self):
        first = self._active("user_1")
        second = self._active("user_2")
        self.manager.revoke(second.id, reason="done")
        pending = self.manager.create(
            user_id="user_1", agent_id="agent_2",
            type=PermissionType.DCA_EXECUTION,
            scope=first.scope,
        )

        assert [p.id for p in self.store.find_all_active()] == [first.id]
        assert [p.id for p in self.store.find_by_status(PermissionStatus.REVOKED)] == [second.id]
        assert {p.id for p in self.store.find_by_user("user_1")} == {first.id, pending.id}
        assert [p.id for p in self.store.find_active_by_user("user_1")] == [first.id]
        assert len(self.store.find_all()) == 3
        assert self.store.find_by_id("perm_missing") is None


class TestWriteGuards(SqlTestBase):
    def test_stale_commit_is_rejected(self):
        permission = self._active()
        first = self.store.find_by_id(permission.id)
        second = self.store.find_by_id(permission.id)

        first.status = PermissionStatus.REVOKED
        entry = first.new_audit_entry(AuditAction.REVOKED, TriggerSource.USER, reason="a")
        first.audit_log.append(entry)
        self.store.commit(first, entry)

        second.status = PermissionStatus.REVOKED
        entry = second.new_audit_entry(AuditAction.REVOKED, TriggerSource.USER, reason="b")
        second.audit_log.append(entry)
        with pytest.raises(ConcurrentModification):
            self.store.commit(second, entry)

        stored = self.store.find_by_id(permission.id)
        assert stored.audit_log[-1].reason == "a"
        assert len(stored.audit_log) == 3

    def test_terminal_permission_is_immutable(self):
        permission = self._active()
        self.manager.revoke(permission.id, reason="done")

        tampered = self.store.find_by_id(permission.id)
        tampered.status = PermissionStatus.ACTIVE
        entry = tampered.new_audit_entry(AuditAction.GRANTED, TriggerSource.USER)
        tampered.audit_log.append(entry)
        with pytest.raises(InvalidState):
            self.store.commit(tampered, entry)
        assert self.store.find_by_id(permission.id).status == PermissionStatus.REVOKED

    def test_terminal_permission_accepts_audit_append(self):
        permission = self._active()
        self.manager.revoke(permission.id, reason="done")
        stored = self.store.find_by_id(permission.id)
        entry = stored.new_audit_entry(AuditAction.CONDITION_TRIGGERED, TriggerSource.SYSTEM)

        self.store.append_audit(permission.id, entry)

        reloaded = self.store.find_by_id(permission.id)
        assert reloaded.audit_log[-1] == entry
        assert reloaded.verify_audit_chain()[0]

    def test_out_of_order_append_is_rejected(self):
        permission = self._active()
        stored = self.store.find_by_id(permission.id)
        entry = stored.new_audit_entry(AuditAction.CONDITION_TRIGGERED, TriggerSource.SYSTEM)
        self.store.append_audit(permission.id, entry)
        with pytest.raises(ConcurrentModification):
            self.store.append_audit(permission.id, entry)

    def test_append_to_unknown_permission(self):
        stored = self._active()
        entry = stored.new_audit_entry(AuditAction.MODIFIED, TriggerSource.SYSTEM)
        with pytest.raises(NotFound):
            self.store.append_audit("perm_missing", entry)


class TestEvents(SqlTestBase):
    def _event(self, timestamp: datetime) -> AutoRevokeEvent:
        return AutoRevokeEvent(
            rule_id="volatility_extreme",
            permission_id="perm_1",
            user_id="user_1",
            action=EventAction.REVOKED,
            reason="Permission revoked due to Extreme Volatility Protection (threshold: 0.6)",
            market_data=STORM,
            signal_value=0.7,
            timestamp=timestamp,
            severity=Severity.CRITICAL,
        )

    def test_round_trip_and_since_filter(self):
        old = self._event(NOW - timedelta(days=3))
        recent = self._event(NOW)
        self.store.record_event(old)
        self.store.record_event(recent)

        assert self.store.list_events() == [old, recent]
        assert self.store.list_events(since=NOW - timedelta(days=1)) == [recent]

    def test_events_are_write_once(self):
        event = self._event(NOW)
        self.store.record_event(event)
        with pytest.raises(PersistenceFailure):
            self.store.record_event(event)


class TestChainVerification(SqlTestBase):
    def test_clean_store_verifies(self):
        self._active("user_1")
        self._active("user_2")
        results = self.store.verify_chains()
        assert len(results) == 2
        assert all(ok for _, ok, _, _ in results)

    def test_edited_row_is_detected(self):
        permission = self._active()
        with self.store.SessionLocal.begin() as session:
            session.execute(
                update(AuditEntryDB)
                .where(AuditEntryDB.permission_id == permission.id, AuditEntryDB.sequence == 1)
                .values(reason="granted by someone else")
            )

        [(permission_id, ok, position, message)] = self.store.verify_chains()
        assert permission_id == permission.id
        assert not ok
        assert position == 1
        assert "Hash mismatch" in message


class TestEngineOverSql(SqlTestBase):
    def test_pass_commits_and_records(self):
        permission = self._active()
        engine = AutoRevokeEngine(self.manager, max_workers=1)

        events = engine.evaluate(STORM)

        assert [e.action for e in events] == [EventAction.REVOKED]
        assert self.store.find_by_id(permission.id).status == PermissionStatus.REVOKED
        assert self.store.list_events() == events
        assert engine.evaluate(STORM) == []
