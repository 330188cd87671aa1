"""
Auto-Revoke Rule Engine — applies standing market rules to every active permission.

One evaluation pass takes a fresh MarketCondition and:

1. Snapshots the active rule set (rule edits during a pass apply next pass).
2. Loads every active permission, committing lazy expiries on the way.
3. Evaluates permissions in parallel on a worker pool. For each permission
   the rules run in rule-set order; before each rule the permission is
   re-read under its lock and the rule is skipped unless the permission is
   still active. A restrict or escalate rule already applied to a permission
   does not fire again.
4. Every firing commits one lifecycle transition and produces exactly one
   AutoRevokeEvent, recorded in the store and published to the event sink.

A failure on one permission never stops the others. Failures are collected
and raised together as EvaluationError after the pass, carrying the events
that were committed.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from delegation_engine.autorevoke.rules import SignalInputs, evaluate_signal
from delegation_engine.integrations.events import EventKind, publish_safely
from delegation_engine.integrations.transactions import TransactionHistory
from delegation_engine.permissions.errors import EvaluationError, NotFound
from delegation_engine.permissions.lifecycle import (
    PermissionLifecycleManager,
    TransitionResult,
)
from delegation_engine.permissions.schema import (
    RULE_ACTION_OUTCOMES,
    AutoRevokeAnalytics,
    AutoRevokeEvent,
    AutoRevokeRule,
    MarketCondition,
    Permission,
    PermissionStatus,
    RuleAction,
    TriggerSource,
    default_auto_revoke_rules,
)

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Action Parameters
# ════════════════════════════════════════════════════════════════

DEFAULT_RESTRICT_FACTOR = Decimal("0.5")  # halve max_amount and max_percentage
DEFAULT_ESCALATION_THRESHOLD = 0.6
DEFAULT_MAX_WORKERS = 4

_IMMUTABLE_RULE_FIELDS = {"id", "created_at"}


class AutoRevokeEngine:
    """
    Evaluates the rule set against active permissions and applies actions
    through the lifecycle manager.

    Usage:
        engine = AutoRevokeEngine(manager)
        events = engine.evaluate(market)
    """

    def __init__(
        self,
        manager: PermissionLifecycleManager,
        rules: list[AutoRevokeRule] | None = None,
        history: TransactionHistory | None = None,
        restrict_factor: Decimal = DEFAULT_RESTRICT_FACTOR,
        escalation_threshold: float = DEFAULT_ESCALATION_THRESHOLD,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.manager = manager
        self.store = manager.store
        self.history = history
        self.restrict_factor = restrict_factor
        self.escalation_threshold = escalation_threshold
        self.max_workers = max_workers
        self._rules_lock = threading.Lock()
        self._rules: list[AutoRevokeRule] = []
        for rule in default_auto_revoke_rules() if rules is None else rules:
            self.add_rule(rule)

    # ════════════════════════════════════════════════════════════════
    # Rule Management
    # ════════════════════════════════════════════════════════════════

    def add_rule(self, rule: AutoRevokeRule) -> AutoRevokeRule:
        with self._rules_lock:
            if any(r.id == rule.id for r in self._rules):
                raise ValueError(f"Rule {rule.id} already exists")
            self._rules.append(rule.model_copy(deep=True))
        logger.info(
            "Rule added: %s (%s %s -> %s)",
            rule.label, rule.condition.value, rule.threshold, rule.action.value,
        )
        return rule

    def update_rule(self, rule_id: str, updates: dict[str, Any]) -> AutoRevokeRule:
        forbidden = set(updates) & _IMMUTABLE_RULE_FIELDS
        if forbidden:
            raise ValueError(f"Cannot update rule field(s): {sorted(forbidden)}")
        with self._rules_lock:
            for i, rule in enumerate(self._rules):
                if rule.id == rule_id:
                    updated = AutoRevokeRule.model_validate(rule.model_dump() | updates)
                    self._rules[i] = updated
                    break
            else:
                raise NotFound("Rule", rule_id)
        logger.info("Rule updated: %s %s", rule_id, sorted(updates))
        return updated.model_copy(deep=True)

    def remove_rule(self, rule_id: str) -> AutoRevokeRule:
        with self._rules_lock:
            for i, rule in enumerate(self._rules):
                if rule.id == rule_id:
                    removed = self._rules.pop(i)
                    break
            else:
                raise NotFound("Rule", rule_id)
        logger.info("Rule removed: %s", rule_id)
        return removed

    def get_rule(self, rule_id: str) -> AutoRevokeRule:
        with self._rules_lock:
            for rule in self._rules:
                if rule.id == rule_id:
                    return rule.model_copy(deep=True)
        raise NotFound("Rule", rule_id)

    def list_rules(self) -> list[AutoRevokeRule]:
        with self._rules_lock:
            return [rule.model_copy(deep=True) for rule in self._rules]

    def _snapshot_rules(self) -> list[AutoRevokeRule]:
        with self._rules_lock:
            return [rule.model_copy(deep=True) for rule in self._rules if rule.is_active]

    # ════════════════════════════════════════════════════════════════
    # Evaluation
    # ════════════════════════════════════════════════════════════════

    def evaluate(
        self, market: MarketCondition, now: datetime | None = None
    ) -> list[AutoRevokeEvent]:
        """
        Run one pass of the rule set against every active permission.

        Returns:
            The events produced, grouped by permission in store order.

        Raises:
            EvaluationError: one or more permissions failed; the error carries
                the events committed for the others.
        """
        now = self.manager.resolve_now(now)
        rules = self._snapshot_rules()
        permissions = self.manager.list_active(now)
        if not rules or not permissions:
            return []

        logger.info(
            "Evaluating %d rule(s) against %d active permission(s) "
            "(volatility=%s trend=%s liquidity=%s)",
            len(rules), len(permissions),
            market.volatility, market.trend.value, market.liquidity,
        )

        results: dict[str, list[AutoRevokeEvent]] = {}
        failures: dict[str, Exception] = {}
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="autorevoke"
        ) as pool:
            futures = {
                p.id: pool.submit(self._evaluate_permission, p.id, rules, market, now)
                for p in permissions
            }
            for permission_id, future in futures.items():
                try:
                    results[permission_id] = future.result()
                except EvaluationError as exc:
                    cause = exc.failures[permission_id]
                    logger.error(
                        "Auto-revoke evaluation failed for %s after %d event(s): %s",
                        permission_id, len(exc.events), cause, exc_info=cause,
                    )
                    results[permission_id] = exc.events
                    failures[permission_id] = cause

        events = [e for p in permissions for e in results.get(p.id, [])]
        if failures:
            raise EvaluationError(events, failures)
        return events

    def _evaluate_permission(
        self,
        permission_id: str,
        rules: list[AutoRevokeRule],
        market: MarketCondition,
        now: datetime,
    ) -> list[AutoRevokeEvent]:
        """
        Run the rule set against one permission.

        Any failure is raised as EvaluationError carrying the events already
        produced for this permission: a committed transition always yields its
        event, even when recording it in the store fails.
        """
        events: list[AutoRevokeEvent] = []
        for rule in rules:
            try:
                still_active, event = self._fire_rule(permission_id, rule, market, now)
                if not still_active:
                    break
                if event is None:
                    continue

                events.append(event)
                logger.warning(
                    "Rule %s %s permission %s (signal=%s threshold=%s severity=%s)",
                    rule.id, event.action.value, permission_id,
                    event.signal_value, rule.threshold, rule.severity.value,
                )
                publish_safely(
                    self.manager.sink,
                    EventKind.AUTO_REVOKE_TRIGGERED,
                    event.model_dump(mode="json"),
                )
                self.store.record_event(event)
            except Exception as exc:
                raise EvaluationError(events, {permission_id: exc}) from exc
        return events

    def _fire_rule(
        self,
        permission_id: str,
        rule: AutoRevokeRule,
        market: MarketCondition,
        now: datetime,
    ) -> tuple[bool, AutoRevokeEvent | None]:
        """
        Apply one rule under the permission's lock.

        Returns whether the permission was still active when the rule ran, and
        the event for the transition the rule committed, if any.
        """
        with self.manager.lock_for(permission_id):
            permission = self.store.find_by_id(permission_id)
            if permission is None:
                return False, None
            permission = self.manager.materialize(permission, now)
            if permission.status != PermissionStatus.ACTIVE:
                return False, None

            signal = evaluate_signal(
                rule, SignalInputs(market, permission, now, self.history)
            )
            if not signal.fired or self._already_applied(rule, permission):
                return True, None

            result = self._apply(rule, permission, signal.value, now)
            if not result.applied:
                return True, None
            return True, AutoRevokeEvent(
                rule_id=rule.id,
                permission_id=permission_id,
                user_id=permission.user_id,
                action=RULE_ACTION_OUTCOMES[rule.action],
                reason=_event_reason(rule),
                market_data=market,
                signal_value=signal.value,
                timestamp=now,
                severity=rule.severity,
            )

    @staticmethod
    def _already_applied(rule: AutoRevokeRule, permission: Permission) -> bool:
        if rule.action == RuleAction.RESTRICT:
            return rule.id in permission.metadata.restricted_by
        if rule.action == RuleAction.ESCALATE:
            return rule.id in permission.metadata.escalated_by
        return False

    def _apply(
        self,
        rule: AutoRevokeRule,
        permission: Permission,
        signal_value: float,
        now: datetime,
    ) -> TransitionResult:
        if rule.action == RuleAction.REVOKE:
            return self.manager.revoke(
                permission.id,
                reason=f"Auto-revoked by rule: {rule.label}",
                triggered_by=TriggerSource.SYSTEM,
                now=now,
                details={"rule_id": rule.id, "signal_value": signal_value},
            )
        if rule.action == RuleAction.RESTRICT:
            return self.manager.restrict(
                permission.id,
                rule.id,
                factor=self.restrict_factor,
                reason=f"Restricted by rule: {rule.label}",
                now=now,
            )
        return self.manager.escalate(
            permission.id,
            rule.id,
            threshold=self.escalation_threshold,
            reason=f"Escalated to community by rule: {rule.label}",
            now=now,
        )

    # ════════════════════════════════════════════════════════════════
    # Analytics
    # ════════════════════════════════════════════════════════════════

    def analytics(self, now: datetime | None = None, top: int = 5) -> AutoRevokeAnalytics:
        """Tally recorded events over the last 24 hours and the last week."""
        now = self.manager.resolve_now(now)
        week = self.store.list_events(since=now - timedelta(days=7))
        last_24h = [e for e in week if e.timestamp >= now - timedelta(hours=24)]
        rules = self.list_rules()

        by_rule = Counter(e.rule_id for e in week)
        return AutoRevokeAnalytics(
            total_rules=len(rules),
            active_rules=sum(1 for r in rules if r.is_active),
            events_last_24h=len(last_24h),
            events_last_week=len(week),
            top_triggered_rules=[
                {"rule_id": rule_id, "count": count}
                for rule_id, count in by_rule.most_common(top)
            ],
            severity_distribution=dict(Counter(e.severity.value for e in week)),
            action_distribution=dict(Counter(e.action.value for e in week)),
        )


def summarize_events(events: list[AutoRevokeEvent]) -> dict[str, int]:
    """Counts of events per outcome (revoked / restricted / escalated)."""
    counts = Counter(e.action.value for e in events)
    return {outcome.value: counts.get(outcome.value, 0) for outcome in RULE_ACTION_OUTCOMES.values()}


def _event_reason(rule: AutoRevokeRule) -> str:
    outcome = RULE_ACTION_OUTCOMES[rule.action].value
    return f"Permission {outcome} due to {rule.label} (threshold: {rule.threshold})"
