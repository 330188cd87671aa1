"""
Action Guard — request-side check of an agent action across a user's permissions.

The guard is the caller of the pure scope evaluator. It materializes the
user's active permissions (so expired ones are committed as expired first),
fills in the per-permission transaction count from the transaction history
collaborator, and evaluates each candidate until one permits the action.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal

from delegation_engine.integrations.transactions import TransactionHistory
from delegation_engine.permissions.conditions import (
    EvaluationContext,
    frequency_window_start,
)
from delegation_engine.permissions.evaluator import ScopeCheckResult, check_action
from delegation_engine.permissions.lifecycle import PermissionLifecycleManager
from delegation_engine.permissions.schema import (
    Permission,
    PermissionStatus,
    PermissionType,
)

logger = logging.getLogger(__name__)


@dataclass
class GuardDecision:
    """Outcome of checking an action against every candidate permission."""

    allowed: bool
    permission_id: str | None
    reason: str
    violations: list[ScopeCheckResult] = field(default_factory=list)

    @property
    def is_allowed(self) -> bool:
        return self.allowed


class ActionGuard:
    def __init__(
        self,
        manager: PermissionLifecycleManager,
        history: TransactionHistory | None = None,
    ) -> None:
        self.manager = manager
        self.history = history

    def _context_for(
        self, permission: Permission, context: EvaluationContext, now: datetime
    ) -> EvaluationContext:
        if self.history is None:
            return context
        since = frequency_window_start(permission.scope.frequency, now)
        count = self.history.count_since(permission.id, since)
        return replace(context, recent_transactions=count)

    def check(
        self,
        user_id: str,
        action: PermissionType,
        token: str,
        amount: Decimal,
        context: EvaluationContext,
        agent_id: str | None = None,
        now: datetime | None = None,
    ) -> GuardDecision:
        """
        Check whether `agent_id` (any agent if None) may perform the action
        for `user_id`. The first permitting permission wins.
        """
        now = self.manager.resolve_now(now)
        candidates = [
            p for p in self.manager.list_active_for_user(user_id, now)
            if agent_id is None or p.agent_id == agent_id
        ]
        if not candidates:
            return GuardDecision(
                allowed=False,
                permission_id=None,
                reason=f"No active permission for user {user_id}"
                + (f" and agent {agent_id}" if agent_id else ""),
            )

        violations = []
        for permission in candidates:
            result = check_action(
                permission, action, token, amount, now,
                self._context_for(permission, context, now),
            )
            if result.is_allowed:
                return GuardDecision(True, permission.id, result.reason, violations)
            violations.append(result)

        logger.debug(
            "Action %s on %s for %s denied by %d permission(s) of user %s",
            action.value, token, amount, len(violations), user_id,
        )
        return GuardDecision(
            allowed=False,
            permission_id=None,
            reason="; ".join(v.reason for v in violations),
            violations=violations,
        )

    def permission_stats(self, user_id: str, now: datetime | None = None) -> dict[str, int]:
        """Counts of the user's permissions by status, plus a total."""
        now = self.manager.resolve_now(now)
        permissions = [
            self.manager.materialize(p, now)
            for p in self.manager.store.find_by_user(user_id)
        ]
        counts = Counter(p.status.value for p in permissions)
        stats = {status.value: counts.get(status.value, 0) for status in PermissionStatus}
        stats["total"] = len(permissions)
        return stats
