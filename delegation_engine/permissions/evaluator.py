"""
Scope Evaluation — decides whether a proposed agent action fits a permission.

Every action an agent takes on a user's behalf passes through this check
before execution. The check is a pure function over the permission and the
caller-supplied EvaluationContext; it never touches the store, the clock or
the network. Checks run in a fixed order and stop at the first failure:

0. status is active and the permission has not passed its expiry
1. the permission's type matches the requested action
2. the token is on the allow-list (empty list = any token)
3. amount is within max_amount and max_percentage × portfolio value
4. now falls inside at least one time window (if any are declared)
5. recent transactions are below the frequency limit
6. active conditions hold under the priority-tier fold

A rejection is a SCOPE_VIOLATION result carrying a reason string that names
the failing scope element. It is an expected outcome, never an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from delegation_engine.permissions.conditions import (
    EvaluationContext,
    evaluate_conditions,
    in_any_time_window,
)
from delegation_engine.permissions.schema import (
    Permission,
    PermissionStatus,
    PermissionType,
)

logger = logging.getLogger(__name__)


class PermissionDecision(str, Enum):
    """Result of an action check."""

    PERMITTED = "permitted"
    SCOPE_VIOLATION = "scope_violation"


class ViolatedElement(str, Enum):
    """Which part of the permission rejected the action."""

    STATUS = "status"
    EXPIRY = "expiry"
    TYPE = "type"
    TOKEN = "token"
    MAX_AMOUNT = "max_amount"
    MAX_PERCENTAGE = "max_percentage"
    TIME_WINDOW = "time_window"
    FREQUENCY = "frequency"
    CONDITIONS = "conditions"


@dataclass
class ScopeCheckResult:
    """Result of checking an action against a permission."""

    decision: PermissionDecision
    permission_id: str
    reason: str
    violated: ViolatedElement | None = None
    amount: Decimal | None = None
    limit: Decimal | None = None

    @property
    def is_allowed(self) -> bool:
        return self.decision == PermissionDecision.PERMITTED


def _violation(
    permission: Permission,
    element: ViolatedElement,
    reason: str,
    amount: Decimal | None = None,
    limit: Decimal | None = None,
) -> ScopeCheckResult:
    logger.debug(
        "Scope violation: permission=%s element=%s reason=%s",
        permission.id, element.value, reason,
    )
    return ScopeCheckResult(
        decision=PermissionDecision.SCOPE_VIOLATION,
        permission_id=permission.id,
        reason=reason,
        violated=element,
        amount=amount,
        limit=limit,
    )


def _restriction_note(permission: Permission) -> str:
    if permission.metadata.restricted and permission.metadata.restricted_by:
        return f" (restricted by rule(s): {', '.join(permission.metadata.restricted_by)})"
    return ""


def check_action(
    permission: Permission,
    action: PermissionType,
    token: str,
    amount: Decimal,
    now: datetime,
    context: EvaluationContext,
) -> ScopeCheckResult:
    """
    Check whether an action is permitted under a single permission.

    Args:
        permission: The permission the agent is acting under.
        action: The type of action being attempted.
        token: Token the action touches.
        amount: Amount of the action (Decimal; floats are rejected).
        now: Time of the check.
        context: Portfolio value, recent transaction count and market state.

    Returns:
        ScopeCheckResult with decision and reasoning.
    """
    if not isinstance(amount, Decimal):
        raise TypeError(f"amount must be a Decimal, got {type(amount).__name__}")

    # 0. Status & expiry
    if permission.status != PermissionStatus.ACTIVE:
        return _violation(
            permission, ViolatedElement.STATUS,
            f"Permission {permission.id} is {permission.status.value}, not active",
        )
    if permission.is_expired_at(now):
        return _violation(
            permission, ViolatedElement.EXPIRY,
            f"Permission {permission.id} expired at {permission.expires_at.isoformat()}",
        )

    # 1. Type
    if permission.type != action:
        return _violation(
            permission, ViolatedElement.TYPE,
            f"Permission authorizes {permission.type.value}, not {action.value}",
        )

    scope = permission.scope

    # 2. Token allow-list
    if scope.tokens and token not in scope.tokens:
        return _violation(
            permission, ViolatedElement.TOKEN,
            f"Token {token} is not in the permission's allow-list",
        )

    # 3. Amount caps
    if amount > scope.max_amount:
        return _violation(
            permission, ViolatedElement.MAX_AMOUNT,
            f"Amount {amount} exceeds max amount {scope.max_amount}"
            + _restriction_note(permission),
            amount=amount,
            limit=scope.max_amount,
        )
    percentage_cap = scope.max_percentage * context.portfolio_value
    if amount > percentage_cap:
        return _violation(
            permission, ViolatedElement.MAX_PERCENTAGE,
            f"Amount {amount} exceeds {scope.max_percentage} of portfolio value "
            f"{context.portfolio_value} (= {percentage_cap})"
            + _restriction_note(permission),
            amount=amount,
            limit=percentage_cap,
        )

    # 4. Time windows
    if scope.time_windows and not in_any_time_window(scope.time_windows, now):
        return _violation(
            permission, ViolatedElement.TIME_WINDOW,
            f"{now.isoformat()} is outside every permitted time window",
        )

    # 5. Frequency
    if context.recent_transactions >= scope.frequency.max_transactions:
        return _violation(
            permission, ViolatedElement.FREQUENCY,
            f"{context.recent_transactions} transaction(s) this "
            f"{scope.frequency.period.value} reaches the limit of "
            f"{scope.frequency.max_transactions}",
        )

    # 6. Conditions
    held, reason = evaluate_conditions(permission.conditions, context, now)
    if not held:
        return _violation(permission, ViolatedElement.CONDITIONS, reason or "conditions not met")

    return ScopeCheckResult(
        decision=PermissionDecision.PERMITTED,
        permission_id=permission.id,
        reason=f"Action {action.value} on {token} for {amount} is within scope",
    )


def is_action_permitted(
    permission: Permission,
    action: PermissionType,
    token: str,
    amount: Decimal,
    now: datetime,
    context: EvaluationContext,
) -> bool:
    """Boolean form of check_action for hot-path callers."""
    return check_action(permission, action, token, amount, now, context).is_allowed
