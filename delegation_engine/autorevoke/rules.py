"""
Auto-Revoke Rule Signals — what each rule condition measures and when it fires.

Each RuleCondition maps to one evaluator in SIGNAL_EVALUATORS, which turns a
market snapshot (and, for the permission-bound signals, the permission and
its transaction history) into a numeric signal plus a fired flag:

    market_volatility       volatility                      fires if > threshold
    market_trend            bearish -0.3, sideways 0,
                            bullish +0.3                    fires if < threshold
    liquidity_ratio         liquidity                       fires if < threshold
    permission_age          days since granted_at           fires if > threshold
    transaction_frequency   transactions in the last 24h    fires if > threshold

Rule sets can be loaded from and written to a JSON file (a list of rule
objects, or an object with a "rules" list).
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from pydantic import TypeAdapter

from delegation_engine.integrations.transactions import TransactionHistory
from delegation_engine.permissions.schema import (
    AutoRevokeRule,
    MarketCondition,
    MarketTrend,
    Permission,
    RuleCondition,
    ensure_utc,
)


TREND_ENCODING: dict[MarketTrend, float] = {
    MarketTrend.BEARISH: -0.3,
    MarketTrend.SIDEWAYS: 0.0,
    MarketTrend.BULLISH: 0.3,
}

TRANSACTION_FREQUENCY_WINDOW = timedelta(hours=24)

_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class RuleSignal:
    value: float
    fired: bool


@dataclass
class SignalInputs:
    """Everything a signal may look at for one (rule, permission) pair."""

    market: MarketCondition
    permission: Permission
    now: datetime
    history: TransactionHistory | None = None


SignalEvaluator = Callable[[AutoRevokeRule, SignalInputs], RuleSignal]


def _market_volatility(rule: AutoRevokeRule, inputs: SignalInputs) -> RuleSignal:
    value = inputs.market.volatility
    return RuleSignal(value, value > rule.threshold)


def _market_trend(rule: AutoRevokeRule, inputs: SignalInputs) -> RuleSignal:
    value = TREND_ENCODING[inputs.market.trend]
    return RuleSignal(value, value < rule.threshold)


def _liquidity_ratio(rule: AutoRevokeRule, inputs: SignalInputs) -> RuleSignal:
    value = inputs.market.liquidity
    return RuleSignal(value, value < rule.threshold)


def _permission_age(rule: AutoRevokeRule, inputs: SignalInputs) -> RuleSignal:
    granted_at = inputs.permission.granted_at
    if granted_at is None:
        return RuleSignal(0.0, False)
    value = (ensure_utc(inputs.now) - granted_at).total_seconds() / _SECONDS_PER_DAY
    return RuleSignal(value, value > rule.threshold)


def _transaction_frequency(rule: AutoRevokeRule, inputs: SignalInputs) -> RuleSignal:
    if inputs.history is None:
        value = 0.0
    else:
        since = ensure_utc(inputs.now) - TRANSACTION_FREQUENCY_WINDOW
        value = float(inputs.history.count_since(inputs.permission.id, since))
    return RuleSignal(value, value > rule.threshold)


SIGNAL_EVALUATORS: dict[RuleCondition, SignalEvaluator] = {
    RuleCondition.MARKET_VOLATILITY: _market_volatility,
    RuleCondition.MARKET_TREND: _market_trend,
    RuleCondition.LIQUIDITY_RATIO: _liquidity_ratio,
    RuleCondition.PERMISSION_AGE: _permission_age,
    RuleCondition.TRANSACTION_FREQUENCY: _transaction_frequency,
}


def evaluate_signal(rule: AutoRevokeRule, inputs: SignalInputs) -> RuleSignal:
    return SIGNAL_EVALUATORS[rule.condition](rule, inputs)


# ════════════════════════════════════════════════════════════════
# Rule Files
# ════════════════════════════════════════════════════════════════

_RULE_LIST = TypeAdapter(list[AutoRevokeRule])


def load_rules_file(path: str | Path) -> list[AutoRevokeRule]:
    """
    Load a rule set from JSON.

    Raises:
        ValueError: duplicate rule ids, or the file does not hold a list of rules.
        pydantic.ValidationError: a rule is malformed.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of rules or an object with 'rules'")
    rules = _RULE_LIST.validate_python(data)
    seen: set[str] = set()
    for rule in rules:
        if rule.id in seen:
            raise ValueError(f"{path}: duplicate rule id {rule.id!r}")
        seen.add(rule.id)
    return rules


def dump_rules(rules: list[AutoRevokeRule], path: str | Path) -> None:
    Path(path).write_text(
        json.dumps({"rules": _RULE_LIST.dump_python(rules, mode="json")}, indent=2),
        encoding="utf-8",
    )
