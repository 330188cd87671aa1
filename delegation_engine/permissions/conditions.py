"""
Condition Evaluation — pure predicates over caller-supplied state.

Each ConditionType maps to one evaluator function in CONDITION_EVALUATORS.
Evaluators never fetch data: market snapshot, price changes, community
approval and risk score all arrive through the EvaluationContext. A condition
whose data is missing or whose parameters are malformed fails closed.

Combination algebra (deterministic):
    1. Inactive conditions are ignored.
    2. Active conditions are grouped into tiers by `priority`, ascending.
    3. Within a tier, the tier holds if any `or` condition holds, or if the
       tier has `and` conditions and all of them hold.
    4. Tiers are folded left to right with AND; the first failing tier stops
       the fold.

Time windows:
    A window with end < start wraps past midnight. `days` names the day on
    which the window opens, so a Monday 22:00–02:00 window covers Monday
    22:00 through Tuesday 02:00. start == end covers the whole day. The
    comparison happens in the window's own timezone at minute resolution,
    with both bounds inclusive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from itertools import groupby
from typing import Callable
from zoneinfo import ZoneInfo

from delegation_engine.permissions.schema import (
    ConditionOperator,
    ConditionType,
    FrequencyLimit,
    FrequencyPeriod,
    MarketCondition,
    PermissionCondition,
    TimeWindow,
    ensure_utc,
)

logger = logging.getLogger(__name__)


PERIOD_LENGTHS: dict[FrequencyPeriod, timedelta] = {
    FrequencyPeriod.HOUR: timedelta(hours=1),
    FrequencyPeriod.DAY: timedelta(days=1),
    FrequencyPeriod.WEEK: timedelta(days=7),
    FrequencyPeriod.MONTH: timedelta(days=30),
}


@dataclass
class EvaluationContext:
    """State the caller supplies so evaluation stays a pure function."""

    portfolio_value: Decimal
    recent_transactions: int = 0
    market: MarketCondition | None = None
    price_changes: dict[str, float] = field(default_factory=dict)
    community_approval: float | None = None
    risk_score: float | None = None


@dataclass
class ConditionResult:
    condition_id: str
    condition_type: ConditionType
    held: bool
    detail: str


# ════════════════════════════════════════════════════════════════
# Time Windows & Frequency
# ════════════════════════════════════════════════════════════════


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _sunday_based_weekday(moment: datetime) -> int:
    # datetime.weekday() is Monday=0; windows use Sunday=0
    return (moment.weekday() + 1) % 7


def in_time_window(window: TimeWindow, now: datetime) -> bool:
    """Whether `now` falls inside `window`, evaluated in the window's timezone."""
    local = ensure_utc(now).astimezone(ZoneInfo(window.timezone))
    minute = local.hour * 60 + local.minute
    day = _sunday_based_weekday(local)
    start = _minutes(window.start)
    end = _minutes(window.end)

    if start == end:
        return day in window.days
    if start < end:
        return day in window.days and start <= minute <= end

    # Wraps past midnight: the late part belongs to the opening day, the
    # early part to the day after it.
    if minute >= start:
        return day in window.days
    if minute <= end:
        return (day - 1) % 7 in window.days
    return False


def in_any_time_window(windows: list[TimeWindow], now: datetime) -> bool:
    return any(in_time_window(window, now) for window in windows)


def frequency_window_start(frequency: FrequencyLimit, now: datetime) -> datetime:
    """
    Start of the period over which transactions count against the limit.

    Periods are rolling (hour, 24h, 7d, 30d) except a `day` period with a
    `reset_time`, which starts at the most recent occurrence of that UTC time.
    """
    now = ensure_utc(now)
    if frequency.period == FrequencyPeriod.DAY and frequency.reset_time:
        minutes = _minutes(frequency.reset_time)
        anchor = now.replace(
            hour=minutes // 60, minute=minutes % 60, second=0, microsecond=0
        )
        if anchor > now:
            anchor -= timedelta(days=1)
        return anchor
    return now - PERIOD_LENGTHS[frequency.period]


# ════════════════════════════════════════════════════════════════
# Condition Evaluators
# ════════════════════════════════════════════════════════════════


def _missing(condition: PermissionCondition, what: str) -> ConditionResult:
    return ConditionResult(
        condition.id, condition.type, False, f"{what} unavailable for {condition.type.value}"
    )


def _volatility_threshold(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    if context.market is None:
        return _missing(condition, "market snapshot")
    limit = float(condition.parameters["max_volatility"])
    held = context.market.volatility <= limit
    return ConditionResult(
        condition.id, condition.type, held,
        f"volatility {context.market.volatility} vs max {limit}",
    )


def _price_change(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    token = condition.parameters["token"]
    limit = float(condition.parameters["max_change"])
    change = context.price_changes.get(token)
    if change is None:
        return _missing(condition, f"price change for {token}")
    if condition.parameters.get("direction", "any") == "down":
        held = change >= -limit
    else:
        held = abs(change) <= limit
    return ConditionResult(
        condition.id, condition.type, held, f"{token} moved {change} vs limit {limit}"
    )


def _volume_threshold(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    if context.market is None:
        return _missing(condition, "market snapshot")
    minimum = float(condition.parameters["min_volume"])
    held = context.market.volume >= minimum
    return ConditionResult(
        condition.id, condition.type, held,
        f"volume {context.market.volume} vs min {minimum}",
    )


def _market_condition(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    if context.market is None:
        return _missing(condition, "market snapshot")
    allowed = condition.parameters.get("allowed_trends")
    held = True
    details = []
    if allowed is not None:
        held = context.market.trend.value in allowed
        details.append(f"trend {context.market.trend.value} in {allowed}")
    min_liquidity = condition.parameters.get("min_liquidity")
    if min_liquidity is not None:
        held = held and context.market.liquidity >= float(min_liquidity)
        details.append(f"liquidity {context.market.liquidity} >= {min_liquidity}")
    if not details:
        raise ValueError("market_condition needs allowed_trends or min_liquidity")
    return ConditionResult(condition.id, condition.type, held, "; ".join(details))


def _portfolio_value(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    value = context.portfolio_value
    minimum = condition.parameters.get("min_value")
    maximum = condition.parameters.get("max_value")
    if minimum is None and maximum is None:
        raise ValueError("portfolio_value needs min_value or max_value")
    held = True
    if minimum is not None:
        held = held and value >= Decimal(str(minimum))
    if maximum is not None:
        held = held and value <= Decimal(str(maximum))
    return ConditionResult(
        condition.id, condition.type, held,
        f"portfolio value {value} within [{minimum}, {maximum}]",
    )


def _time_based(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    window = TimeWindow.model_validate(condition.parameters)
    held = in_time_window(window, now)
    return ConditionResult(
        condition.id, condition.type, held,
        f"time window {window.start}-{window.end} {window.timezone}",
    )


def _community_consensus(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    if context.community_approval is None:
        return _missing(condition, "community approval")
    minimum = float(condition.parameters.get("min_approval", 0.5))
    held = context.community_approval >= minimum
    return ConditionResult(
        condition.id, condition.type, held,
        f"approval {context.community_approval} vs min {minimum}",
    )


def _risk_metrics(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    max_risk = condition.parameters.get("max_risk_score")
    min_sentiment = condition.parameters.get("min_sentiment")
    if max_risk is None and min_sentiment is None:
        raise ValueError("risk_metrics needs max_risk_score or min_sentiment")
    details = []
    held = True
    if max_risk is not None:
        if context.risk_score is None:
            return _missing(condition, "risk score")
        held = held and context.risk_score <= float(max_risk)
        details.append(f"risk {context.risk_score} <= {max_risk}")
    if min_sentiment is not None:
        if context.market is None or context.market.sentiment is None:
            return _missing(condition, "market sentiment")
        held = held and context.market.sentiment >= float(min_sentiment)
        details.append(f"sentiment {context.market.sentiment} >= {min_sentiment}")
    return ConditionResult(condition.id, condition.type, held, "; ".join(details))


ConditionEvaluator = Callable[
    [PermissionCondition, EvaluationContext, datetime], ConditionResult
]

CONDITION_EVALUATORS: dict[ConditionType, ConditionEvaluator] = {
    ConditionType.VOLATILITY_THRESHOLD: _volatility_threshold,
    ConditionType.PRICE_CHANGE: _price_change,
    ConditionType.VOLUME_THRESHOLD: _volume_threshold,
    ConditionType.MARKET_CONDITION: _market_condition,
    ConditionType.PORTFOLIO_VALUE: _portfolio_value,
    ConditionType.TIME_BASED: _time_based,
    ConditionType.COMMUNITY_CONSENSUS: _community_consensus,
    ConditionType.RISK_METRICS: _risk_metrics,
}


def evaluate_condition(
    condition: PermissionCondition, context: EvaluationContext, now: datetime
) -> ConditionResult:
    """Evaluate a single condition; malformed parameters fail closed."""
    evaluator = CONDITION_EVALUATORS[condition.type]
    try:
        return evaluator(condition, context, now)
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        logger.warning(
            "Condition %s (%s) has invalid parameters: %s",
            condition.id, condition.type.value, exc,
        )
        return ConditionResult(
            condition.id, condition.type, False,
            f"invalid parameters for {condition.type.value}: {exc}",
        )


def _tier_holds(results: list[tuple[PermissionCondition, ConditionResult]]) -> bool:
    and_results = [r.held for c, r in results if c.operator == ConditionOperator.AND]
    or_results = [r.held for c, r in results if c.operator == ConditionOperator.OR]
    if any(or_results):
        return True
    return bool(and_results) and all(and_results)


def evaluate_conditions(
    conditions: list[PermissionCondition],
    context: EvaluationContext,
    now: datetime,
) -> tuple[bool, str | None]:
    """
    Fold all active conditions by priority tier.

    Returns:
        Tuple of (held, reason). `reason` names the failing tier's
        conditions when the fold fails.
    """
    active = sorted(
        (c for c in conditions if c.is_active), key=lambda c: c.priority
    )
    for priority, tier in groupby(active, key=lambda c: c.priority):
        results = [(c, evaluate_condition(c, context, now)) for c in tier]
        if not _tier_holds(results):
            failing = "; ".join(
                f"{c.type.value}[{c.id}]: {r.detail}" for c, r in results if not r.held
            )
            return False, f"conditions at priority {priority} not met ({failing})"
    return True, None
