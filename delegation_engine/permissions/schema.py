"""
Delegation Schema — Pydantic models for permissions, auto-revoke rules and events.

These models are the canonical data structures of the delegation engine. They
govern the shape of permissions in the store, the audit trail attached to each
permission, the standing auto-revoke policy and the events emitted when a
policy fires against a permission.

Key invariants carried by the models themselves:
    - max_percentage is a fraction of portfolio value in [0, 1]
    - amounts are Decimals (serialized as decimal strings), never floats
    - every datetime is timezone-aware UTC
    - audit entries are hash-chained: each entry stores the SHA-256 of
      (previous_hash || canonical_json(entry)), so retroactive edits are
      detectable
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


GENESIS_HASH = "0" * 64  # The "previous hash" of the first audit entry

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


UTCDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class PermissionType(str, enum.Enum):
    """Kinds of authority a user can delegate to an agent."""

    TRADE_EXECUTION = "trade_execution"
    PORTFOLIO_REBALANCING = "portfolio_rebalancing"
    YIELD_OPTIMIZATION = "yield_optimization"
    DCA_EXECUTION = "dca_execution"
    RISK_MANAGEMENT = "risk_management"
    EMERGENCY_ACTIONS = "emergency_actions"


class PermissionStatus(str, enum.Enum):
    """Lifecycle status of a permission."""

    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({PermissionStatus.REVOKED, PermissionStatus.EXPIRED})


class ConditionType(str, enum.Enum):
    """Market / risk predicates that gate whether a permission is exercisable."""

    VOLATILITY_THRESHOLD = "volatility_threshold"
    PRICE_CHANGE = "price_change"
    VOLUME_THRESHOLD = "volume_threshold"
    MARKET_CONDITION = "market_condition"
    PORTFOLIO_VALUE = "portfolio_value"
    TIME_BASED = "time_based"
    COMMUNITY_CONSENSUS = "community_consensus"
    RISK_METRICS = "risk_metrics"


class ConditionOperator(str, enum.Enum):
    AND = "and"
    OR = "or"


class FrequencyPeriod(str, enum.Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TriggerSource(str, enum.Enum):
    """Who caused an audit entry."""

    USER = "user"
    SYSTEM = "system"
    COMMUNITY = "community"
    AI = "ai"


class AuditAction(str, enum.Enum):
    """Lifecycle events recorded in a permission's audit trail."""

    CREATED = "created"
    GRANTED = "granted"
    REVOKED = "revoked"
    EXPIRED = "expired"
    MODIFIED = "modified"
    CONDITION_TRIGGERED = "condition_triggered"
    ESCALATED = "escalated"


class MarketTrend(str, enum.Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    SIDEWAYS = "sideways"


class RuleCondition(str, enum.Enum):
    """Named signals an auto-revoke rule can watch."""

    MARKET_VOLATILITY = "market_volatility"
    MARKET_TREND = "market_trend"
    LIQUIDITY_RATIO = "liquidity_ratio"
    PERMISSION_AGE = "permission_age"
    TRANSACTION_FREQUENCY = "transaction_frequency"


class RuleAction(str, enum.Enum):
    REVOKE = "revoke"
    RESTRICT = "restrict"
    ESCALATE = "escalate"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventAction(str, enum.Enum):
    """Outcome recorded on an AutoRevokeEvent."""

    REVOKED = "revoked"
    RESTRICTED = "restricted"
    ESCALATED = "escalated"


RULE_ACTION_OUTCOMES: dict[RuleAction, EventAction] = {
    RuleAction.REVOKE: EventAction.REVOKED,
    RuleAction.RESTRICT: EventAction.RESTRICTED,
    RuleAction.ESCALATE: EventAction.ESCALATED,
}


# ════════════════════════════════════════════════════════════════
# Market Snapshot
# ════════════════════════════════════════════════════════════════


class MarketCondition(BaseModel):
    """
    A point-in-time market snapshot supplied fresh on every evaluation pass.

    Value type: never cached by the engine beyond a single pass.
    """

    model_config = ConfigDict(frozen=True)

    volatility: float = Field(ge=0, description="Annualized volatility as a fraction (0.6 = 60%)")
    trend: MarketTrend
    volume: float = Field(ge=0)
    liquidity: float = Field(ge=0, description="Liquidity ratio as a fraction")
    sentiment: float | None = None
    timestamp: UTCDatetime = Field(default_factory=utcnow)


# ════════════════════════════════════════════════════════════════
# Permission Scope & Conditions
# ════════════════════════════════════════════════════════════════


class TimeWindow(BaseModel):
    """
    A recurring window during which a permission may be exercised.

    `start`/`end` are HH:MM in `timezone`. A window whose end is earlier than
    its start wraps past midnight; `days` (0=Sunday … 6=Saturday) names the
    day on which the window opens.
    """

    start: str
    end: str
    days: list[int] = Field(default_factory=lambda: list(range(7)))
    timezone: str = "UTC"

    @field_validator("start", "end")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"time must be HH:MM, got {value!r}")
        return value

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError(f"day must be in 0..6, got {day}")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value


class FrequencyLimit(BaseModel):
    max_transactions: int = Field(ge=1)
    period: FrequencyPeriod
    reset_time: str | None = Field(
        default=None, description="HH:MM (UTC) at which day-or-longer periods reset"
    )

    @field_validator("reset_time")
    @classmethod
    def _check_reset(cls, value: str | None) -> str | None:
        if value is not None and not _HHMM.match(value):
            raise ValueError(f"reset_time must be HH:MM, got {value!r}")
        return value


class PermissionScope(BaseModel):
    """Hard limits bounding what a permission allows."""

    tokens: list[str] = Field(
        default_factory=list, description="Token allow-list; empty means unrestricted"
    )
    max_amount: Decimal = Field(ge=0, description="Absolute cap per action")
    max_percentage: Decimal = Field(
        ge=0, le=1, description="Cap per action as a fraction of portfolio value"
    )
    time_windows: list[TimeWindow] = Field(default_factory=list)
    frequency: FrequencyLimit


class PermissionCondition(BaseModel):
    """A soft, re-evaluated predicate gating whether the permission is exercisable."""

    id: str = Field(default_factory=lambda: _new_id("cond"))
    type: ConditionType
    parameters: dict[str, Any] = Field(default_factory=dict)
    operator: ConditionOperator = ConditionOperator.AND
    priority: int = 1
    is_active: bool = True


class PermissionMetadata(BaseModel):
    description: str = ""
    risk_level: RiskLevel = RiskLevel.MEDIUM
    auto_renew: bool = False
    requires_confirmation: bool = False
    community_voting_enabled: bool = True
    escalation_threshold: float = Field(default=0.8, ge=0, le=1)
    version: str = "1.0.0"

    # Engine-maintained markers
    restricted: bool = False
    restricted_by: list[str] = Field(default_factory=list)
    escalated: bool = False
    escalated_by: list[str] = Field(default_factory=list)
    pending_vote_id: str | None = None


# ════════════════════════════════════════════════════════════════
# Audit Trail
# ════════════════════════════════════════════════════════════════


class AuditEntry(BaseModel):
    """
    One immutable lifecycle event on a permission.

    Entries are append-only and chained: `previous_hash` is the hash of the
    preceding entry (GENESIS_HASH for the first), `entry_hash` covers every
    other field of this entry.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("audit"))
    sequence: int = Field(ge=0)
    action: AuditAction
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: UTCDatetime = Field(default_factory=utcnow)
    triggered_by: TriggerSource
    reason: str | None = None
    previous_hash: str = GENESIS_HASH
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """Hash = SHA-256(previous_hash || canonical_json(fields except entry_hash))."""
        hashable = self.model_dump(mode="json", exclude={"entry_hash"})
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (self.previous_hash + canonical).encode("utf-8")
        ).hexdigest()


# ════════════════════════════════════════════════════════════════
# Permission
# ════════════════════════════════════════════════════════════════


class Permission(BaseModel):
    """
    A scoped, conditional grant of authority from a user to an agent.

    Mutated only by the lifecycle manager. Revoked and expired permissions
    accept nothing but audit appends.
    """

    id: str = Field(default_factory=lambda: _new_id("perm"))
    user_id: str
    agent_id: str
    type: PermissionType
    scope: PermissionScope
    conditions: list[PermissionCondition] = Field(default_factory=list)
    status: PermissionStatus = PermissionStatus.PENDING
    granted_at: UTCDatetime | None = None
    expires_at: UTCDatetime | None = None
    revoked_at: UTCDatetime | None = None
    metadata: PermissionMetadata = Field(default_factory=PermissionMetadata)
    audit_log: list[AuditEntry] = Field(default_factory=list)
    created_at: UTCDatetime = Field(default_factory=utcnow)
    updated_at: UTCDatetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= ensure_utc(now)

    def new_audit_entry(
        self,
        action: AuditAction,
        triggered_by: TriggerSource,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """Build (but do not append) the next chained audit entry."""
        previous_hash = self.audit_log[-1].entry_hash if self.audit_log else GENESIS_HASH
        entry = AuditEntry(
            sequence=len(self.audit_log),
            action=action,
            details=details or {},
            timestamp=timestamp or utcnow(),
            triggered_by=triggered_by,
            reason=reason,
            previous_hash=previous_hash,
        )
        return entry.model_copy(update={"entry_hash": entry.compute_hash()})

    def verify_audit_chain(self) -> tuple[bool, int, str]:
        """
        Recompute every hash in the audit trail.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        previous_hash = GENESIS_HASH
        for i, entry in enumerate(self.audit_log):
            if entry.sequence != i:
                return False, i, f"Sequence gap at position {i}: found {entry.sequence}"
            if entry.previous_hash != previous_hash:
                return (
                    False, i,
                    f"Chain break at sequence {i}: previous_hash does not "
                    f"match prior entry's hash",
                )
            expected = entry.compute_hash()
            if entry.entry_hash != expected:
                return (
                    False, i,
                    f"Hash mismatch at sequence {i}: stored={entry.entry_hash[:16]}... "
                    f"computed={expected[:16]}...",
                )
            previous_hash = entry.entry_hash
        return True, len(self.audit_log), f"Audit chain verified: {len(self.audit_log)} entries"


# ════════════════════════════════════════════════════════════════
# Auto-Revoke Policy
# ════════════════════════════════════════════════════════════════


class AutoRevokeRule(BaseModel):
    """A standing policy reacting to a market signal, independent of any permission."""

    id: str = Field(default_factory=lambda: _new_id("rule"))
    name: str | None = None
    condition: RuleCondition
    threshold: float
    action: RuleAction
    severity: Severity = Severity.MEDIUM
    is_active: bool = True
    created_at: UTCDatetime = Field(default_factory=utcnow)

    @property
    def label(self) -> str:
        return self.name or self.id


class AutoRevokeEvent(BaseModel):
    """Write-once record of one rule firing against one permission."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("event"))
    rule_id: str
    permission_id: str
    user_id: str
    action: EventAction
    reason: str
    market_data: MarketCondition
    signal_value: float
    timestamp: UTCDatetime = Field(default_factory=utcnow)
    severity: Severity


class AutoRevokeAnalytics(BaseModel):
    """Tallies of recorded events for observability."""

    total_rules: int
    active_rules: int
    events_last_24h: int
    events_last_week: int
    top_triggered_rules: list[dict[str, Any]] = Field(default_factory=list)
    severity_distribution: dict[str, int] = Field(default_factory=dict)
    action_distribution: dict[str, int] = Field(default_factory=dict)


# ════════════════════════════════════════════════════════════════
# Default Rule Set
# ════════════════════════════════════════════════════════════════


def default_auto_revoke_rules() -> list[AutoRevokeRule]:
    """The standing rule set installed when no rules file is configured."""
    return [
        AutoRevokeRule(
            id="volatility_extreme",
            name="Extreme Volatility Protection",
            condition=RuleCondition.MARKET_VOLATILITY,
            threshold=0.6,
            action=RuleAction.REVOKE,
            severity=Severity.CRITICAL,
        ),
        AutoRevokeRule(
            id="volatility_high",
            name="High Volatility Restriction",
            condition=RuleCondition.MARKET_VOLATILITY,
            threshold=0.4,
            action=RuleAction.RESTRICT,
            severity=Severity.HIGH,
        ),
        AutoRevokeRule(
            id="bear_market",
            name="Bear Market Protection",
            condition=RuleCondition.MARKET_TREND,
            threshold=-0.2,
            action=RuleAction.ESCALATE,
            severity=Severity.HIGH,
        ),
        AutoRevokeRule(
            id="liquidity_crisis",
            name="Liquidity Crisis Protection",
            condition=RuleCondition.LIQUIDITY_RATIO,
            threshold=0.1,
            action=RuleAction.REVOKE,
            severity=Severity.CRITICAL,
        ),
    ]
