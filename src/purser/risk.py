"""
Risk policy gate for priced actions.

Every spend is assessed before execution. Checks run in a fixed order and
each violation is reported, so the reason string explains exactly why an
action was blocked, auto-approved, or flagged for approval.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .errors import PolicyViolationError
from .money import cost_to_micros, limit_to_micros, micros_to_usd

logger = logging.getLogger(__name__)


DEFAULT_CATEGORIES = ("market-data", "sentiment", "routing", "execution", "analytics")
DEFAULT_TOKENS = ("USDC", "ETH", "WETH", "AERO", "cbETH")
DEFAULT_CHAINS = ("base", "base-sepolia", "ethereum", "arbitrum", "skale-nebula")


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def raise_to(self, other: "RiskTier") -> "RiskTier":
        return other if other.rank > self.rank else self


_TIER_RANK = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2, RiskTier.CRITICAL: 3}


@dataclass(frozen=True)
class Policy:
    """Declarative risk policy. Immutable for the lifetime of a RiskEngine."""

    daily_limit_usd: float = 50.0
    per_action_limit_usd: float = 5.0
    auto_approve_usd: float = 1.0
    approval_threshold_usd: float = 5.0
    allowed_categories: tuple[str, ...] = DEFAULT_CATEGORIES
    allowed_tokens: tuple[str, ...] = DEFAULT_TOKENS
    allowed_chains: tuple[str, ...] = DEFAULT_CHAINS
    max_slippage_bps: int = 100
    cooldown_seconds: float = 1.0

    def __post_init__(self):
        for name in ("daily_limit_usd", "per_action_limit_usd", "auto_approve_usd", "approval_threshold_usd"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be non-negative")
        # Accept lists from callers but store tuples.
        for name in ("allowed_categories", "allowed_tokens", "allowed_chains"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "Policy":
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        numeric = {
            "PURSER_DAILY_LIMIT_USD": ("daily_limit_usd", float),
            "PURSER_PER_ACTION_LIMIT_USD": ("per_action_limit_usd", float),
            "PURSER_AUTO_APPROVE_USD": ("auto_approve_usd", float),
            "PURSER_APPROVAL_THRESHOLD_USD": ("approval_threshold_usd", float),
            "PURSER_MAX_SLIPPAGE_BPS": ("max_slippage_bps", int),
            "PURSER_COOLDOWN_SECONDS": ("cooldown_seconds", float),
        }
        for var, (name, cast) in numeric.items():
            raw = env.get(var)
            if raw:
                values[name] = cast(raw)
        listed = {
            "PURSER_ALLOWED_CATEGORIES": "allowed_categories",
            "PURSER_ALLOWED_TOKENS": "allowed_tokens",
            "PURSER_ALLOWED_CHAINS": "allowed_chains",
        }
        for var, name in listed.items():
            raw = env.get(var)
            if raw:
                values[name] = tuple(item.strip() for item in raw.split(",") if item.strip())
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            "daily_limit_usd": self.daily_limit_usd,
            "per_action_limit_usd": self.per_action_limit_usd,
            "auto_approve_usd": self.auto_approve_usd,
            "approval_threshold_usd": self.approval_threshold_usd,
            "allowed_categories": list(self.allowed_categories),
            "allowed_tokens": list(self.allowed_tokens),
            "allowed_chains": list(self.allowed_chains),
            "max_slippage_bps": self.max_slippage_bps,
            "cooldown_seconds": self.cooldown_seconds,
        }


@dataclass(frozen=True)
class BudgetImpact:
    before_usd: float
    after_usd: float
    percent_used: float


@dataclass(frozen=True)
class RiskAssessment:
    """Outcome of evaluating one proposed spend."""

    action_id: str
    estimated_cost_usd: float
    tier: RiskTier
    approved: bool
    needs_approval: bool
    reason: str
    violations: tuple[str, ...]
    budget_impact: BudgetImpact

    def to_dict(self) -> dict:
        return {
            "action_id": self.action_id,
            "estimated_cost_usd": self.estimated_cost_usd,
            "tier": self.tier.value,
            "approved": self.approved,
            "needs_approval": self.needs_approval,
            "reason": self.reason,
            "violations": list(self.violations),
            "budget_impact": {
                "before_usd": self.budget_impact.before_usd,
                "after_usd": self.budget_impact.after_usd,
                "percent_used": self.budget_impact.percent_used,
            },
        }


@dataclass(frozen=True)
class ActionRecord:
    timestamp: float
    action_id: str
    cost_usd: float
    approved: bool


@dataclass
class _EngineState:
    spent_micros: int = 0
    last_action_at: Optional[float] = None
    history: list[ActionRecord] = field(default_factory=list)


class RiskEngine:
    """
    Stateful policy gate.

    `assess` only reads state. `record_action` is the single mutator and is
    serialized, re-checking the daily limit under the lock so concurrent
    approvals cannot overspend.
    """

    def __init__(self, policy: Optional[Policy] = None, clock: Callable[[], float] = time.monotonic):
        self._policy = policy or Policy()
        self._clock = clock
        self._state = _EngineState()
        self._lock = threading.Lock()

    @property
    def policy(self) -> Policy:
        return self._policy

    def assess(
        self,
        action_id: str,
        estimated_cost_usd: float,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> RiskAssessment:
        """Evaluate a proposed spend against the policy. Does not mutate state."""
        with self._lock:
            spent_micros = self._state.spent_micros
            last_action_at = self._state.last_action_at
        assessment = self._evaluate(action_id, estimated_cost_usd, metadata or {}, spent_micros, last_action_at)
        if assessment.approved:
            logger.info("%s [%s] %s", action_id, assessment.tier.value, assessment.reason)
        else:
            logger.warning("%s [%s] %s", action_id, assessment.tier.value, assessment.reason)
        return assessment

    def record_action(self, action_id: str, cost_usd: float, approved: bool) -> None:
        """Record an attempted action; only approved actions consume budget."""
        cost_micros = cost_to_micros(cost_usd)
        with self._lock:
            now = self._clock()
            if approved:
                limit_micros = limit_to_micros(self._policy.daily_limit_usd)
                if self._state.spent_micros + cost_micros > limit_micros:
                    blocked = self._evaluate(
                        action_id, cost_usd, {}, self._state.spent_micros, None
                    )
                    self._state.history.append(ActionRecord(time.time(), action_id, cost_usd, False))
                    raise PolicyViolationError(blocked)
                self._state.spent_micros += cost_micros
                self._state.last_action_at = now
            self._state.history.append(ActionRecord(time.time(), action_id, cost_usd, approved))

    def budget_status(self) -> dict:
        with self._lock:
            spent_micros = self._state.spent_micros
        limit_micros = limit_to_micros(self._policy.daily_limit_usd)
        return {
            "limit": micros_to_usd(limit_micros),
            "spent": micros_to_usd(spent_micros),
            "remaining": micros_to_usd(limit_micros - spent_micros),
            "percent_used": _percent(spent_micros, limit_micros),
        }

    def history(self) -> list[ActionRecord]:
        with self._lock:
            return list(self._state.history)

    def reset_daily(self) -> None:
        """Start a new spending day. Cooldown state is kept."""
        with self._lock:
            self._state.spent_micros = 0
            self._state.history = []

    def _evaluate(
        self,
        action_id: str,
        estimated_cost_usd: float,
        metadata: Mapping[str, Any],
        spent_micros: int,
        last_action_at: Optional[float],
    ) -> RiskAssessment:
        policy = self._policy
        cost_micros = cost_to_micros(estimated_cost_usd)
        daily_micros = limit_to_micros(policy.daily_limit_usd)
        violations: list[str] = []
        tier = RiskTier.LOW

        if spent_micros + cost_micros > daily_micros:
            violations.append(
                f"Daily limit exceeded: ${micros_to_usd(spent_micros):.2f} + "
                f"${estimated_cost_usd:.2f} > ${policy.daily_limit_usd:g}"
            )
            tier = RiskTier.CRITICAL

        if cost_micros > limit_to_micros(policy.per_action_limit_usd):
            violations.append(
                f"Per-transaction limit exceeded: ${estimated_cost_usd:.2f} > ${policy.per_action_limit_usd:g}"
            )
            tier = tier.raise_to(RiskTier.HIGH)

        if last_action_at is not None and self._clock() - last_action_at < policy.cooldown_seconds:
            violations.append(f"Cooldown not met: minimum {policy.cooldown_seconds:g}s between actions")

        for key, allowed, label in (
            ("category", policy.allowed_categories, "Category"),
            ("token", policy.allowed_tokens, "Token"),
            ("chain", policy.allowed_chains, "Chain"),
        ):
            value = metadata.get(key)
            if value is not None and value not in allowed:
                violations.append(f"{label} not allowed: {value}")
                tier = tier.raise_to(RiskTier.HIGH)

        slippage = metadata.get("slippage_bps")
        if slippage is not None and slippage > policy.max_slippage_bps:
            violations.append(f"Slippage too high: {slippage}bps > {policy.max_slippage_bps}bps")
            tier = tier.raise_to(RiskTier.MEDIUM)

        if tier == RiskTier.LOW:
            if estimated_cost_usd > policy.approval_threshold_usd:
                tier = RiskTier.HIGH
            elif estimated_cost_usd > policy.auto_approve_usd:
                tier = RiskTier.MEDIUM

        within_auto = estimated_cost_usd <= policy.auto_approve_usd
        if violations:
            reason = f"Blocked: {'; '.join(violations)}"
        elif within_auto:
            reason = (
                f"Auto-approved: ${estimated_cost_usd:.4f} within auto-approve limit "
                f"(${policy.auto_approve_usd:g})"
            )
        else:
            reason = (
                f"Requires approval: ${estimated_cost_usd:.2f} exceeds auto-approve limit "
                f"(${policy.auto_approve_usd:g})"
            )

        return RiskAssessment(
            action_id=action_id,
            estimated_cost_usd=estimated_cost_usd,
            tier=tier,
            approved=not violations,
            needs_approval=not violations and not within_auto,
            reason=reason,
            violations=tuple(violations),
            budget_impact=BudgetImpact(
                before_usd=micros_to_usd(spent_micros),
                after_usd=micros_to_usd(spent_micros + cost_micros),
                percent_used=_percent(spent_micros + cost_micros, daily_micros),
            ),
        )


def _percent(numerator_micros: int, denominator_micros: int) -> float:
    if denominator_micros <= 0:
        return 100.0 if numerator_micros > 0 else 0.0
    return numerator_micros / denominator_micros * 100
