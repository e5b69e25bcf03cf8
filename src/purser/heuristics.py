"""
Deterministic fallback reasoning.

Used when no reasoner is configured or when one fails. Produces the same
Plan / Decision / RunReport structures a reasoner would, from fixed rules
over the raw provider payloads, so every branch is reproducible.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence

from .gateway import CatalogAction
from .money import cost_to_micros, limit_to_micros, micros_to_usd
from .reasoning import Decision, FollowUp, Plan, PlanEntry, RunReport, Verdict
from .signals import Signal, SignalAggregator

logger = logging.getLogger(__name__)


BULLISH_SCORE = 0.15
BULLISH_CHANGE_PCT = 2.0
BEARISH_SCORE = -0.15
BEARISH_CHANGE_PCT = -3.0
MAX_CONCENTRATION_PCT = 60.0
MAX_PRICE_IMPACT_BPS = 50.0

EXECUTION_CATEGORY = "execution"

_TOKEN_RE = re.compile(r"\b(ETH|BTC|SOL|AERO|ARB|OP|LINK|UNI|AAVE)\b", re.IGNORECASE)
_AMOUNT_RE = re.compile(r"\$(\d+)")


def _number(value: Any) -> Optional[float]:
    """Parse 2.35, "2.35" or "2.35%"; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = re.match(r"\s*([-+]?\d+(?:\.\d+)?)", value)
        if match:
            return float(match.group(1))
    return None


@dataclass(frozen=True)
class MarketView:
    """Numeric inputs extracted from provider payloads."""

    price: float = 0.0
    change_24h: Optional[float] = None
    change_24h_text: str = "N/A"
    sentiment_score: float = 0.0
    sentiment_label: str = "neutral"
    headline: str = ""
    best_dex: str = "unknown"
    price_impact_bps: float = 0.0
    concentration_pct: float = 0.0
    concentration_risk: str = "unknown"
    web_summary: str = ""

    @classmethod
    def from_results(
        cls,
        results: Iterable[Mapping[str, Any]],
        aggregator: Optional[SignalAggregator] = None,
    ) -> "MarketView":
        """
        Build a view from execution results shaped `{action_id, success, data}`.

        Failed results and payloads of unexpected shape are ignored; the
        matching fields keep their neutral defaults.
        """
        aggregator = aggregator or SignalAggregator()
        fields: dict[str, Any] = {}
        for result in results:
            data = result.get("data")
            if not result.get("success") or not isinstance(data, Mapping):
                continue
            action_id = result.get("action_id")
            if action_id == "market-data":
                fields["price"] = _number(data.get("price")) or 0.0
                change = data.get("change24h")
                fields["change_24h"] = _number(change)
                if change is not None:
                    fields["change_24h_text"] = change if isinstance(change, str) else f"{float(change):.2f}%"
            elif action_id == "sentiment":
                fields.update(_sentiment_fields(data, aggregator))
            elif action_id == "route-optimizer":
                routes = data.get("routes") if isinstance(data.get("routes"), list) else []
                first = routes[0] if routes and isinstance(routes[0], Mapping) else {}
                fields["best_dex"] = str(data.get("bestRoute") or first.get("dex") or "unknown")
                fields["price_impact_bps"] = _number(first.get("priceImpactBps")) or 0.0
            elif action_id == "portfolio-analytics":
                metrics = data.get("riskMetrics") if isinstance(data.get("riskMetrics"), Mapping) else {}
                positions = data.get("positions") if isinstance(data.get("positions"), list) else []
                largest = _number(metrics.get("largestPositionPct"))
                if not largest and positions and isinstance(positions[0], Mapping):
                    largest = _number(positions[0].get("allocation"))
                fields["concentration_pct"] = largest or 0.0
                fields["concentration_risk"] = str(metrics.get("concentrationRisk") or "unknown")
            elif action_id == "web-search":
                fields["web_summary"] = str(data.get("summary") or "")
        return cls(**fields)


def _sentiment_fields(data: Mapping[str, Any], aggregator: SignalAggregator) -> dict:
    fields: dict[str, Any] = {}
    signals = []
    for raw in data.get("signals") or []:
        try:
            signals.append(Signal.from_dict(raw))
        except (KeyError, TypeError, ValueError):
            continue
    if signals:
        composite = aggregator.aggregate(signals)
        fields["sentiment_score"] = composite.score
        fields["sentiment_label"] = composite.label.value
    else:
        overall = data.get("overall") if isinstance(data.get("overall"), Mapping) else {}
        fields["sentiment_score"] = _number(overall.get("score")) or 0.0
        fields["sentiment_label"] = str(overall.get("label") or "neutral")
    news = data.get("news")
    if isinstance(news, list) and news and isinstance(news[0], Mapping) and news[0].get("title"):
        fields["headline"] = str(news[0]["title"])
    return fields


@dataclass(frozen=True)
class RunStats:
    objective: str
    steps_completed: int
    total_cost_usd: float
    failed_steps: int = 0


class DecisionHeuristics:
    """Rule-based planner, decision function and summarizer."""

    def __init__(
        self,
        follow_up_action: str = "trade-execute",
        max_slippage_bps: int = 50,
        aggregator: Optional[SignalAggregator] = None,
    ):
        self.follow_up_action = follow_up_action
        self.max_slippage_bps = max_slippage_bps
        self.aggregator = aggregator or SignalAggregator()

    # -- plan --

    def plan(self, objective: str, catalog: Sequence[CatalogAction], budget_usd: float) -> Plan:
        token_match = _TOKEN_RE.search(objective)
        token = token_match.group(1).upper() if token_match else "ETH"
        amount_match = _AMOUNT_RE.search(objective)
        amount = amount_match.group(1) if amount_match else "50"

        templates = [
            ("web-search", {"query": f"{token} price analysis market outlook"},
             f"Search for the latest {token} market analysis and news"),
            ("market-data", {"pair": f"{token}/USDC"},
             f"Get {token} price, volume and 24h trend"),
            ("sentiment", {"token": token, "sources": "all"},
             f"Score {token} sentiment from news, index and on-chain sources"),
            ("portfolio-analytics", {"address": "0xdemo", "chain": "base"},
             "Check current allocation and concentration risk"),
            ("route-optimizer", {"tokenIn": "USDC", "tokenOut": token, "amountIn": amount, "chain": "base"},
             f"Find the best swap route for ${amount} USDC to {token}"),
        ]
        candidates = {a.id: a for a in catalog if a.category != EXECUTION_CATEGORY}
        budget_micros = limit_to_micros(max(budget_usd, 0.0))
        spent_micros = 0
        entries: list[PlanEntry] = []

        for action_id, params, why in templates:
            action = candidates.get(action_id)
            if action is None:
                continue
            cost = cost_to_micros(action.cost_usd)
            if spent_micros + cost > budget_micros:
                continue
            spent_micros += cost
            entries.append(PlanEntry(action_id, params, why))

        if not entries:
            for action in sorted(candidates.values(), key=lambda a: (a.cost_usd, a.id)):
                cost = cost_to_micros(action.cost_usd)
                if spent_micros + cost > budget_micros:
                    break
                spent_micros += cost
                entries.append(PlanEntry(action.id, {}, f"Cheapest available research action ({action.name})"))

        rationale = (
            f"Research {token} with {len(entries)} priced calls, gathering context before "
            f"deciding whether to act. Estimated ${micros_to_usd(spent_micros):.4f} of ${budget_usd:.2f}."
        )
        return Plan(entries=tuple(entries), estimated_cost_usd=micros_to_usd(spent_micros), rationale=rationale)

    # -- decide --

    def decide(self, results: Iterable[Mapping[str, Any]]) -> Decision:
        view = MarketView.from_results(results, self.aggregator)
        score = view.sentiment_score
        change = view.change_24h

        bullish = score > BULLISH_SCORE or (change is not None and change > BULLISH_CHANGE_PCT)
        bearish = score < BEARISH_SCORE or (change is not None and change < BEARISH_CHANGE_PCT)
        high_concentration = view.concentration_pct > MAX_CONCENTRATION_PCT
        low_impact = view.price_impact_bps < MAX_PRICE_IMPACT_BPS
        sentiment = f"{view.sentiment_label} (score: {score:.2f})"

        if bullish and not high_concentration and low_impact:
            price = f"${view.price:,.2f}" if view.price > 0 else "data available"
            rationale = (
                f"Analysis supports a buy: price {price} ({view.change_24h_text} 24h), sentiment is {sentiment}, "
                f"portfolio concentration is acceptable ({view.concentration_pct:.1f}%), and best route via "
                f"{view.best_dex} has {view.price_impact_bps:g}bps impact."
            )
            if view.web_summary:
                rationale += f" Web research: {view.web_summary[:150]}."
            if view.headline:
                rationale += f' Latest news: "{view.headline}".'
            return Decision(
                verdict=Verdict.BUY,
                confidence=round(0.65 + min(0.25, abs(score) * 0.5), 2),
                rationale=rationale,
                follow_up=FollowUp(
                    self.follow_up_action,
                    {"routeId": "latest", "maxSlippageBps": self.max_slippage_bps},
                ),
                risk_factors=(
                    f"24h change: {view.change_24h_text}",
                    f"Sentiment: {view.sentiment_label} ({score:.2f})",
                    f"Price impact: {view.price_impact_bps:g}bps via {view.best_dex}",
                ),
            )

        if bearish:
            rationale = (
                f"Analysis suggests caution: price {view.change_24h_text} 24h, sentiment is {sentiment}. "
                "Bearish signals detected; holding to avoid buying into weakness."
            )
            if view.headline:
                rationale += f' Latest: "{view.headline}".'
            return Decision(
                verdict=Verdict.HOLD,
                confidence=round(0.6 + min(0.3, abs(score) * 0.5), 2),
                rationale=rationale,
                risk_factors=(
                    "Bearish sentiment detected",
                    f"24h change: {view.change_24h_text}",
                    "Waiting for reversal confirmation",
                ),
            )

        if high_concentration:
            return Decision(
                verdict=Verdict.HOLD,
                confidence=0.7,
                rationale=(
                    f"Portfolio already has {view.concentration_pct:.1f}% allocation (concentration risk: "
                    f"{view.concentration_risk}). Even though sentiment is {view.sentiment_label}, adding more "
                    "would push concentration beyond acceptable levels."
                ),
                risk_factors=(
                    f"High concentration: {view.concentration_pct:.1f}%",
                    f"Concentration risk: {view.concentration_risk}",
                ),
            )

        if bullish:
            return Decision(
                verdict=Verdict.HOLD,
                confidence=0.6,
                rationale=(
                    f"Signals lean bullish ({sentiment}, {view.change_24h_text} 24h) but the best route via "
                    f"{view.best_dex} has {view.price_impact_bps:g}bps price impact, above the "
                    f"{MAX_PRICE_IMPACT_BPS:g}bps ceiling. Holding until liquidity improves."
                ),
                risk_factors=(
                    f"Price impact: {view.price_impact_bps:g}bps via {view.best_dex}",
                    "Execution cost outweighs signal",
                ),
            )

        rationale = (
            f"Mixed signals: price {view.change_24h_text} 24h, sentiment {view.sentiment_label} "
            f"({score:.2f}). No strong directional conviction; holding and monitoring."
        )
        if view.web_summary:
            rationale += f" Context: {view.web_summary[:100]}."
        return Decision(
            verdict=Verdict.HOLD,
            confidence=0.55,
            rationale=rationale,
            risk_factors=(
                "Mixed/neutral signals",
                f"Sentiment: {view.sentiment_label}",
                "Insufficient conviction for trade",
            ),
        )

    # -- report --

    def summarize(self, stats: RunStats) -> RunReport:
        findings = [
            f"Workflow completed: {stats.steps_completed} steps, ${stats.total_cost_usd:.4f} total cost",
            "Every priced call was risk-assessed before execution",
            "Full audit trail with a receipt for every settled call",
        ]
        if stats.failed_steps:
            findings.insert(1, f"{stats.failed_steps} steps failed or were blocked; see assessments")
        return RunReport(
            summary=(
                f'Completed autonomous research workflow for: "{stats.objective}". '
                f"Executed {stats.steps_completed} steps. Total cost: ${stats.total_cost_usd:.4f}."
            ),
            recommendation=(
                "Continue monitoring market conditions. Re-run analysis in 4-6 hours for updated "
                "signals. Set price alerts for significant moves."
            ),
            key_findings=tuple(findings),
        )
