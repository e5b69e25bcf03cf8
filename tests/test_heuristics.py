"""Tests for the deterministic planner and decision rules."""

import pytest

from purser.demo import DEMO_PAYLOADS, demo_actions
from purser.gateway import CatalogAction
from purser.heuristics import DecisionHeuristics, MarketView, RunStats
from purser.reasoning import Verdict


def _ok(action_id: str, data: dict) -> dict:
    return {"action_id": action_id, "success": True, "data": data}


def _demo_results() -> list[dict]:
    return [_ok(action_id, payload({})) for action_id, payload in DEMO_PAYLOADS.items() if action_id != "trade-execute"]


class TestPlan:
    def test_full_budget_plans_research_in_order(self):
        plan = DecisionHeuristics().plan("Research ETH and buy $50 if bullish", demo_actions(), 1.0)
        assert [e.action_id for e in plan.entries] == [
            "web-search",
            "market-data",
            "sentiment",
            "portfolio-analytics",
            "route-optimizer",
        ]
        assert plan.estimated_cost_usd == pytest.approx(0.13)
        assert plan.entries[4].parameters["amountIn"] == "50"
        assert plan.entries[1].parameters == {"pair": "ETH/USDC"}

    def test_never_plans_execution(self):
        plan = DecisionHeuristics().plan("buy ETH", demo_actions(), 10.0)
        assert "trade-execute" not in [e.action_id for e in plan.entries]

    def test_respects_budget(self):
        plan = DecisionHeuristics().plan("Analyze SOL", demo_actions(), 0.03)
        assert [e.action_id for e in plan.entries] == ["web-search", "market-data"]
        assert plan.entries[0].parameters["query"].startswith("SOL")

    def test_unknown_catalog_falls_back_to_cheapest(self):
        catalog = [CatalogAction("alpha", 0.3), CatalogAction("beta", 0.1)]
        plan = DecisionHeuristics().plan("anything", catalog, 0.35)
        assert [e.action_id for e in plan.entries] == ["beta"]

    def test_budget_too_small_yields_empty_plan(self):
        plan = DecisionHeuristics().plan("ETH", demo_actions(), 0.005)
        assert plan.entries == ()
        assert plan.estimated_cost_usd == 0.0


class TestMarketView:
    def test_reads_demo_payloads(self):
        view = MarketView.from_results(_demo_results())
        assert view.price == 3412.55
        assert view.change_24h == 2.35
        assert view.change_24h_text == "2.35%"
        assert view.sentiment_label == "positive"
        assert view.best_dex == "aerodrome"
        assert view.price_impact_bps == 12
        assert view.concentration_pct == 55.0

    def test_failed_and_malformed_results_ignored(self):
        view = MarketView.from_results(
            [
                {"action_id": "market-data", "success": False, "data": None},
                _ok("route-optimizer", {"routes": "not-a-list"}),
                {"action_id": "sentiment", "success": True, "data": "raw text"},
            ]
        )
        assert view.price == 0.0
        assert view.change_24h is None
        assert view.best_dex == "unknown"
        assert view.sentiment_score == 0.0

    def test_sentiment_falls_back_to_overall(self):
        view = MarketView.from_results([_ok("sentiment", {"overall": {"score": -0.4, "label": "negative"}})])
        assert view.sentiment_score == -0.4
        assert view.sentiment_label == "negative"


class TestDecide:
    def test_bullish_demo_data_buys(self):
        decision = DecisionHeuristics(max_slippage_bps=40).decide(_demo_results())
        assert decision.verdict == Verdict.BUY
        assert decision.confidence == 0.79
        assert decision.follow_up.action_id == "trade-execute"
        assert decision.follow_up.parameters == {"routeId": "latest", "maxSlippageBps": 40}
        assert "aerodrome" in decision.rationale

    def test_bearish_holds(self):
        decision = DecisionHeuristics().decide(
            [_ok("sentiment", {"overall": {"score": -0.4}}), _ok("market-data", {"change24h": "-4.1%"})]
        )
        assert decision.verdict == Verdict.HOLD
        assert decision.confidence == 0.8
        assert decision.follow_up is None
        assert "Bearish signals detected" in decision.rationale

    def test_concentration_blocks_buy(self):
        decision = DecisionHeuristics().decide(
            [
                _ok("market-data", {"change24h": 2.5}),
                _ok("portfolio-analytics", {"riskMetrics": {"largestPositionPct": 80, "concentrationRisk": "high"}}),
            ]
        )
        assert decision.verdict == Verdict.HOLD
        assert decision.confidence == 0.7
        assert "80.0% allocation" in decision.rationale

    def test_price_impact_blocks_buy(self):
        decision = DecisionHeuristics().decide(
            [
                _ok("market-data", {"change24h": "3%"}),
                _ok("route-optimizer", {"bestRoute": "uniswap-v3", "routes": [{"priceImpactBps": 80}]}),
            ]
        )
        assert decision.verdict == Verdict.HOLD
        assert decision.confidence == 0.6
        assert "80bps" in decision.rationale

    def test_no_data_is_mixed_hold(self):
        decision = DecisionHeuristics().decide([])
        assert decision.verdict == Verdict.HOLD
        assert decision.confidence == 0.55
        assert decision.rationale.startswith("Mixed signals")


def test_summarize_mentions_failures():
    report = DecisionHeuristics().summarize(RunStats("Research ETH", 7, 0.13, failed_steps=2))
    assert "Executed 7 steps" in report.summary
    assert "$0.1300" in report.summary
    assert report.key_findings[1].startswith("2 steps failed")
    assert report.confidence == 0.72
