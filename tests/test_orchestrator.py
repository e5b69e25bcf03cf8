"""End-to-end tests for the run state machine."""

import json
import threading
import time

import pytest

from purser.audit import AuditLedger
from purser.demo import demo_catalog, demo_gateway
from purser.errors import ReasonerUnavailableError, RunFinalizedError
from purser.gateway import CallbackSink, CatalogAction, DryRunGateway, ExecutionResult, Settlement, StaticCatalog
from purser.mandate import EnvelopeStatus, LocalMandateEndpoint
from purser.orchestrator import Orchestrator, OrchestratorConfig, Phase
from purser.reasoning import Verdict
from purser.risk import Policy, RiskEngine
from purser.run import RunStatus, Step, StepKind, StepStatus
from purser.signals import Signal


OBJECTIVE = "Research ETH and buy $50 if signals are bullish"


class ScriptedReasoner:
    """Returns canned completions in order; raises when the script runs out."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def complete(self, prompt):
        self.prompts.append(prompt)
        if not self.responses:
            raise ReasonerUnavailableError("script exhausted")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RaisingGateway:
    def __init__(self, failing: set, inner=None):
        self.failing = failing
        self.inner = inner or demo_gateway()

    def execute(self, action, parameters):
        if action.id in self.failing:
            raise RuntimeError("gateway exploded")
        return self.inner.execute(action, parameters)


def _plan_json(*action_ids) -> str:
    return json.dumps(
        {
            "plan": [{"tool": a, "params": {}, "reasoning": f"call {a}"} for a in action_ids],
            "reasoning": f"{len(action_ids)} calls",
        }
    )


HOLD = json.dumps({"decision": "hold", "confidence": 0.6, "reasoning": "wait", "action": None, "riskFactors": []})
REPORT = json.dumps({"summary": "done", "recommendation": "monitor", "keyFindings": ["a"]})


def _orchestrator(**kwargs) -> Orchestrator:
    kwargs.setdefault("catalog", demo_catalog())
    kwargs.setdefault("gateway", demo_gateway())
    kwargs.setdefault("risk", RiskEngine(Policy(cooldown_seconds=0.0)))
    kwargs.setdefault("config", OrchestratorConfig(step_delay_seconds=0.0))
    return Orchestrator(**kwargs)


def _kinds(run):
    return [s.kind.value for s in run.steps]


class TestHappyPath:
    def test_demo_run_completes_with_buy(self):
        events = []
        orchestrator = _orchestrator(sink=CallbackSink(events.append))
        run = orchestrator.run(OBJECTIVE, budget_usd=1.0)

        assert run.status == RunStatus.COMPLETED
        assert _kinds(run) == [
            "discover", "plan", "authorize",
            "execute", "execute", "execute", "execute", "execute",
            "decide", "act", "report",
        ]
        assert run.steps[2].status == StepStatus.SKIPPED
        assert all(s.status == StepStatus.SUCCESS for s in run.steps if s.kind != StepKind.AUTHORIZE)
        assert run.total_cost_usd == pytest.approx(0.23)
        assert run.result["decision"]["verdict"] == Verdict.BUY.value
        assert len(run.result["receipts"]) == 6
        assert run.result["spend_by_action"]["trade-execute"] == 0.1

        phases = [e.data["phase"] for e in events if e.type == "phase:entered"]
        assert phases == ["discover", "plan", "authorize", "execute", "decide", "act", "report", "done"]
        assert events[-1].type == "run:completed"
        assert orchestrator.phase == Phase.DONE

    def test_envelope_authorized_and_fulfilled(self):
        mandates = LocalMandateEndpoint()
        run = _orchestrator(mandates=mandates).run(OBJECTIVE, budget_usd=1.0)

        authorize = run.steps[2]
        assert authorize.status == StepStatus.SUCCESS
        envelope_id = run.result["envelope_id"]
        envelope = mandates.get(envelope_id)
        assert envelope.status == EnvelopeStatus.FULFILLED
        assert envelope.max_value_usd == pytest.approx(0.13 * 1.5)
        fulfillment = mandates.fulfillment(envelope_id)
        assert fulfillment["totalSpent"] == pytest.approx(0.23)
        assert len(fulfillment["receipts"]) == 6
        assert f"via envelope {envelope_id}" in run.steps[3].reasoning

    def test_every_receipt_backed_by_assessment(self):
        ledger = AuditLedger()
        run = _orchestrator(ledger=ledger).run(OBJECTIVE, budget_usd=1.0)
        report = ledger.report()
        assert report["totals"]["receipts"] == 6
        assert report["totals"]["approved"] >= report["totals"]["receipts"]
        assert report["totals"]["spent_usd"] == pytest.approx(run.total_cost_usd)

    def test_report_written(self, tmp_path):
        config = OrchestratorConfig(step_delay_seconds=0.0, report_dir=tmp_path / "runs")
        run = _orchestrator(config=config).run(OBJECTIVE)
        saved = json.loads((tmp_path / "runs" / f"{run.run_id}.json").read_text())
        assert saved["status"] == "completed"
        assert len(saved["steps"]) == len(run.steps)

    def test_step_delay_satisfies_cooldown(self):
        orchestrator = _orchestrator(
            risk=RiskEngine(Policy(cooldown_seconds=0.05)),
            config=OrchestratorConfig(step_delay_seconds=0.1),
        )
        run = orchestrator.run(OBJECTIVE)
        assert all(s.status != StepStatus.FAILED for s in run.steps)


class TestStepFailures:
    def test_failed_step_does_not_fail_run(self):
        reasoner = ScriptedReasoner(_plan_json("market-data", "sentiment", "route-optimizer"), HOLD, REPORT)
        orchestrator = _orchestrator(reasoner=reasoner, gateway=RaisingGateway({"sentiment"}))
        run = orchestrator.run(OBJECTIVE, budget_usd=1.0)

        execute = [s for s in run.steps if s.kind == StepKind.EXECUTE]
        assert len(execute) == 3
        assert [s.status for s in execute] == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SUCCESS]
        assert "gateway exploded" in execute[1].error
        assert run.status == RunStatus.COMPLETED
        assert run.total_cost_usd == pytest.approx(0.03)
        assert run.result["audit_totals"]["failed_receipts"] == 1
        assert "sentiment" not in run.result["spend_by_action"]

    def test_gateway_reported_failure(self):
        gateway = DryRunGateway(failures={"market-data": "Payment rejected (402)"})
        reasoner = ScriptedReasoner(_plan_json("market-data", "web-search"), HOLD, REPORT)
        run = _orchestrator(reasoner=reasoner, gateway=gateway).run(OBJECTIVE)
        execute = [s for s in run.steps if s.kind == StepKind.EXECUTE]
        assert execute[0].error == "Payment rejected (402)"
        assert execute[1].status == StepStatus.SUCCESS

    def test_unknown_action_fails_step(self):
        reasoner = ScriptedReasoner(_plan_json("teleport", "market-data"), HOLD, REPORT)
        run = _orchestrator(reasoner=reasoner).run(OBJECTIVE)
        execute = [s for s in run.steps if s.kind == StepKind.EXECUTE]
        assert execute[0].error == "Action not in catalog: teleport"
        assert execute[1].status == StepStatus.SUCCESS
        assert run.status == RunStatus.COMPLETED

    def test_policy_violation_blocks_call(self):
        catalog = StaticCatalog([CatalogAction("whale-report", 6.0, category="analytics")])
        gateway = DryRunGateway()
        reasoner = ScriptedReasoner(_plan_json("whale-report"), HOLD, REPORT)
        run = _orchestrator(catalog=catalog, gateway=gateway, reasoner=reasoner).run(OBJECTIVE, budget_usd=10.0)
        step = [s for s in run.steps if s.kind == StepKind.EXECUTE][0]
        assert step.status == StepStatus.FAILED
        assert step.error.startswith("Risk policy violation: Per-transaction limit exceeded")
        assert gateway.calls == []
        assert run.total_cost_usd == 0.0

    def test_run_budget_is_a_hard_ceiling(self):
        reasoner = ScriptedReasoner(_plan_json("sentiment", "sentiment", "sentiment"), HOLD, REPORT)
        run = _orchestrator(reasoner=reasoner).run(OBJECTIVE, budget_usd=0.1)
        execute = [s for s in run.steps if s.kind == StepKind.EXECUTE]
        assert [s.status for s in execute] == [StepStatus.SUCCESS, StepStatus.SUCCESS, StepStatus.FAILED]
        assert execute[2].error.startswith("Run budget exceeded")
        assert run.total_cost_usd <= 0.1

    def test_slow_provider_times_out(self):
        class SlowGateway:
            def execute(self, action, parameters):
                time.sleep(0.5)
                return demo_gateway().execute(action, parameters)

        reasoner = ScriptedReasoner(_plan_json("market-data"), HOLD, REPORT)
        config = OrchestratorConfig(step_delay_seconds=0.0, call_timeout_seconds=0.1)
        run = _orchestrator(reasoner=reasoner, gateway=SlowGateway(), config=config).run(OBJECTIVE)
        step = [s for s in run.steps if s.kind == StepKind.EXECUTE][0]
        assert step.status == StepStatus.FAILED
        assert "timed out after 0.1s" in step.error
        assert run.status == RunStatus.COMPLETED


class OverageGateway:
    """Settles each call at the catalog price grown by its tolerance."""

    def __init__(self, price_tolerance=0.10, factor=None, delay=0.0):
        self.price_tolerance = price_tolerance
        self.factor = 1 + price_tolerance if factor is None else factor
        self.delay = delay
        self.paid = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, action, parameters):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delay(len(self.paid)) if callable(self.delay) else self.delay
            time.sleep(delay)
            amount = round(action.cost_usd * self.factor, 6)
            self.paid.append(amount)
            return ExecutionResult(success=True, data={"ok": True}, settlement=Settlement(amount_usd=amount, tx_ref="0xabc"))
        finally:
            with self._lock:
                self.active -= 1


HALF_DOLLAR = StaticCatalog([CatalogAction(id="market-data", cost_usd=0.5, category="market-data")])


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestSettlementAccounting:
    def test_overage_never_pushes_receipts_past_daily_limit(self):
        risk = RiskEngine(Policy(daily_limit_usd=1.0, cooldown_seconds=0.0))
        ledger = AuditLedger()
        reasoner = ScriptedReasoner(_plan_json("market-data", "market-data"), HOLD, REPORT)
        orchestrator = _orchestrator(
            catalog=HALF_DOLLAR, gateway=OverageGateway(), risk=risk, ledger=ledger, reasoner=reasoner
        )
        run = orchestrator.run(OBJECTIVE, budget_usd=5.0)

        execute = [s for s in run.steps if s.kind == StepKind.EXECUTE]
        assert execute[0].status == StepStatus.SUCCESS
        assert execute[1].status == StepStatus.FAILED
        assert "Daily limit exceeded" in execute[1].error
        spent = ledger.report()["totals"]["spent_usd"]
        assert spent == 0.55
        assert spent <= risk.policy.daily_limit_usd
        assert risk.budget_status()["spent"] == spent

    def test_assessed_at_worst_case_price(self):
        ledger = AuditLedger()
        reasoner = ScriptedReasoner(_plan_json("market-data"), HOLD, REPORT)
        _orchestrator(catalog=HALF_DOLLAR, gateway=OverageGateway(), ledger=ledger, reasoner=reasoner).run(OBJECTIVE)
        assert ledger.report()["assessments"][0]["estimated_cost_usd"] == 0.55

    def test_risk_engine_charged_settled_amount(self):
        risk = RiskEngine(Policy(cooldown_seconds=0.0))
        gateway = OverageGateway(price_tolerance=0.0, factor=0.8)
        reasoner = ScriptedReasoner(_plan_json("market-data"), HOLD, REPORT)
        run = _orchestrator(catalog=HALF_DOLLAR, gateway=gateway, risk=risk, reasoner=reasoner).run(OBJECTIVE)
        assert run.total_cost_usd == 0.4
        assert risk.budget_status()["spent"] == 0.4

    def test_late_settlement_after_timeout_is_recorded(self):
        risk = RiskEngine(Policy(cooldown_seconds=0.0))
        ledger = AuditLedger()
        gateway = OverageGateway(price_tolerance=0.0, delay=0.3)
        reasoner = ScriptedReasoner(_plan_json("market-data"), HOLD, REPORT)
        config = OrchestratorConfig(step_delay_seconds=0.0, call_timeout_seconds=0.1)
        run = _orchestrator(
            catalog=HALF_DOLLAR, gateway=gateway, risk=risk, ledger=ledger, reasoner=reasoner, config=config
        ).run(OBJECTIVE)

        step = [s for s in run.steps if s.kind == StepKind.EXECUTE][0]
        assert step.status == StepStatus.FAILED
        assert "timed out" in step.error

        def late_entry_logged():
            return any(e["message"] == "Late settlement for market-data" for e in ledger.report()["entries"])

        assert _wait_for(late_entry_logged)
        assert gateway.paid == [0.5]
        assert ledger.report()["totals"]["spent_usd"] == 0.5
        assert risk.budget_status()["spent"] == 0.5
        assert [r.status.value for r in ledger.receipts()] == ["settled"]

    def test_next_call_waits_for_abandoned_payment(self):
        ledger = AuditLedger()
        gateway = OverageGateway(price_tolerance=0.0, delay=lambda n: 0.3 if n == 0 else 0.0)
        reasoner = ScriptedReasoner(_plan_json("market-data", "market-data"), HOLD, REPORT)
        config = OrchestratorConfig(step_delay_seconds=0.0, call_timeout_seconds=0.2)
        run = _orchestrator(
            catalog=HALF_DOLLAR, gateway=gateway, ledger=ledger, reasoner=reasoner, config=config
        ).run(OBJECTIVE, budget_usd=5.0)

        execute = [s for s in run.steps if s.kind == StepKind.EXECUTE]
        assert [s.status for s in execute] == [StepStatus.FAILED, StepStatus.SUCCESS]
        assert gateway.max_active == 1
        assert run.total_cost_usd == 1.0
        assert len(ledger.receipts()) == 2


class TestSignalSources:
    def _run(self, sources):
        ledger = AuditLedger()
        reasoner = ScriptedReasoner(_plan_json("sentiment"), RuntimeError("socket closed"), REPORT)
        run = _orchestrator(reasoner=reasoner, ledger=ledger, signal_sources=sources).run(OBJECTIVE)
        return run, ledger

    def test_paid_sentiment_alone_buys(self):
        run, _ = self._run({})
        assert run.result["decision"]["verdict"] == Verdict.BUY.value

    def test_unpriced_signals_pooled_into_decision(self):
        def broken():
            raise ConnectionError("feed down")

        sources = {
            "news": lambda: Signal("news", -1.0, 1.0),
            "onchain": lambda: Signal("onchain", -1.0, 1.0),
            "social": broken,
        }
        run, ledger = self._run(sources)
        assert run.result["decision"]["verdict"] == Verdict.HOLD.value
        assert "Bearish" in run.result["decision"]["rationale"]
        messages = [e["message"] for e in ledger.report()["entries"]]
        assert "Collected 2 of 3 unpriced signals" in messages

    def test_no_signals_keeps_paid_composite(self):
        run, _ = self._run({"social": lambda: None})
        assert run.result["decision"]["verdict"] == Verdict.BUY.value


class TestApproval:
    CATALOG = [CatalogAction("deep-report", 2.0, category="analytics")]

    def _run(self, approver):
        reasoner = ScriptedReasoner(_plan_json("deep-report"), HOLD, REPORT)
        orchestrator = _orchestrator(catalog=StaticCatalog(self.CATALOG), reasoner=reasoner, approver=approver)
        run = orchestrator.run(OBJECTIVE, budget_usd=5.0)
        return [s for s in run.steps if s.kind == StepKind.EXECUTE][0]

    def test_declined(self):
        seen = []

        def approver(assessment):
            seen.append(assessment)
            return False

        step = self._run(approver)
        assert step.status == StepStatus.FAILED
        assert step.error.startswith("Approval declined: Requires approval")
        assert seen[0].needs_approval

    def test_granted(self):
        step = self._run(lambda assessment: True)
        assert step.status == StepStatus.SUCCESS
        assert step.cost_usd == 2.0

    def test_raising_approver_declines(self):
        def approver(assessment):
            raise RuntimeError("pager offline")

        assert self._run(approver).status == StepStatus.FAILED

    def test_advisory_without_approver(self):
        assert self._run(None).status == StepStatus.SUCCESS


class TestReasoning:
    def test_degraded_plan_runs_with_no_calls(self):
        reasoner = ScriptedReasoner("Call every tool twice.", "Looks fine to me", "All good")
        gateway = DryRunGateway()
        run = _orchestrator(reasoner=reasoner, gateway=gateway).run(OBJECTIVE)

        assert run.status == RunStatus.COMPLETED
        assert gateway.calls == []
        assert run.steps[1].output["degraded"]
        assert run.result["decision"]["verdict"] == "hold"
        assert run.result["decision"]["rationale"] == "Looks fine to me"
        assert run.result["summary"] == "All good"
        assert run.result["recommendation"] == "See full logs"

    def test_plan_failure_fails_run(self):
        reasoner = ScriptedReasoner(ReasonerUnavailableError("quota exhausted"))
        run = _orchestrator(reasoner=reasoner).run(OBJECTIVE)

        assert run.status == RunStatus.FAILED
        assert "Planning failed" in run.error
        assert run.steps[1].status == StepStatus.FAILED
        assert run.result is not None
        assert run.result["total_steps"] == 2

    def test_decide_failure_falls_back(self):
        reasoner = ScriptedReasoner(
            _plan_json("market-data", "sentiment"), RuntimeError("socket closed"), REPORT
        )
        run = _orchestrator(reasoner=reasoner).run(OBJECTIVE)
        decide = [s for s in run.steps if s.kind == StepKind.DECIDE][0]
        assert decide.status == StepStatus.SUCCESS
        assert decide.reasoning.startswith("Reasoner unavailable")
        assert run.status == RunStatus.COMPLETED

    def test_follow_up_from_reasoner_runs_act(self):
        buy = json.dumps(
            {
                "decision": "buy",
                "confidence": 0.8,
                "reasoning": "strong",
                "action": {"tool": "trade-execute", "params": {"routeId": "r1", "maxSlippageBps": 30}},
            }
        )
        reasoner = ScriptedReasoner(_plan_json("market-data"), buy, REPORT)
        gateway = DryRunGateway()
        run = _orchestrator(reasoner=reasoner, gateway=gateway).run(OBJECTIVE)
        assert [c[0] for c in gateway.calls] == ["market-data", "trade-execute"]
        act = [s for s in run.steps if s.kind == StepKind.ACT][0]
        assert act.status == StepStatus.SUCCESS

    def test_follow_up_slippage_checked(self):
        buy = json.dumps(
            {"decision": "buy", "action": {"tool": "trade-execute", "params": {"maxSlippageBps": 900}}}
        )
        reasoner = ScriptedReasoner(_plan_json("market-data"), buy, REPORT)
        run = _orchestrator(reasoner=reasoner).run(OBJECTIVE)
        act = [s for s in run.steps if s.kind == StepKind.ACT][0]
        assert act.status == StepStatus.FAILED
        assert "Slippage too high" in act.error


class TestRunFailures:
    def test_discovery_failure_fails_run(self):
        class BrokenCatalog:
            def list_actions(self):
                raise ConnectionError("merchant unreachable")

        run = _orchestrator(catalog=BrokenCatalog()).run(OBJECTIVE)
        assert run.status == RunStatus.FAILED
        assert _kinds(run) == ["discover"]
        assert run.steps[0].status == StepStatus.FAILED
        assert "merchant unreachable" in run.error
        assert run.result["summary"]

    def test_sink_failure_is_ignored(self):
        def explode(event):
            raise RuntimeError("dashboard down")

        run = _orchestrator(sink=CallbackSink(explode)).run(OBJECTIVE)
        assert run.status == RunStatus.COMPLETED

    def test_negative_budget_rejected(self):
        with pytest.raises(ValueError):
            _orchestrator().run(OBJECTIVE, budget_usd=-1)

    def test_finalized_run_is_read_only(self):
        run = _orchestrator().run(OBJECTIVE)
        with pytest.raises(RunFinalizedError):
            run.add_step(Step(id="late", kind=StepKind.REPORT))


class TestCancel:
    def test_cancel_skips_remaining_steps(self):
        orchestrator = None

        class CancellingGateway:
            def __init__(self):
                self.inner = demo_gateway()

            def execute(self, action, parameters):
                orchestrator.cancel()
                return self.inner.execute(action, parameters)

        orchestrator = _orchestrator(gateway=CancellingGateway())
        run = orchestrator.run(OBJECTIVE)

        execute = [s for s in run.steps if s.kind == StepKind.EXECUTE]
        assert execute[0].status == StepStatus.SUCCESS
        assert all(s.status == StepStatus.SKIPPED for s in execute[1:])
        assert len(execute) == 5
        assert run.status == RunStatus.COMPLETED
        assert run.total_cost_usd == pytest.approx(0.02)

    def test_cancel_flag_resets_per_run(self):
        orchestrator = _orchestrator()
        orchestrator.cancel()
        assert orchestrator.cancelled
        run = orchestrator.run(OBJECTIVE)
        assert not orchestrator.cancelled
        assert run.status == RunStatus.COMPLETED
