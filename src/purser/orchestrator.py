"""
The run state machine.

Discover -> Plan -> Authorize -> Execute (xN) -> Decide -> Act (optional)
-> Report -> Done, with any unrecoverable error going straight to Failed.

Every priced call is risk-assessed first, receipted after, and written to
the audit ledger. Per-step failures are recorded on the step and the run
moves on; only a missing catalog or plan, or an internal error, fails the
whole run. A failed run still carries its partial steps and a report.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from .audit import AuditLedger, SettlementStatus, SpendReceipt
from .errors import (
    PolicyViolationError,
    ProviderCancelledError,
    ProviderTimeoutError,
    PurserError,
    RunFailureError,
    UnknownActionError,
)
from .gateway import (
    CatalogAction,
    CatalogProvider,
    Event,
    EventSink,
    ExecutionResult,
    NullSink,
    PaymentGateway,
    estimate_cost,
    index_catalog,
)
from .heuristics import DecisionHeuristics, RunStats
from .mandate import Envelope, EnvelopeSpec, MandateEndpoint
from .money import cost_to_micros, micros_to_usd
from .reasoning import (
    Decision,
    Degraded,
    Err,
    Ok,
    Outcome,
    Plan,
    Prompt,
    Reasoner,
    RunReport,
    decide_prompt,
    parse_structured,
    plan_prompt,
    report_prompt,
)
from .risk import DEFAULT_CATEGORIES, RiskAssessment, RiskEngine
from .run import RunState, RunStatus, Step, StepKind, StepStatus, new_id
from .signals import Signal, collect_signals
from .storage import write_run_report

logger = logging.getLogger(__name__)


POLL_INTERVAL_SECONDS = 0.05
EXECUTION_CATEGORY = "execution"


class Phase(str, Enum):
    DISCOVER = "discover"
    PLAN = "plan"
    AUTHORIZE = "authorize"
    EXECUTE = "execute"
    DECIDE = "decide"
    ACT = "act"
    REPORT = "report"
    DONE = "done"
    FAILED = "failed"


@dataclass
class OrchestratorConfig:
    step_delay_seconds: float = 1.0
    call_timeout_seconds: float = 30.0
    envelope_multiplier: float = 1.5
    envelope_ttl_seconds: int = 600
    envelope_categories: tuple[str, ...] = DEFAULT_CATEGORIES
    default_envelope_estimate_usd: float = 0.5
    report_dir: Optional[Path] = None
    max_workers: int = 4


@dataclass
class _RunContext:
    run: RunState
    catalog: dict[str, CatalogAction] = field(default_factory=dict)
    envelope: Optional[Envelope] = None
    results: list[dict] = field(default_factory=list)
    decision: Optional[Decision] = None
    priced_calls: int = 0
    in_flight: Optional[threading.Event] = None
    late_settlements: list[float] = field(default_factory=list)


class Orchestrator:
    """Drives one run at a time through the phase state machine."""

    def __init__(
        self,
        catalog: CatalogProvider,
        gateway: PaymentGateway,
        risk: Optional[RiskEngine] = None,
        ledger: Optional[AuditLedger] = None,
        reasoner: Optional[Reasoner] = None,
        heuristics: Optional[DecisionHeuristics] = None,
        mandates: Optional[MandateEndpoint] = None,
        sink: Optional[EventSink] = None,
        approver: Optional[Callable[[RiskAssessment], bool]] = None,
        signal_sources: Optional[Mapping[str, Callable[[], Optional[Signal]]]] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.risk = risk or RiskEngine()
        self.ledger = ledger or AuditLedger()
        self.reasoner = reasoner
        self.heuristics = heuristics or DecisionHeuristics()
        self.mandates = mandates
        self.sink = sink or NullSink()
        self.approver = approver
        self.signal_sources = dict(signal_sources or {})
        self.config = config or OrchestratorConfig()
        self.phase = Phase.DONE
        self._cancel = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="purser-call",
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, objective: str, budget_usd: float = 1.0) -> RunState:
        """Run the full pipeline. Always returns a finalized RunState."""
        if budget_usd < 0:
            raise ValueError("budget_usd must be non-negative")
        self._cancel.clear()
        ctx = _RunContext(run=RunState(run_id=new_id("run"), objective=objective, budget_usd=budget_usd))
        run = ctx.run
        logger.info("Run %s started: %s (budget $%.2f)", run.run_id, objective, budget_usd)
        self.ledger.log("info", "run", f"Run started: {objective}", {"run_id": run.run_id, "budget_usd": budget_usd})
        self._emit("run:started", {"run_id": run.run_id, "objective": objective, "budget_usd": budget_usd})

        try:
            self._discover(ctx)
            plan = self._plan(ctx)
            self._authorize(ctx, plan)
            self._execute(ctx, plan)
            self._decide(ctx)
            if ctx.decision is not None and ctx.decision.follow_up is not None:
                self._act(ctx)
            result = self._report(ctx)
            self._fulfill(ctx)
            self._enter(Phase.DONE)
            run.finalize(RunStatus.COMPLETED, result=result)
        except Exception as e:
            if not isinstance(e, PurserError):
                logger.exception("Run %s hit an internal error", run.run_id)
            self._enter(Phase.FAILED)
            self._fail_open_steps(run, str(e))
            error = str(e) or type(e).__name__
            self.ledger.log("error", "run", f"Run failed: {error}", {"run_id": run.run_id})
            run.finalize(RunStatus.FAILED, result=self._compose_result(ctx, self._summarize(ctx)), error=error)

        logger.info(
            "Run %s %s: %d steps, $%.4f spent",
            run.run_id,
            run.status.value,
            len(run.steps),
            run.total_cost_usd,
        )
        self._emit("run:completed", run.to_dict())
        self._write_report(run)
        return run

    def cancel(self) -> None:
        """Abandon in-flight external calls and skip the remaining plan entries."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _discover(self, ctx: _RunContext) -> None:
        self._enter(Phase.DISCOVER)
        step = self._open_step(ctx.run, StepKind.DISCOVER)
        try:
            actions = self._call("discover", self.catalog.list_actions)
        except Exception as e:
            self._close(step.fail(_describe(e), reasoning="Could not list priced actions"))
            raise RunFailureError(f"Discovery failed: {_describe(e)}") from e
        ctx.catalog = index_catalog(actions)
        self._close(
            step.succeed(
                reasoning=f"Discovered {len(ctx.catalog)} priced actions",
                output={"count": len(ctx.catalog), "actions": sorted(ctx.catalog)},
            )
        )

    def _plan(self, ctx: _RunContext) -> Plan:
        self._enter(Phase.PLAN)
        run = ctx.run
        step = self._open_step(run, StepKind.PLAN)
        budget = min(run.budget_remaining_usd, self.risk.budget_status()["remaining"])
        catalog = list(ctx.catalog.values())

        if self.reasoner is None:
            plan = self.heuristics.plan(run.objective, catalog, budget)
        else:
            outcome = self._consult("plan", plan_prompt(run.objective, catalog, budget))
            if isinstance(outcome, Err):
                self._close(step.fail(outcome.reason, reasoning="Reasoner could not produce a plan"))
                raise RunFailureError(f"Planning failed: {outcome.reason}")
            plan = Plan.from_outcome(outcome)
            if plan.degraded:
                logger.warning("Plan response was not structured; continuing with an empty plan")

        if plan.estimated_cost_usd is None:
            plan = Plan(
                entries=plan.entries,
                estimated_cost_usd=estimate_cost(ctx.catalog, (e.action_id for e in plan.entries)),
                rationale=plan.rationale,
                degraded=plan.degraded,
            )
        logger.info("Planned %d steps, estimated $%.4f", len(plan.entries), plan.estimated_cost_usd)
        self._close(step.succeed(reasoning=plan.rationale, output=plan.to_dict()))
        return plan

    def _authorize(self, ctx: _RunContext, plan: Plan) -> None:
        self._enter(Phase.AUTHORIZE)
        step = self._open_step(ctx.run, StepKind.AUTHORIZE)
        if self.mandates is None:
            self._close(step.skip("No mandate endpoint configured; per-call risk gating only"))
            return

        estimate = plan.estimated_cost_usd or self.config.default_envelope_estimate_usd
        spec = EnvelopeSpec(
            description=ctx.run.objective,
            max_value_usd=round(estimate * self.config.envelope_multiplier, 6),
            allowed_categories=tuple(self.config.envelope_categories),
            expires_in_seconds=self.config.envelope_ttl_seconds,
            action_ids=tuple(e.action_id for e in plan.entries),
        )
        try:
            envelope = self._call("authorize", self.mandates.create_envelope, spec)
        except Exception as e:
            logger.warning("Envelope registration failed (non-blocking): %s", _describe(e))
            self.ledger.log("warn", "mandate", f"Envelope registration failed: {_describe(e)}")
            self._close(step.fail(_describe(e), reasoning="Envelope failed; proceeding with per-call risk gating"))
            return

        ctx.envelope = envelope
        self.ledger.log("info", "mandate", f"Envelope authorized: {envelope.envelope_id}", envelope.to_dict())
        self._emit("mandate:authorized", envelope.to_dict())
        self._close(
            step.succeed(
                reasoning=(
                    f"Envelope authorized for ${envelope.max_value_usd:.2f} "
                    f"across {len(spec.action_ids)} actions"
                ),
                output=envelope.to_dict(),
            )
        )

    def _execute(self, ctx: _RunContext, plan: Plan) -> None:
        self._enter(Phase.EXECUTE)
        for i, entry in enumerate(plan.entries):
            if self.cancelled:
                step = self._open_step(ctx.run, StepKind.EXECUTE, entry.action_id)
                self._close(step.skip("Run cancelled before this step"))
                continue
            logger.info("Step %d/%d: %s", i + 1, len(plan.entries), entry.action_id)
            outcome = self._priced_call(ctx, StepKind.EXECUTE, entry.action_id, entry.parameters)
            ctx.results.append(outcome)

    def _decide(self, ctx: _RunContext) -> None:
        self._enter(Phase.DECIDE)
        step = self._open_step(ctx.run, StepKind.DECIDE)
        note = ""
        results = self._decision_inputs(ctx)
        if self.reasoner is None:
            decision = self.heuristics.decide(results)
        else:
            prompt = decide_prompt(
                [_result_summary(r) for r in results],
                ctx.run.budget_remaining_usd,
                self.risk.policy.max_slippage_bps,
            )
            outcome = self._consult("decide", prompt)
            if isinstance(outcome, Err):
                note = f"Reasoner unavailable ({outcome.reason}); used deterministic fallback. "
                decision = self.heuristics.decide(results)
            else:
                decision = Decision.from_outcome(outcome)

        ctx.decision = decision
        logger.info("Decision: %s (confidence %.0f%%)", decision.verdict.value, decision.confidence * 100)
        self.ledger.log("info", "decide", f"Decision: {decision.verdict.value}", decision.to_dict())
        self._close(step.succeed(reasoning=note + decision.rationale, output=decision.to_dict()))

    def _decision_inputs(self, ctx: _RunContext) -> list[dict]:
        """
        Execution results, plus unpriced signal reads when sources are configured.

        The sources are read concurrently and joined before aggregation. Any
        signals they return are pooled with the paid sentiment payload's
        signals into one trailing sentiment result, which the decision uses
        in place of the paid composite.
        """
        if not self.signal_sources:
            return list(ctx.results)
        collected = collect_signals(
            self.signal_sources,
            timeout=self.config.call_timeout_seconds,
            max_workers=self.config.max_workers,
        )
        self.ledger.log(
            "info",
            "signals",
            f"Collected {len(collected)} of {len(self.signal_sources)} unpriced signals",
            {"signals": [s.to_dict() for s in collected]},
        )
        if not collected:
            return list(ctx.results)
        pooled: list[Any] = []
        for result in ctx.results:
            data = result.get("data")
            if result.get("action_id") == "sentiment" and result.get("success") and isinstance(data, Mapping):
                pooled.extend(data.get("signals") or [])
        pooled.extend(s.to_dict() for s in collected)
        return [*ctx.results, {"action_id": "sentiment", "success": True, "data": {"signals": pooled}}]

    def _act(self, ctx: _RunContext) -> None:
        self._enter(Phase.ACT)
        follow_up = ctx.decision.follow_up
        self._priced_call(ctx, StepKind.ACT, follow_up.action_id, follow_up.parameters)

    def _report(self, ctx: _RunContext) -> dict:
        self._enter(Phase.REPORT)
        run = ctx.run
        self._absorb_late(ctx)
        step = self._open_step(run, StepKind.REPORT)
        note = "Generated final report with audit trail"
        if self.reasoner is None:
            report = self._summarize(ctx)
        else:
            step_data = [
                f"- {s.action_id}: {json.dumps(s.output, default=str)[:300]}"
                for s in run.steps
                if s.kind == StepKind.EXECUTE and s.status == StepStatus.SUCCESS and s.output
            ]
            outcome = self._consult("report", report_prompt(run.objective, len(run.steps), run.total_cost_usd, step_data))
            if isinstance(outcome, Err):
                note = f"Reasoner unavailable ({outcome.reason}); deterministic summary"
                report = self._summarize(ctx)
            else:
                report = RunReport.from_outcome(outcome)
        self._close(step.succeed(reasoning=note))
        return self._compose_result(ctx, report)

    def _fulfill(self, ctx: _RunContext) -> None:
        envelope = ctx.envelope
        if envelope is None or self.mandates is None:
            return
        run = ctx.run
        summary = {
            "mandateId": envelope.envelope_id,
            "fulfillmentId": new_id("fulfill"),
            "runId": run.run_id,
            "steps": len(run.steps),
            "totalSpent": run.total_cost_usd,
            "receipts": [r.to_dict() for r in self.ledger.receipts() if r.run_id == run.run_id],
            "completedAt": time.time(),
        }
        try:
            self._call("fulfill", self.mandates.fulfill, envelope.envelope_id, summary)
        except Exception as e:
            logger.warning("Envelope fulfillment failed: %s", _describe(e))
            self.ledger.log("warn", "mandate", f"Envelope fulfillment failed: {_describe(e)}")
            return
        self.ledger.log("info", "mandate", f"Envelope fulfilled: {envelope.envelope_id}")
        self._emit("mandate:fulfilled", summary)

    # ------------------------------------------------------------------
    # Priced calls
    # ------------------------------------------------------------------

    def _priced_call(self, ctx: _RunContext, kind: StepKind, action_id: str, parameters: Mapping[str, Any]) -> dict:
        """Assess, pay, receipt and record one action. Never raises for per-step failures."""
        run = ctx.run
        if ctx.priced_calls and self.config.step_delay_seconds > 0:
            self._cancel.wait(self.config.step_delay_seconds)
        step = self._open_step(run, kind, action_id)
        outcome: dict[str, Any] = {"action_id": action_id, "success": False, "data": None, "error": None}

        action = ctx.catalog.get(action_id)
        if action is None:
            outcome["error"] = str(UnknownActionError(action_id))
            self._close(step.fail(outcome["error"]))
            return outcome
        if self.cancelled:
            outcome["error"] = "Run cancelled"
            self._close(step.skip("Run cancelled before this step"))
            return outcome
        busy = self._await_in_flight(ctx)
        if busy is not None:
            outcome["error"] = busy
            self._close(step.fail(busy))
            return outcome

        quote = self._quote(action)
        assessment = self.risk.assess(action.id, quote, _risk_metadata(action, parameters))
        self.ledger.record_assessment(assessment)
        self._emit("risk:assessment", assessment.to_dict())

        rejection = self._rejection(run, action, quote, assessment)
        if rejection is not None:
            self.risk.record_action(action.id, quote, approved=False)
            outcome["error"] = rejection
            self._close(step.fail(rejection, reasoning=assessment.reason, output={"assessment": assessment.to_dict()}))
            return outcome

        ctx.priced_calls += 1
        future: Optional[Future] = None
        try:
            future = self._submit(f"execute:{action.id}", self.gateway.execute, action, dict(parameters))
            result: ExecutionResult = self._await(f"execute:{action.id}", future)
        except (ProviderTimeoutError, ProviderCancelledError) as e:
            if future is None or future.cancelled():
                result = ExecutionResult(success=False, error=_describe(e))
            else:
                # The gateway call is still running and may yet move money.
                settled = threading.Event()
                ctx.in_flight = settled
                future.add_done_callback(lambda f: self._settle_late(ctx, action, f, settled))
                outcome["error"] = _describe(e)
                self._close(step.fail(outcome["error"], reasoning=assessment.reason))
                return outcome
        except Exception as e:
            result = ExecutionResult(success=False, error=_describe(e))

        if not result.success:
            error = result.error or "Gateway reported failure"
            logger.warning("%s failed: %s", action.id, error)
            self.risk.record_action(action.id, quote, approved=False)
            self.ledger.record_spend(_failed_receipt(run.run_id, action))
            outcome["error"] = error
            self._close(step.fail(error, reasoning=assessment.reason))
            return outcome

        receipt = _settled_receipt(run.run_id, action, result)
        amount = receipt.amount_usd
        late_violation = None
        try:
            self.risk.record_action(action.id, amount, approved=True)
        except PolicyViolationError as e:
            late_violation = str(e)
        self.ledger.record_spend(receipt)
        run.add_settled_spend(amount)
        self._emit("payment:receipt", receipt.to_dict())

        outcome.update(success=True, data=result.data)
        output = {"data": result.data, "receipt": receipt.to_dict()}
        if late_violation is not None:
            # Money moved, but the daily limit was reached by a concurrent approval.
            self._close(step.fail(f"Settled after daily limit was reached: {late_violation}", output=output))
            return outcome

        channel = f"envelope {ctx.envelope.envelope_id}" if ctx.envelope else "direct payment"
        self._close(
            step.succeed(
                reasoning=f"Called {action.name} for ${amount:.4f} via {channel} ({assessment.tier.value} risk)",
                output=output,
                cost_usd=amount,
            )
        )
        return outcome

    def _quote(self, action: CatalogAction) -> float:
        """Worst-case price: the catalog price plus whatever overage the gateway will settle."""
        tolerance = Decimal(str(getattr(self.gateway, "price_tolerance", 0.0) or 0.0))
        return micros_to_usd(cost_to_micros(Decimal(str(action.cost_usd)) * (1 + tolerance)))

    def _rejection(
        self,
        run: RunState,
        action: CatalogAction,
        quote: float,
        assessment: RiskAssessment,
    ) -> Optional[str]:
        if not assessment.approved:
            return f"Risk policy violation: {'; '.join(assessment.violations)}"
        if assessment.needs_approval and self.approver is not None:
            try:
                granted = bool(self.approver(assessment))
            except Exception as e:
                logger.warning("Approver raised for %s; treating as declined: %s", action.id, e)
                granted = False
            if not granted:
                return f"Approval declined: {assessment.reason}"
        if cost_to_micros(quote) > cost_to_micros(max(run.budget_remaining_usd, 0.0)):
            return f"Run budget exceeded: ${quote:.4f} > ${run.budget_remaining_usd:.4f} remaining"
        return None

    def _settle_late(self, ctx: _RunContext, action: CatalogAction, future: Future, settled: threading.Event) -> None:
        """Record the outcome of a gateway call whose step already failed on timeout or cancel."""
        try:
            try:
                result = future.result()
            except Exception as e:
                result = ExecutionResult(success=False, error=_describe(e))
            if not result.success:
                self.risk.record_action(action.id, action.cost_usd, approved=False)
                self.ledger.record_spend(_failed_receipt(ctx.run.run_id, action))
                return

            receipt = _settled_receipt(ctx.run.run_id, action, result)
            try:
                self.risk.record_action(action.id, receipt.amount_usd, approved=True)
            except PolicyViolationError as e:
                logger.warning("Late settlement of %s landed past the daily limit: %s", action.id, e)
            self.ledger.record_spend(receipt)
            ctx.late_settlements.append(receipt.amount_usd)
            logger.warning("%s settled $%.4f after its step was abandoned", action.id, receipt.amount_usd)
            self.ledger.log("warn", "payment", f"Late settlement for {action.id}", receipt.to_dict())
            self._emit("payment:receipt", receipt.to_dict())
        except Exception:
            logger.exception("Could not record the late result of %s", action.id)
        finally:
            settled.set()

    def _await_in_flight(self, ctx: _RunContext) -> Optional[str]:
        """Hold the next priced call until an abandoned payment has been recorded."""
        settled = ctx.in_flight
        if settled is not None:
            deadline = time.monotonic() + self.config.call_timeout_seconds
            while not settled.is_set() and not self.cancelled and time.monotonic() < deadline:
                settled.wait(POLL_INTERVAL_SECONDS)
            if not settled.is_set():
                return "An earlier payment is still in flight"
            ctx.in_flight = None
        self._absorb_late(ctx)
        return None

    def _absorb_late(self, ctx: _RunContext) -> None:
        while ctx.late_settlements:
            ctx.run.add_settled_spend(ctx.late_settlements.pop(0))

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run an external call on the worker pool, bounded by the timeout and cancel flag."""
        return self._await(operation, self._submit(operation, fn, *args))

    def _submit(self, operation: str, fn: Callable[..., Any], *args: Any) -> Future:
        if self.cancelled:
            raise ProviderCancelledError(f"{operation} cancelled")
        return self._executor.submit(fn, *args)

    def _await(self, operation: str, future: Future) -> Any:
        """Wait for a submitted call. On timeout or cancel the future is cancelled if it has not started."""
        timeout = self.config.call_timeout_seconds
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise ProviderTimeoutError(operation, timeout)
            done, _ = wait([future], timeout=min(remaining, POLL_INTERVAL_SECONDS))
            if done:
                return future.result()
            if self.cancelled:
                future.cancel()
                raise ProviderCancelledError(f"{operation} cancelled")

    def _consult(self, operation: str, prompt: Prompt) -> Outcome:
        try:
            text = self._call(f"reason:{operation}", self.reasoner.complete, prompt)
        except Exception as e:
            logger.warning("Reasoner %s call failed: %s", operation, _describe(e))
            return Err(_describe(e))
        outcome: Union[Ok, Degraded] = parse_structured(text)
        if isinstance(outcome, Degraded):
            self.ledger.log("warn", "reason", f"Unstructured {operation} response", {"detail": outcome.detail})
        return outcome

    def _summarize(self, ctx: _RunContext) -> RunReport:
        run = ctx.run
        failed = sum(1 for s in run.steps if s.status == StepStatus.FAILED)
        return self.heuristics.summarize(
            RunStats(
                objective=run.objective,
                steps_completed=len(run.steps),
                total_cost_usd=run.total_cost_usd,
                failed_steps=failed,
            )
        )

    def _compose_result(self, ctx: _RunContext, report: RunReport) -> dict:
        run = ctx.run
        audit = self.ledger.report()
        run_receipts = [r for r in audit["receipts"] if r.get("run_id") == run.run_id]
        return {
            **report.to_dict(),
            "decision": ctx.decision.to_dict() if ctx.decision else None,
            "envelope_id": ctx.envelope.envelope_id if ctx.envelope else None,
            "total_steps": len(run.steps),
            "step_counts": run.step_counts(),
            "total_cost_usd": run.total_cost_usd,
            "budget_remaining_usd": run.budget_remaining_usd,
            "audit_totals": audit["totals"],
            "spend_by_action": audit["spend_by_action"],
            "spend_by_category": audit["spend_by_category"],
            "receipts": run_receipts,
            "assessments": audit["assessments"],
        }

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        logger.info("Phase: %s", phase.value)
        self._emit("phase:entered", {"phase": phase.value})

    def _open_step(self, run: RunState, kind: StepKind, action_id: Optional[str] = None) -> Step:
        return run.add_step(Step(id=new_id("step"), kind=kind, action_id=action_id).start())

    def _close(self, step: Step) -> Step:
        level = "info" if step.status != StepStatus.FAILED else "warn"
        self.ledger.log(level, "step", f"{step.kind.value} {step.status.value}", step.to_dict())
        self._emit("step:completed", step.to_dict())
        return step

    def _fail_open_steps(self, run: RunState, error: str) -> None:
        for step in run.steps:
            if not step.is_terminal:
                self._close(step.fail(error or "Run failed"))

    def _emit(self, event_type: str, data: dict) -> None:
        try:
            self.sink.emit(Event(type=event_type, data=data))
        except Exception:
            logger.warning("Event sink failed for %s", event_type, exc_info=True)

    def _write_report(self, run: RunState) -> None:
        if self.config.report_dir is None:
            return
        try:
            path = write_run_report(Path(self.config.report_dir), run.run_id, run.to_dict())
        except (OSError, ValueError) as e:
            logger.warning("Could not write run report for %s: %s", run.run_id, e)
            return
        logger.info("Run report written to %s", path)


def _risk_metadata(action: CatalogAction, parameters: Mapping[str, Any]) -> dict:
    metadata: dict[str, Any] = {}
    if action.category:
        metadata["category"] = action.category
    if action.category == EXECUTION_CATEGORY:
        token = parameters.get("tokenOut") or parameters.get("token")
        if token:
            metadata["token"] = token
        if parameters.get("chain"):
            metadata["chain"] = parameters["chain"]
        slippage = parameters.get("maxSlippageBps", parameters.get("slippageBps"))
        if isinstance(slippage, (int, float)):
            metadata["slippage_bps"] = slippage
    return metadata


def _result_summary(result: Mapping[str, Any]) -> dict:
    data = result.get("data")
    return {
        "tool": result.get("action_id"),
        "success": result.get("success"),
        "data": json.dumps(data, default=str)[:2000] if data is not None else None,
        "error": result.get("error"),
    }


def _describe(exc: BaseException) -> str:
    if isinstance(exc, PurserError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


def _failed_receipt(run_id: str, action: CatalogAction) -> SpendReceipt:
    return SpendReceipt(
        action_id=action.id,
        amount_usd=action.cost_usd,
        status=SettlementStatus.FAILED,
        category=action.category or None,
        run_id=run_id,
    )


def _settled_receipt(run_id: str, action: CatalogAction, result: ExecutionResult) -> SpendReceipt:
    settlement = result.settlement
    return SpendReceipt(
        action_id=action.id,
        amount_usd=settlement.amount_usd if settlement is not None else action.cost_usd,
        status=SettlementStatus.SETTLED,
        currency=settlement.currency if settlement else "USDC",
        tx_ref=settlement.tx_ref if settlement else None,
        network=settlement.network if settlement else None,
        category=action.category or None,
        run_id=run_id,
    )
