"""
Purser CLI: budget-constrained autonomous task runs.

Commands:
    purser run       Run an objective against a merchant catalog
    purser demo      Full dry run against the built-in catalog
    purser assess    Risk-assess one proposed spend
    purser policy    Show the effective risk policy
    purser audit     Replay and summarize a persisted audit ledger
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource

from . import __version__
from .audit import AuditLedger
from .demo import demo_catalog, demo_gateway
from .errors import LedgerIntegrityError
from .gateway import HTTPCatalog
from .mandate import HTTPMandateEndpoint, LocalMandateEndpoint
from .money import format_usd
from .orchestrator import Orchestrator, OrchestratorConfig
from .reasoning import HTTPReasoner
from .risk import Policy, RiskEngine
from .run import RunState, RunStatus, StepStatus
from .signals import TTLCache
from .x402_gateway import Network, X402Gateway, X402GatewayConfig


_STATUS_ICONS = {
    StepStatus.SUCCESS: "✅",
    StepStatus.FAILED: "❌",
    StepStatus.SKIPPED: "⏭️ ",
    StepStatus.RUNNING: "⏳",
    StepStatus.PENDING: "⏳",
}

_NETWORKS = {"base-sepolia": Network.BASE_SEPOLIA, "base": Network.BASE_MAINNET}


def _load_policy(**overrides) -> Policy:
    try:
        return Policy.from_env(**overrides)
    except ValueError as e:
        click.echo(f"❌ Invalid policy configuration: {e}", err=True)
        sys.exit(1)


def _print_run(run: RunState) -> None:
    icon = "✅" if run.status == RunStatus.COMPLETED else "❌"
    click.echo(f"{icon} Run {run.run_id} {run.status.value}")
    click.echo(f"   Objective: {run.objective}")
    click.echo(f"   Spent:     {format_usd(run.total_cost_usd, 4)} of {format_usd(run.budget_usd)}")
    if run.error:
        click.echo(f"   Error:     {run.error}")

    click.echo("\n📋 Steps")
    for step in run.steps:
        target = f" {step.action_id}" if step.action_id else ""
        cost = f" {format_usd(step.cost_usd, 4)}" if step.cost_usd else ""
        detail = step.error if step.status == StepStatus.FAILED else step.reasoning
        click.echo(f"  {_STATUS_ICONS[step.status]} {step.kind.value}{target}{cost}: {detail}")

    result = run.result or {}
    decision = result.get("decision")
    if decision:
        click.echo(f"\n🤔 Decision: {decision['verdict']} ({decision['confidence'] * 100:.0f}% confidence)")
        click.echo(f"   {decision['rationale']}")
    if result.get("summary"):
        click.echo(f"\n📊 {result['summary']}")
        click.echo(f"   {result.get('recommendation', '')}")


def _emit_run(run: RunState, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(run.to_dict(), indent=2, default=str))
    else:
        _print_run(run)
    if run.status == RunStatus.FAILED:
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log phase and risk decisions to stderr")
def main(verbose: bool):
    """Purser: budget-constrained autonomous task pipeline."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.argument("objective")
@click.option("--budget", type=float, default=1.0, show_default=True, help="Run budget ceiling (USD)")
@click.option("--merchant-url", envvar="PURSER_MERCHANT_URL", default=None,
              help="Merchant base URL serving /api/v1/tools")
@click.option("--dry-run", is_flag=True, help="Simulate payments; no money moves")
@click.option("--network", type=click.Choice(sorted(_NETWORKS)), default="base-sepolia", show_default=True)
@click.option("--agent-key", envvar="PURSER_AGENT_KEY", default=None,
              help="Agent private key (hex). Read from PURSER_AGENT_KEY")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --agent-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--audit-path", type=click.Path(path_type=Path), default=None, help="Persist the audit ledger (JSONL)")
@click.option("--report-dir", type=click.Path(path_type=Path), default=None, help="Write the run report JSON here")
@click.option("--step-delay", type=float, default=1.0, show_default=True, help="Seconds between priced calls")
@click.option("--json", "as_json", is_flag=True, help="Print the run as JSON")
def run(
    objective: str,
    budget: float,
    merchant_url: Optional[str],
    dry_run: bool,
    network: str,
    agent_key: Optional[str],
    unsafe_allow_key_arg: bool,
    audit_path: Optional[Path],
    report_dir: Optional[Path],
    step_delay: float,
    as_json: bool,
):
    """Run OBJECTIVE end to end within BUDGET."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = ctx is not None and ctx.get_parameter_source("agent_key") == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --agent-key from argv. Set PURSER_AGENT_KEY or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    if dry_run:
        catalog = HTTPCatalog(merchant_url, cache=TTLCache(300)) if merchant_url else demo_catalog()
        gateway = demo_gateway()
        mandates = LocalMandateEndpoint()
        click.echo("🔍 DRY RUN: no actual payment will be made", err=True)
    else:
        if not merchant_url:
            click.echo("❌ --merchant-url (or PURSER_MERCHANT_URL) is required unless --dry-run", err=True)
            sys.exit(1)
        if not agent_key:
            click.echo("❌ PURSER_AGENT_KEY is required for live payments", err=True)
            sys.exit(1)
        try:
            gateway = X402Gateway.from_private_key(
                agent_key,
                config=X402GatewayConfig(network=_NETWORKS[network], base_url=merchant_url),
            )
        except ValueError as e:
            click.echo(f"❌ Invalid agent key: {e}", err=True)
            sys.exit(1)
        catalog = HTTPCatalog(merchant_url, cache=TTLCache(300))
        mandates = HTTPMandateEndpoint(merchant_url)

    try:
        ledger = AuditLedger(path=audit_path) if audit_path else AuditLedger()
    except LedgerIntegrityError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    orchestrator = Orchestrator(
        catalog=catalog,
        gateway=gateway,
        risk=RiskEngine(_load_policy()),
        ledger=ledger,
        reasoner=HTTPReasoner.from_env(),
        mandates=mandates,
        config=OrchestratorConfig(step_delay_seconds=step_delay, report_dir=report_dir),
    )
    with orchestrator:
        result = orchestrator.run(objective, budget_usd=budget)
    _emit_run(result, as_json)


@main.command()
@click.option("--objective", default="Research ETH and buy $50 if signals are bullish", show_default=True)
@click.option("--budget", type=float, default=1.0, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print the run as JSON")
def demo(objective: str, budget: float, as_json: bool):
    """Full dry run against the built-in catalog."""
    if not as_json:
        click.echo("🎬 Purser Demo: dry run against the built-in catalog")
        click.echo("=" * 50)
    orchestrator = Orchestrator(
        catalog=demo_catalog(),
        gateway=demo_gateway(),
        risk=RiskEngine(_load_policy(cooldown_seconds=0.0)),
        mandates=LocalMandateEndpoint(),
        config=OrchestratorConfig(step_delay_seconds=0.0),
    )
    with orchestrator:
        result = orchestrator.run(objective, budget_usd=budget)
    _emit_run(result, as_json)


@main.command()
@click.argument("action_id")
@click.option("--cost", type=float, required=True, help="Estimated cost (USD)")
@click.option("--category", default=None)
@click.option("--token", default=None)
@click.option("--chain", default=None)
@click.option("--slippage-bps", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, help="Print the assessment as JSON")
def assess(
    action_id: str,
    cost: float,
    category: Optional[str],
    token: Optional[str],
    chain: Optional[str],
    slippage_bps: Optional[int],
    as_json: bool,
):
    """Risk-assess one proposed spend against the effective policy."""
    metadata = {
        k: v
        for k, v in {"category": category, "token": token, "chain": chain, "slippage_bps": slippage_bps}.items()
        if v is not None
    }
    assessment = RiskEngine(_load_policy()).assess(action_id, cost, metadata)
    if as_json:
        click.echo(json.dumps(assessment.to_dict(), indent=2))
    else:
        icon = "✅" if assessment.approved else "❌"
        click.echo(f"{icon} {action_id} [{assessment.tier.value}]")
        click.echo(f"   {assessment.reason}")
        impact = assessment.budget_impact
        click.echo(
            f"   Budget: {format_usd(impact.before_usd)} -> {format_usd(impact.after_usd)} "
            f"({impact.percent_used:.1f}% of daily limit)"
        )
    if not assessment.approved:
        sys.exit(1)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the policy as JSON")
def policy(as_json: bool):
    """Show the effective risk policy (defaults plus PURSER_* overrides)."""
    effective = _load_policy()
    if as_json:
        click.echo(json.dumps(effective.to_dict(), indent=2))
        return
    click.echo("🛡️  Risk policy")
    click.echo(f"   Daily limit:       {format_usd(effective.daily_limit_usd)}")
    click.echo(f"   Per-action limit:  {format_usd(effective.per_action_limit_usd)}")
    click.echo(f"   Auto-approve:      {format_usd(effective.auto_approve_usd)}")
    click.echo(f"   Approval above:    {format_usd(effective.approval_threshold_usd)}")
    click.echo(f"   Max slippage:      {effective.max_slippage_bps}bps")
    click.echo(f"   Cooldown:          {effective.cooldown_seconds:g}s")
    click.echo(f"   Categories:        {', '.join(effective.allowed_categories)}")
    click.echo(f"   Tokens:            {', '.join(effective.allowed_tokens)}")
    click.echo(f"   Chains:            {', '.join(effective.allowed_chains)}")


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--limit", type=int, default=20, help="Number of receipts to show")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
def audit(path: Path, limit: int, as_json: bool):
    """Replay a persisted audit ledger, verify its chain and summarize it."""
    try:
        ledger = AuditLedger.replay(path)
    except LedgerIntegrityError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    report = ledger.report()
    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    totals = report["totals"]
    click.echo(f"📜 Audit ledger {path} (chain verified)")
    click.echo(f"   Spent:       {format_usd(totals['spent_usd'], 4)}")
    click.echo(f"   Assessments: {totals['assessments']} ({totals['approved']} approved, {totals['blocked']} blocked)")
    click.echo(f"   Receipts:    {totals['receipts']} ({totals['failed_receipts']} failed)")
    for action_id, amount in sorted(report["spend_by_action"].items()):
        click.echo(f"   • {action_id}: {format_usd(amount, 4)}")

    receipts = report["receipts"][-limit:] if limit > 0 else []
    if receipts:
        click.echo("\n🧾 Receipts")
    for receipt in receipts:
        ts = time.strftime("%H:%M:%S", time.localtime(receipt["timestamp"]))
        status = "✅" if receipt["status"] == "settled" else "❌"
        ref = f" ({receipt['tx_ref']})" if receipt.get("tx_ref") else ""
        click.echo(f"  {ts} {status} {receipt['action_id']} {format_usd(receipt['amount_usd'], 4)}{ref}")


if __name__ == "__main__":
    main()
