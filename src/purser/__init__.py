"""
Purser: budget-constrained autonomous task pipeline.

An objective goes in, priced tool calls come out:
discover → plan → authorize → execute → decide → act → report,
with every spend risk-gated and written to a tamper-evident ledger.
"""

__version__ = "0.1.0"

from .errors import (
    LedgerIntegrityError,
    PolicyViolationError,
    ProviderError,
    PurserError,
    RunFailureError,
    StateError,
)
from .risk import Policy, RiskAssessment, RiskEngine, RiskTier
from .audit import AuditLedger, LogEntry, SpendReceipt
from .signals import CompositeScore, SentimentLabel, Signal, SignalAggregator
from .gateway import CatalogAction, DryRunGateway, ExecutionResult, HTTPCatalog, StaticCatalog
from .heuristics import DecisionHeuristics
from .mandate import Envelope, EnvelopeSpec, HTTPMandateEndpoint, LocalMandateEndpoint
from .run import RunState, RunStatus, Step, StepKind, StepStatus
from .orchestrator import Orchestrator, OrchestratorConfig

__all__ = [
    "PurserError", "PolicyViolationError", "ProviderError", "RunFailureError",
    "StateError", "LedgerIntegrityError",
    "Policy", "RiskAssessment", "RiskEngine", "RiskTier",
    "AuditLedger", "LogEntry", "SpendReceipt",
    "CompositeScore", "SentimentLabel", "Signal", "SignalAggregator",
    "CatalogAction", "DryRunGateway", "ExecutionResult", "HTTPCatalog", "StaticCatalog",
    "DecisionHeuristics",
    "Envelope", "EnvelopeSpec", "HTTPMandateEndpoint", "LocalMandateEndpoint",
    "RunState", "RunStatus", "Step", "StepKind", "StepStatus",
    "Orchestrator", "OrchestratorConfig",
]
