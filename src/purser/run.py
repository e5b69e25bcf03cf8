"""
Run and step state for one orchestration.

A RunState is owned by a single Orchestrator for its lifetime. Steps are
appended in issuance order and frozen once terminal.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import RunFinalizedError, StepAlreadyTerminalError
from .money import micros_to_usd, cost_to_micros


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepKind(str, Enum):
    DISCOVER = "discover"
    PLAN = "plan"
    AUTHORIZE = "authorize"
    EXECUTE = "execute"
    DECIDE = "decide"
    ACT = "act"
    REPORT = "report"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SKIPPED})


def new_id(prefix: str, nbytes: int = 6) -> str:
    return f"{prefix}-{secrets.token_hex(nbytes)}"


@dataclass
class Step:
    """One recorded unit of orchestration work."""

    id: str
    kind: StepKind
    action_id: Optional[str] = None
    cost_usd: Optional[float] = None
    status: StepStatus = StepStatus.PENDING
    reasoning: str = ""
    error: Optional[str] = None
    output: Optional[dict[str, Any]] = None
    started_at: float = field(default_factory=time.time)
    duration_seconds: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def start(self) -> "Step":
        self._ensure_open()
        self.status = StepStatus.RUNNING
        self.started_at = time.time()
        return self

    def succeed(
        self,
        reasoning: str = "",
        output: Optional[dict[str, Any]] = None,
        cost_usd: Optional[float] = None,
    ) -> "Step":
        return self._finish(StepStatus.SUCCESS, reasoning=reasoning, output=output, cost_usd=cost_usd)

    def fail(self, error: str, reasoning: str = "", output: Optional[dict[str, Any]] = None) -> "Step":
        return self._finish(StepStatus.FAILED, reasoning=reasoning, output=output, error=error)

    def skip(self, reason: str) -> "Step":
        return self._finish(StepStatus.SKIPPED, reasoning=reason)

    def _finish(
        self,
        status: StepStatus,
        reasoning: str,
        output: Optional[dict[str, Any]] = None,
        cost_usd: Optional[float] = None,
        error: Optional[str] = None,
    ) -> "Step":
        self._ensure_open()
        self.status = status
        if reasoning:
            self.reasoning = reasoning
        if output is not None:
            self.output = output
        if cost_usd is not None:
            self.cost_usd = cost_usd
        self.error = error
        self.duration_seconds = max(0.0, time.time() - self.started_at)
        return self

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise StepAlreadyTerminalError(self.id, self.status.value)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "action_id": self.action_id,
            "cost_usd": self.cost_usd,
            "status": self.status.value,
            "reasoning": self.reasoning,
            "error": self.error,
            "output": self.output,
            "started_at": self.started_at,
            "duration_seconds": round(self.duration_seconds, 6),
        }


@dataclass
class RunState:
    """One orchestration execution."""

    run_id: str
    objective: str
    budget_usd: float
    steps: list[Step] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    _settled_micros: int = field(default=0, repr=False)

    @property
    def is_finalized(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def total_cost_usd(self) -> float:
        return micros_to_usd(self._settled_micros)

    @property
    def budget_remaining_usd(self) -> float:
        return self.budget_usd - self.total_cost_usd

    def add_step(self, step: Step) -> Step:
        self._ensure_running()
        self.steps.append(step)
        return step

    def add_settled_spend(self, amount_usd: float) -> None:
        self._ensure_running()
        self._settled_micros += cost_to_micros(amount_usd)

    def finalize(
        self,
        status: RunStatus,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> "RunState":
        self._ensure_running()
        if status == RunStatus.RUNNING:
            raise ValueError("Cannot finalize a run as running")
        self.status = status
        self.result = result
        self.error = error
        self.completed_at = time.time()
        return self

    def step_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for step in self.steps:
            counts[step.status.value] = counts.get(step.status.value, 0) + 1
        return counts

    def _ensure_running(self) -> None:
        if self.is_finalized:
            raise RunFinalizedError(f"Run {self.run_id} is {self.status.value} and read-only")

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "objective": self.objective,
            "status": self.status.value,
            "budget_usd": self.budget_usd,
            "total_cost_usd": self.total_cost_usd,
            "budget_remaining_usd": self.budget_remaining_usd,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "steps": [s.to_dict() for s in self.steps],
            "result": self.result,
        }
