"""
Reasoning capability adapters.

A reasoner turns a prompt into text. Everything here treats that text as
untrusted: it is parsed into Ok (structured), Degraded (raw text kept) or,
when the call itself failed, Err. The structured result types know how to
build themselves from either.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

import httpx

from .errors import MalformedResponseError, ProviderError, ReasonerUnavailableError
from .gateway import CatalogAction

logger = logging.getLogger(__name__)


_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```$")


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str
    temperature: float = 0.3


@runtime_checkable
class Reasoner(Protocol):
    def complete(self, prompt: Prompt) -> str:
        ...


@dataclass(frozen=True)
class Ok:
    data: dict


@dataclass(frozen=True)
class Degraded:
    raw_text: str
    detail: str = ""


@dataclass(frozen=True)
class Err:
    reason: str


Outcome = Union[Ok, Degraded, Err]


def strip_code_fences(text: str) -> str:
    return _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text.strip())).strip()


def parse_structured(text: str) -> Union[Ok, Degraded]:
    """Parse reasoner output as a JSON object. Never raises."""
    try:
        return Ok(_load_object(text))
    except MalformedResponseError as e:
        return Degraded(raw_text=e.raw_text, detail=str(e))


def _load_object(text: str) -> dict:
    cleaned = strip_code_fences(text or "")
    try:
        data = json.loads(cleaned)
    except ValueError as e:
        raise MalformedResponseError(text, f"invalid JSON ({e.__class__.__name__})") from e
    if not isinstance(data, dict):
        raise MalformedResponseError(text, "expected a JSON object")
    return data


# ---------------------------------------------------------------------------
# Structured results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanEntry:
    action_id: str
    parameters: dict = field(default_factory=dict)
    rationale: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["PlanEntry"]:
        action_id = data.get("tool") or data.get("action") or data.get("action_id")
        if not isinstance(action_id, str) or not action_id:
            return None
        params = data.get("params", data.get("parameters"))
        return cls(
            action_id=action_id,
            parameters=dict(params) if isinstance(params, Mapping) else {},
            rationale=str(data.get("reasoning") or data.get("rationale") or ""),
        )

    def to_dict(self) -> dict:
        return {"action_id": self.action_id, "parameters": self.parameters, "rationale": self.rationale}


@dataclass(frozen=True)
class Plan:
    entries: tuple[PlanEntry, ...] = ()
    estimated_cost_usd: Optional[float] = None
    rationale: str = ""
    degraded: bool = False

    @classmethod
    def from_structured(cls, data: Mapping[str, Any]) -> "Plan":
        raw_entries = data.get("plan")
        entries = []
        if isinstance(raw_entries, list):
            for raw in raw_entries:
                if isinstance(raw, Mapping):
                    entry = PlanEntry.from_dict(raw)
                    if entry is not None:
                        entries.append(entry)
        estimate = data.get("estimatedCostUSD", data.get("estimated_cost_usd"))
        return cls(
            entries=tuple(entries),
            estimated_cost_usd=float(estimate) if isinstance(estimate, (int, float)) and estimate > 0 else None,
            rationale=str(data.get("reasoning") or data.get("rationale") or ""),
        )

    @classmethod
    def from_outcome(cls, outcome: Union[Ok, Degraded]) -> "Plan":
        if isinstance(outcome, Ok):
            return cls.from_structured(outcome.data)
        return cls(rationale=outcome.raw_text, degraded=True)

    def to_dict(self) -> dict:
        return {
            "plan": [e.to_dict() for e in self.entries],
            "estimated_cost_usd": self.estimated_cost_usd,
            "rationale": self.rationale,
            "degraded": self.degraded,
        }


class Verdict(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class FollowUp:
    action_id: str
    parameters: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    confidence: float
    rationale: str
    follow_up: Optional[FollowUp] = None
    risk_factors: tuple[str, ...] = ()
    degraded: bool = False

    @classmethod
    def from_structured(cls, data: Mapping[str, Any]) -> "Decision":
        raw_verdict = str(data.get("decision") or data.get("verdict") or "hold").lower()
        verdict = Verdict(raw_verdict) if raw_verdict in Verdict._value2member_map_ else Verdict.HOLD
        confidence = data.get("confidence")
        confidence = float(confidence) if isinstance(confidence, (int, float)) else 0.5
        action = data.get("action")
        follow_up = None
        if isinstance(action, Mapping):
            action_id = action.get("tool") or action.get("action_id")
            params = action.get("params", action.get("parameters"))
            if isinstance(action_id, str) and action_id:
                follow_up = FollowUp(action_id, dict(params) if isinstance(params, Mapping) else {})
        factors = data.get("riskFactors", data.get("risk_factors"))
        return cls(
            verdict=verdict,
            confidence=max(0.0, min(1.0, confidence)),
            rationale=str(data.get("reasoning") or data.get("rationale") or ""),
            follow_up=follow_up,
            risk_factors=tuple(str(f) for f in factors) if isinstance(factors, list) else (),
        )

    @classmethod
    def from_outcome(cls, outcome: Union[Ok, Degraded]) -> "Decision":
        if isinstance(outcome, Ok):
            return cls.from_structured(outcome.data)
        return cls(verdict=Verdict.HOLD, confidence=0.5, rationale=outcome.raw_text, degraded=True)

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "follow_up": (
                {"action_id": self.follow_up.action_id, "parameters": self.follow_up.parameters}
                if self.follow_up
                else None
            ),
            "risk_factors": list(self.risk_factors),
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class RunReport:
    summary: str
    recommendation: str
    key_findings: tuple[str, ...] = ()
    confidence: float = 0.72
    degraded: bool = False

    @classmethod
    def from_structured(cls, data: Mapping[str, Any]) -> "RunReport":
        findings = data.get("keyFindings", data.get("key_findings"))
        return cls(
            summary=str(data.get("summary") or ""),
            recommendation=str(data.get("recommendation") or ""),
            key_findings=tuple(str(f) for f in findings) if isinstance(findings, list) else (),
        )

    @classmethod
    def from_outcome(cls, outcome: Union[Ok, Degraded]) -> "RunReport":
        if isinstance(outcome, Ok):
            return cls.from_structured(outcome.data)
        return cls(summary=outcome.raw_text, recommendation="See full logs", degraded=True)

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "recommendation": self.recommendation,
            "key_findings": list(self.key_findings),
            "confidence": self.confidence,
            "degraded": self.degraded,
        }


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def plan_prompt(objective: str, catalog: Sequence[CatalogAction], budget_remaining_usd: float) -> Prompt:
    tools = "\n".join(
        f"- {a.id}: {a.description} (${a.cost_usd:g}) [params: {', '.join(a.parameters)}]" for a in catalog
    )
    system = (
        f"You are an autonomous research agent with a budget of ${budget_remaining_usd:.2f} remaining.\n\n"
        f"Available paid tools (each call costs real money):\n{tools}\n\n"
        "Create a research plan that stays within budget. Gather context first, then "
        "quantitative data, then analyze.\n\n"
        "Respond with a JSON object containing:\n"
        "- plan: array of { tool, params, reasoning } for each step\n"
        "- estimatedCostUSD: total estimated cost\n"
        "- reasoning: why this plan achieves the objective within budget"
    )
    return Prompt(system=system, user=f"Objective: {objective}\n\nCreate a plan. Respond with JSON only.")


def decide_prompt(results: Sequence[Mapping[str, Any]], budget_remaining_usd: float, max_slippage_bps: int) -> Prompt:
    system = (
        "You have just completed a research workflow using live data from paid tools.\n"
        "Analyze all results and make a well-reasoned decision.\n\n"
        f"Budget remaining: ${budget_remaining_usd:.2f}\n"
        f"Risk policy: max slippage {max_slippage_bps}bps\n\n"
        "Cite actual numbers from the data. Lower confidence when data is missing or signals conflict.\n\n"
        "Respond with JSON:\n"
        '- decision: "buy" | "sell" | "hold"\n'
        "- confidence: 0-1\n"
        "- reasoning: explanation citing specific data points\n"
        '- action: { tool, params } if executing, or null\n'
        "- riskFactors: array of specific risk considerations"
    )
    user = f"Research results:\n{json.dumps(list(results), indent=2, default=str)}\n\nAnalyze and decide. Respond with JSON only."
    return Prompt(system=system, user=user)


def report_prompt(objective: str, step_count: int, total_cost_usd: float, step_data: Sequence[str]) -> Prompt:
    system = (
        "Generate a final report summarizing the autonomous research workflow.\n"
        "Respond with JSON: { summary, recommendation, keyFindings: string[] }\n"
        "Reference actual prices, scores and data points from the steps."
    )
    user = (
        f"Objective: {objective}\nSteps completed: {step_count}\nTotal cost: ${total_cost_usd:.4f}\n\n"
        "Step data:\n" + "\n".join(step_data) + "\n\nGenerate summary report. JSON only."
    )
    return Prompt(system=system, user=user)


# ---------------------------------------------------------------------------
# HTTP reasoner
# ---------------------------------------------------------------------------


class HTTPReasoner:
    """Reasoner backed by a `generateContent`-style REST endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-pro",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 60.0,
        max_output_tokens: int = 4096,
    ):
        if not api_key:
            raise ReasonerUnavailableError("Reasoner API key is empty")
        self._api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_output_tokens = max_output_tokens
        self._http = client or httpx.Client(timeout=timeout_seconds)

    @classmethod
    def from_env(cls, **kwargs: Any) -> Optional["HTTPReasoner"]:
        """Build from PURSER_REASONER_API_KEY, or None when it is unset."""
        api_key = os.getenv("PURSER_REASONER_API_KEY")
        if not api_key:
            return None
        model = os.getenv("PURSER_REASONER_MODEL")
        if model:
            kwargs.setdefault("model", model)
        return cls(api_key=api_key, **kwargs)

    def complete(self, prompt: Prompt) -> str:
        payload = {
            "system_instruction": {"parts": [{"text": prompt.system}]},
            "contents": [{"role": "user", "parts": [{"text": prompt.user}]}],
            "generationConfig": {
                "temperature": prompt.temperature,
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "text/plain",
            },
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            response = self._http.post(url, params={"key": self._api_key}, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"Reasoner request failed: {type(e).__name__}: {e}") from e
        if response.status_code != 200:
            raise ProviderError(f"Reasoner call failed: {response.status_code} {response.text[:200]}")

        try:
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            text = None
        if not text:
            raise ReasonerUnavailableError("Reasoner returned empty response")
        return strip_code_fences(text)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
