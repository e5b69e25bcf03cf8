"""
External collaborator interfaces: action catalog, priced execution, events.

The orchestrator only talks to these protocols. Concrete HTTP and dry-run
implementations live here too; the x402-backed gateway is in x402_gateway.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence, runtime_checkable

import httpx

from .errors import ProviderError
from .money import cost_to_micros, micros_to_usd
from .signals import TTLCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogAction:
    """A priced external capability."""

    id: str
    cost_usd: float
    category: str = ""
    name: str = ""
    description: str = ""
    parameters: tuple[str, ...] = ()
    endpoint: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CatalogAction":
        if not data.get("id"):
            raise ValueError("Catalog action has no id")
        price = data.get("priceUSD", data.get("cost_usd", data.get("cost")))
        if price is None:
            raise ValueError(f"Catalog action {data['id']!r} has no price")
        params = []
        for p in data.get("parameters") or []:
            if isinstance(p, Mapping) and not p.get("name"):
                raise ValueError(f"Catalog action {data['id']!r} has a parameter with no name")
            params.append(p["name"] if isinstance(p, Mapping) else str(p))
        return cls(
            id=str(data["id"]),
            cost_usd=float(price),
            category=str(data.get("category", "")),
            name=str(data.get("name") or data["id"]),
            description=str(data.get("description", "")),
            parameters=tuple(params),
            endpoint=data.get("endpoint"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "cost_usd": self.cost_usd,
            "category": self.category,
            "parameters": list(self.parameters),
            "endpoint": self.endpoint,
        }


def index_catalog(actions: Iterable[CatalogAction]) -> dict[str, CatalogAction]:
    return {a.id: a for a in actions}


def estimate_cost(catalog: Mapping[str, CatalogAction], action_ids: Iterable[str]) -> float:
    """Sum catalog prices for the given ids, ignoring ids not in the catalog."""
    micros = sum(cost_to_micros(catalog[a].cost_usd) for a in action_ids if a in catalog)
    return micros_to_usd(micros)


@dataclass(frozen=True)
class Settlement:
    amount_usd: float
    currency: str = "USDC"
    tx_ref: Optional[str] = None
    network: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "amount_usd": self.amount_usd,
            "currency": self.currency,
            "tx_ref": self.tx_ref,
            "network": self.network,
        }


@dataclass
class ExecutionResult:
    """Outcome of one priced call."""

    success: bool
    data: Optional[Any] = None
    settlement: Optional[Settlement] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": self.data,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class Event:
    type: str
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class CatalogProvider(Protocol):
    def list_actions(self) -> list[CatalogAction]:
        ...


@runtime_checkable
class PaymentGateway(Protocol):
    """
    Pays for and performs one catalog action.

    A gateway that may settle above the catalog price exposes the allowed
    overage as a `price_tolerance` fraction; callers assess against the
    price grown by that fraction. Without the attribute it is taken as 0.
    """

    def execute(self, action: CatalogAction, parameters: Mapping[str, Any]) -> ExecutionResult:
        ...


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: Event) -> None:
        ...


class NullSink:
    def emit(self, event: Event) -> None:
        return None


class CallbackSink:
    """Forward events to a plain callable."""

    def __init__(self, callback: Callable[[Event], None]):
        self._callback = callback

    def emit(self, event: Event) -> None:
        self._callback(event)


class StaticCatalog:
    def __init__(self, actions: Sequence[CatalogAction]):
        self._actions = list(actions)

    def list_actions(self) -> list[CatalogAction]:
        return list(self._actions)


class HTTPCatalog:
    """Reads `GET <base_url>/api/v1/tools`, cached for the injected cache's TTL."""

    path = "/api/v1/tools"

    def __init__(
        self,
        base_url: str,
        cache: Optional[TTLCache] = None,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._cache = cache
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def list_actions(self) -> list[CatalogAction]:
        if self._cache is None:
            return self._fetch()
        return list(self._cache.get_or_load(self.base_url, self._fetch))

    def _fetch(self) -> list[CatalogAction]:
        url = f"{self.base_url}{self.path}"
        try:
            response = self._http.get(url)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"Catalog request failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Catalog response is not JSON: {e}") from e

        tools = body.get("tools", []) if isinstance(body, dict) else body
        if not isinstance(tools, list):
            raise ProviderError("Catalog response has no tool list")
        actions = []
        for entry in tools:
            try:
                if not isinstance(entry, Mapping):
                    raise ValueError(f"expected an object, got {type(entry).__name__}")
                actions.append(CatalogAction.from_dict(entry))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed catalog entry at %s: %s", self.base_url, e)
        logger.info("Discovered %d priced actions at %s", len(actions), self.base_url)
        return actions

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class DryRunGateway:
    """
    Gateway that never moves money.

    Returns canned payloads per action id (a dict or a callable taking the
    parameters) and a synthetic settlement reference.
    """

    price_tolerance = 0.0

    def __init__(
        self,
        payloads: Optional[Mapping[str, Any]] = None,
        network: str = "base-sepolia",
        failures: Optional[Mapping[str, str]] = None,
    ):
        self._payloads = dict(payloads or {})
        self._failures = dict(failures or {})
        self.network = network
        self.calls: list[tuple[str, dict]] = []

    def execute(self, action: CatalogAction, parameters: Mapping[str, Any]) -> ExecutionResult:
        params = dict(parameters)
        self.calls.append((action.id, params))
        if action.id in self._failures:
            return ExecutionResult(success=False, error=self._failures[action.id])

        payload = self._payloads.get(action.id)
        if callable(payload):
            data = payload(params)
        elif payload is not None:
            data = payload
        else:
            data = {"action_id": action.id, "parameters": params, "dry_run": True}

        return ExecutionResult(
            success=True,
            data=data,
            settlement=Settlement(
                amount_usd=action.cost_usd,
                tx_ref=_dry_run_reference(action.id, len(self.calls)),
                network=self.network,
            ),
        )


def _dry_run_reference(action_id: str, n: int) -> str:
    return f"dryrun-{hashlib.sha256(f'{action_id}:{n}:{time.time()}'.encode()).hexdigest()[:8]}"
