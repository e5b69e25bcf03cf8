"""
PaymentGateway backed by the x402 Python SDK.

Requests the action's endpoint; on HTTP 402 it checks the server's payment
requirements against the catalog price, network and per-call cap, signs a
USDC authorization with an eth-account key and retries the request with the
payment header attached.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional
from urllib.parse import urljoin

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from x402 import x402ClientSync
from x402.http.x402_http_client import x402HTTPClientSync
from x402.mechanisms.evm.exact import ExactEvmScheme
from x402.mechanisms.evm.utils import get_asset_info

from .gateway import CatalogAction, ExecutionResult, Settlement

logger = logging.getLogger(__name__)


POST_CATEGORIES = frozenset({"execution"})
RETRYABLE_MARKERS = ("timeout", "connection", "503", "502", "429", "temporarily", "retry")

# EIP-712 domain fields in canonical order, with the attribute spellings the SDK may use.
_DOMAIN_FIELDS = (
    ("name", "string", ("name",)),
    ("version", "string", ("version",)),
    ("chainId", "uint256", ("chain_id", "chainId")),
    ("verifyingContract", "address", ("verifying_contract", "verifyingContract")),
    ("salt", "bytes32", ("salt",)),
)


class Network(str, Enum):
    BASE_MAINNET = "eip155:8453"
    BASE_SEPOLIA = "eip155:84532"

    @property
    def chain_name(self) -> str:
        return "base" if self is Network.BASE_MAINNET else "base-sepolia"


class AccountSigner:
    """Presents an eth-account LocalAccount as an x402 EVM signer."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(
        self,
        domain: Any,
        types: dict[str, list],
        primary_type: str,
        message: dict[str, Any],
    ) -> bytes:
        domain_dict = _domain_to_dict(domain)
        typed = {name: [_field_pair(f) for f in fields] for name, fields in types.items()}
        typed["EIP712Domain"] = [
            {"name": key, "type": kind} for key, kind, _ in _DOMAIN_FIELDS if key in domain_dict
        ]
        body = {
            k: ("0x" + v.hex()) if k == "nonce" and isinstance(v, bytes) else v
            for k, v in message.items()
        }
        signed = self._account.sign_typed_data(
            full_message={"types": typed, "primaryType": primary_type, "domain": domain_dict, "message": body}
        )
        return bytes(signed.signature)


def _field_pair(f: Any) -> dict:
    if isinstance(f, Mapping):
        return {"name": f["name"], "type": f["type"]}
    return {"name": f.name, "type": f.type}


def _domain_to_dict(domain: Any) -> dict:
    if isinstance(domain, Mapping):
        return dict(domain)
    out: dict[str, Any] = {}
    for key, _, attrs in _DOMAIN_FIELDS:
        for attr in attrs:
            value = getattr(domain, attr, None)
            if value is not None:
                out[key] = value
                break
    return out


@dataclass
class X402GatewayConfig:
    network: Network = Network.BASE_SEPOLIA
    base_url: Optional[str] = None
    timeout_seconds: float = 30.0
    max_amount_usd: float = 5.0
    price_tolerance: float = 0.10
    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    allowed_networks: tuple[str, ...] = field(default_factory=tuple)


@dataclass
class AcceptedRequirement:
    network: str
    pay_to: str
    amount_base_units: int
    amount_usd: float
    requirement: Any


class X402Gateway:
    """Executes priced catalog actions over x402."""

    def __init__(
        self,
        account: Optional[LocalAccount] = None,
        config: Optional[X402GatewayConfig] = None,
        signer: Any = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.config = config or X402GatewayConfig()
        if signer is not None:
            self._signer = signer
        elif account is not None:
            self._signer = AccountSigner(account)
        else:
            raise ValueError("Provide either account or signer")

        self._x402 = x402ClientSync()
        self._x402.register(self.config.network.value, ExactEvmScheme(signer=self._signer))
        self._handler = x402HTTPClientSync(client=self._x402)
        self._http = http_client or httpx.Client(timeout=self.config.timeout_seconds)

    @classmethod
    def from_private_key(cls, private_key: str, config: Optional[X402GatewayConfig] = None, **kwargs) -> "X402Gateway":
        return cls(account=Account.from_key(private_key), config=config, **kwargs)

    @classmethod
    def from_env(cls, config: Optional[X402GatewayConfig] = None, **kwargs) -> "X402Gateway":
        key = os.getenv("PURSER_AGENT_KEY")
        if not key:
            raise ValueError("PURSER_AGENT_KEY is not set")
        return cls.from_private_key(key, config=config, **kwargs)

    @property
    def address(self) -> str:
        return self._signer.address

    @property
    def price_tolerance(self) -> float:
        return self.config.price_tolerance

    def execute(self, action: CatalogAction, parameters: Mapping[str, Any]) -> ExecutionResult:
        """Call the action, paying if challenged. Transient failures are retried."""
        try:
            url = self._action_url(action)
        except ValueError as e:
            return ExecutionResult(success=False, error=str(e))

        max_usd = min(
            Decimal(str(self.config.max_amount_usd)),
            Decimal(str(action.cost_usd)) * (1 + Decimal(str(self.config.price_tolerance))),
        )
        if action.category in POST_CATEGORIES:
            request_kwargs: dict[str, Any] = {"json": dict(parameters)}
            method = "POST"
        else:
            request_kwargs = {"params": {k: str(v) for k, v in parameters.items()}}
            method = "GET"

        last_error = None
        attempts = self.config.max_retries + 1
        for attempt in range(attempts):
            try:
                result = self._execute_once(method, url, max_usd, request_kwargs)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = f"{type(e).__name__}: {e}"
            except Exception as e:
                logger.exception("x402 call for %s failed (non-retryable)", action.id)
                return ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")
            else:
                if result.success or not _is_retryable(result.error):
                    return result
                last_error = result.error

            if attempt < attempts - 1:
                logger.info("Retryable error for %s (attempt %d/%d): %s", action.id, attempt + 1, attempts, last_error)
                time.sleep(self.config.retry_delay_seconds * (attempt + 1))

        return ExecutionResult(success=False, error=f"Failed after {attempts} attempts: {last_error}")

    def _action_url(self, action: CatalogAction) -> str:
        endpoint = action.endpoint or ""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if not self.config.base_url:
            raise ValueError(f"Action {action.id} has no absolute endpoint and no base_url is configured")
        return urljoin(self.config.base_url.rstrip("/") + "/", endpoint.lstrip("/") or action.id)

    def _execute_once(self, method: str, url: str, max_usd: Decimal, request_kwargs: dict) -> ExecutionResult:
        response = self._http.request(method, url, **request_kwargs)

        if response.status_code == 200:
            return ExecutionResult(
                success=True,
                data=_json_or_text(response),
                settlement=Settlement(amount_usd=0.0, tx_ref="free-access", network=self.config.network.value),
            )
        if response.status_code != 402:
            return ExecutionResult(success=False, error=_status_error(response))

        headers = dict(response.headers)
        try:
            payment_required = self._handler.get_payment_required_response(
                lambda name: _header_lookup(headers, name),
                response.content,
            )
        except Exception as e:
            return ExecutionResult(success=False, error=f"Failed to parse 402 requirements: {type(e).__name__}: {e}")

        accepted = self.select_requirement(payment_required, max_usd)
        if isinstance(accepted, str):
            return ExecutionResult(success=False, error=accepted)
        if not hasattr(payment_required, "model_copy"):
            return ExecutionResult(success=False, error="Unsupported x402 payment version")

        try:
            payload = self._handler.create_payment_payload(
                payment_required.model_copy(update={"accepts": [accepted.requirement]})
            )
            payment_headers = self._handler.encode_payment_signature_header(payload)
        except Exception as e:
            return ExecutionResult(success=False, error=f"Failed to create payment: {type(e).__name__}: {e}")

        paid = self._http.request(method, url, headers=payment_headers, **request_kwargs)
        if paid.status_code != 200:
            return ExecutionResult(
                success=False,
                error=f"Payment rejected ({paid.status_code}): {paid.text[:200]}",
            )

        return ExecutionResult(
            success=True,
            data=_json_or_text(paid),
            settlement=Settlement(
                amount_usd=accepted.amount_usd,
                tx_ref=self._settlement_reference(paid, payment_headers),
                network=accepted.network,
            ),
        )

    def select_requirement(self, payment_required: Any, max_usd: Decimal) -> AcceptedRequirement | str:
        """Pick the first requirement within policy, or explain why none qualify."""
        accepts = getattr(payment_required, "accepts", None)
        if not accepts:
            return "No payment requirements in 402 response"

        allowed = set(self.config.allowed_networks or (self.config.network.value,))
        first_error: Optional[str] = None
        for req in accepts:
            network = str(getattr(req, "network", ""))
            if network not in allowed:
                first_error = first_error or f"402 requirement network {network} not allowed"
                continue
            amount_raw = int(getattr(req, "amount", "0"))
            amount_usd = _base_units_to_usd(amount_raw, network, str(getattr(req, "asset", "")))
            if amount_usd > max_usd:
                first_error = first_error or (
                    f"402 amount ${amount_usd:.6f} exceeds approved max ${float(max_usd):.6f}"
                )
                continue
            return AcceptedRequirement(
                network=network,
                pay_to=str(getattr(req, "pay_to", "")),
                amount_base_units=amount_raw,
                amount_usd=float(amount_usd),
                requirement=req,
            )
        return first_error or "No acceptable 402 requirement matched policy"

    def _settlement_reference(self, response: httpx.Response, payment_headers: Mapping[str, str]) -> Optional[str]:
        try:
            settle = self._handler.get_payment_settle_response(lambda name: response.headers.get(name))
        except Exception:
            logger.warning("Paid response carried no readable settlement header")
            return payment_headers.get("PAYMENT-SIGNATURE", "")[:16] or None
        return (
            getattr(settle, "transaction", None)
            or getattr(settle, "tx_hash", None)
            or getattr(settle, "transaction_hash", None)
        )

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _is_retryable(error: Optional[str]) -> bool:
    text = (error or "").lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)


def _status_error(response: httpx.Response) -> str:
    if response.status_code in (502, 503):
        return f"Server unavailable ({response.status_code}), temporarily down"
    if response.status_code == 429:
        return "Rate limited (429), retry after delay"
    return f"Unexpected status {response.status_code}: {response.text[:200]}"


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _base_units_to_usd(amount: int, network: str, asset: str) -> Decimal:
    decimals = 6
    try:
        decimals = int(get_asset_info(network, asset).get("decimals", 6))
    except Exception:
        logger.debug("No asset info for %s on %s; assuming 6 decimals", asset, network)
    return Decimal(amount) / (Decimal(10) ** decimals)


def _header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target:
            return value
    return None
