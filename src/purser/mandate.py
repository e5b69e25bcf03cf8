"""
Spending envelopes (AP2-style cart mandates).

An envelope pre-authorizes a run's spend: a ceiling, the allowed action
categories and an expiry. Registering and fulfilling one is best-effort;
the orchestrator falls back to per-call risk gating when it fails.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable

import httpx

from .errors import ProviderError, StateError

logger = logging.getLogger(__name__)


class EnvelopeStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class EnvelopeSpec:
    description: str
    max_value_usd: float
    allowed_categories: tuple[str, ...]
    expires_in_seconds: int = 600
    action_ids: tuple[str, ...] = ()

    def to_request(self) -> dict:
        return {
            "description": self.description,
            "maxValueUSD": self.max_value_usd,
            "allowedCategories": list(self.allowed_categories),
            "expiresInSeconds": self.expires_in_seconds,
            "tools": list(self.action_ids),
        }


@dataclass
class Envelope:
    envelope_id: str
    max_value_usd: float
    allowed_categories: tuple[str, ...]
    expires_at: float
    status: EnvelopeStatus = EnvelopeStatus.PENDING
    currency: str = "USD"
    authorized_by: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expires_at

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Envelope":
        cart = data.get("cartMandate") or {}
        max_value = cart.get("maxValue") or {}
        status = str(data.get("status", "pending"))
        return cls(
            envelope_id=str(data["mandateId"]),
            max_value_usd=float(max_value.get("amount", 0)),
            currency=str(max_value.get("currency", "USD")),
            allowed_categories=tuple(cart.get("allowedCategories") or ()),
            expires_at=_parse_timestamp(cart.get("expiresAt")),
            status=EnvelopeStatus(status) if status in EnvelopeStatus._value2member_map_ else EnvelopeStatus.PENDING,
            authorized_by=data.get("authorizedBy"),
        )

    def to_dict(self) -> dict:
        return {
            "envelope_id": self.envelope_id,
            "max_value_usd": self.max_value_usd,
            "currency": self.currency,
            "allowed_categories": list(self.allowed_categories),
            "expires_at": self.expires_at,
            "status": self.status.value,
            "authorized_by": self.authorized_by,
        }


def _parse_timestamp(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return 0.0


@runtime_checkable
class MandateEndpoint(Protocol):
    def create_envelope(self, spec: EnvelopeSpec) -> Envelope:
        ...

    def fulfill(self, envelope_id: str, summary: Mapping[str, Any]) -> None:
        ...


class HTTPMandateEndpoint:
    """Registers, authorizes and fulfills envelopes on a merchant's mandate API."""

    path = "/api/v1/mandates"

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.Client] = None,
        authorized_by: str = "purser-auto",
        timeout_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.authorized_by = authorized_by
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def create_envelope(self, spec: EnvelopeSpec) -> Envelope:
        created = self._post(f"{self.base_url}{self.path}", spec.to_request())
        envelope_id = created.get("mandateId")
        if not envelope_id:
            raise ProviderError("Mandate response has no mandateId")
        authorized = self._post(
            f"{self.base_url}{self.path}/{envelope_id}/authorize",
            {"authorizedBy": self.authorized_by},
        )
        envelope = Envelope.from_dict(authorized)
        logger.info("Envelope %s authorized for $%.2f", envelope.envelope_id, envelope.max_value_usd)
        return envelope

    def fulfill(self, envelope_id: str, summary: Mapping[str, Any]) -> None:
        self._post(f"{self.base_url}{self.path}/{envelope_id}/fulfill", dict(summary))
        logger.info("Envelope %s fulfilled", envelope_id)

    def _post(self, url: str, body: dict) -> dict:
        try:
            response = self._http.post(url, json=body)
        except httpx.HTTPError as e:
            raise ProviderError(f"Mandate request failed: {type(e).__name__}: {e}") from e
        if response.status_code >= 400:
            raise ProviderError(f"Mandate request rejected ({response.status_code}): {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Mandate response is not JSON") from e
        if not isinstance(data, dict):
            raise ProviderError("Mandate response is not an object")
        return data

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


@dataclass
class _LocalRecord:
    envelope: Envelope
    spec: EnvelopeSpec
    fulfillment: Optional[dict] = None


class LocalMandateEndpoint:
    """In-process envelope registry for dry runs and tests. Authorizes immediately."""

    def __init__(self, clock: Callable[[], float] = time.time, authorized_by: str = "purser-auto"):
        self._clock = clock
        self.authorized_by = authorized_by
        self._records: dict[str, _LocalRecord] = {}
        self._lock = threading.Lock()

    def create_envelope(self, spec: EnvelopeSpec) -> Envelope:
        if spec.max_value_usd <= 0:
            raise ValueError("Envelope ceiling must be positive")
        envelope = Envelope(
            envelope_id=f"mandate-{secrets.token_hex(6)}",
            max_value_usd=spec.max_value_usd,
            allowed_categories=tuple(spec.allowed_categories),
            expires_at=self._clock() + spec.expires_in_seconds,
            status=EnvelopeStatus.AUTHORIZED,
            authorized_by=self.authorized_by,
        )
        with self._lock:
            self._records[envelope.envelope_id] = _LocalRecord(envelope=envelope, spec=spec)
        return envelope

    def fulfill(self, envelope_id: str, summary: Mapping[str, Any]) -> None:
        with self._lock:
            record = self._records.get(envelope_id)
            if record is None:
                raise StateError(f"Envelope not found: {envelope_id}")
            if self._clock() > record.envelope.expires_at:
                record.envelope.status = EnvelopeStatus.EXPIRED
                raise StateError(f"Envelope {envelope_id} has expired")
            if record.envelope.status != EnvelopeStatus.AUTHORIZED:
                raise StateError(f"Envelope {envelope_id} is {record.envelope.status.value}, not authorized")
            record.envelope.status = EnvelopeStatus.FULFILLED
            record.fulfillment = dict(summary)

    def get(self, envelope_id: str) -> Optional[Envelope]:
        with self._lock:
            record = self._records.get(envelope_id)
            return record.envelope if record else None

    def fulfillment(self, envelope_id: str) -> Optional[dict]:
        with self._lock:
            record = self._records.get(envelope_id)
            return record.fulfillment if record else None
