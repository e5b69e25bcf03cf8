"""
Audit ledger for every run.

The ledger is append-only: log entries, risk assessments and spend receipts
go into one ordered record list, and every report is derived from that list
on demand. When a path is given, records are also written as JSONL with an
HMAC hash chain so tampering is detected on replay.
"""

from __future__ import annotations

import copy
import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import LedgerIntegrityError, StateError
from .money import cost_to_micros, micros_to_usd
from .risk import RiskAssessment
from .run import new_id
from .storage import ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)


DEFAULT_KEY_PATH = Path.home() / ".purser-secrets" / "audit_hmac.key"
UNCATEGORIZED = "uncategorized"


class RecordKind(str, Enum):
    ENTRY = "entry"
    ASSESSMENT = "assessment"
    RECEIPT = "receipt"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass(frozen=True)
class LogEntry:
    level: str
    category: str
    message: str
    data: Optional[dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "category": self.category,
            "message": self.message,
            "data": self.data,
        }


@dataclass(frozen=True)
class SpendReceipt:
    """Record of a completed or failed monetized action."""

    action_id: str
    amount_usd: float
    status: SettlementStatus = SettlementStatus.SETTLED
    currency: str = "USDC"
    tx_ref: Optional[str] = None
    network: Optional[str] = None
    category: Optional[str] = None
    run_id: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("rcpt"))
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "action_id": self.action_id,
            "amount_usd": self.amount_usd,
            "currency": self.currency,
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "network": self.network,
            "category": self.category,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SpendReceipt":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            action_id=data["action_id"],
            amount_usd=data["amount_usd"],
            currency=data.get("currency", "USDC"),
            status=SettlementStatus(data.get("status", "settled")),
            tx_ref=data.get("tx_ref"),
            network=data.get("network"),
            category=data.get("category"),
            run_id=data.get("run_id"),
        )


@dataclass(frozen=True)
class LedgerRecord:
    seq: int
    kind: RecordKind
    timestamp: float
    payload: dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }


class AuditLedger:
    """Tamper-evident append-only ledger of what was tried, spent and decided."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        hmac_key: Optional[bytes] = None,
    ):
        self.path = Path(path) if path is not None else None
        self._records: list[LedgerRecord] = []
        self._lock = threading.Lock()
        self._last_hash = ""
        self._hmac_key = b""
        if self.path is not None:
            self._hmac_key = hmac_key or self._load_or_create_key(key_path or DEFAULT_KEY_PATH)
            ensure_private_dir(self.path.parent)
            ensure_private_file(self.path)
            self._load()

    @classmethod
    def replay(
        cls,
        path: Path,
        key_path: Optional[Path] = None,
        hmac_key: Optional[bytes] = None,
    ) -> "AuditLedger":
        """Rebuild a ledger from its JSONL file, verifying the hash chain."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"No audit ledger at {path}")
        return cls(path=path, key_path=key_path, hmac_key=hmac_key)

    # -- writes --

    def record(self, entry: LogEntry) -> LedgerRecord:
        return self._append(RecordKind.ENTRY, entry.to_dict(), entry.timestamp)

    def log(self, level: str, category: str, message: str, data: Optional[dict] = None) -> LedgerRecord:
        return self.record(LogEntry(level=level, category=category, message=message, data=data))

    def record_assessment(self, assessment: RiskAssessment) -> LedgerRecord:
        return self._append(RecordKind.ASSESSMENT, assessment.to_dict(), time.time())

    def record_spend(self, receipt: SpendReceipt) -> LedgerRecord:
        """Append a receipt. It must be backed by an approved assessment for the same action."""
        with self._lock:
            approved = sum(
                1
                for r in self._records
                if r.kind == RecordKind.ASSESSMENT
                and r.payload["action_id"] == receipt.action_id
                and r.payload["approved"]
            )
            receipted = sum(
                1
                for r in self._records
                if r.kind == RecordKind.RECEIPT and r.payload["action_id"] == receipt.action_id
            )
            if receipted >= approved:
                raise StateError(f"Receipt for {receipt.action_id} has no approved assessment")
            return self._append_locked(RecordKind.RECEIPT, receipt.to_dict(), receipt.timestamp)

    # -- reads --

    def records(self) -> list[LedgerRecord]:
        with self._lock:
            return list(self._records)

    def receipts(self) -> list[SpendReceipt]:
        return [SpendReceipt.from_dict(r.payload) for r in self.records() if r.kind == RecordKind.RECEIPT]

    def report(self) -> dict:
        """Aggregate view, recomputed from the records on every call."""
        records = self.records()
        entries = [copy.deepcopy(r.payload) for r in records if r.kind == RecordKind.ENTRY]
        assessments = [copy.deepcopy(r.payload) for r in records if r.kind == RecordKind.ASSESSMENT]
        receipts = [copy.deepcopy(r.payload) for r in records if r.kind == RecordKind.RECEIPT]

        by_action: dict[str, int] = {}
        by_category: dict[str, int] = {}
        settled_micros = 0
        for receipt in receipts:
            if receipt["status"] != SettlementStatus.SETTLED.value:
                continue
            micros = cost_to_micros(receipt["amount_usd"])
            settled_micros += micros
            by_action[receipt["action_id"]] = by_action.get(receipt["action_id"], 0) + micros
            category = receipt.get("category") or UNCATEGORIZED
            by_category[category] = by_category.get(category, 0) + micros

        return {
            "totals": {
                "entries": len(entries),
                "assessments": len(assessments),
                "approved": sum(1 for a in assessments if a["approved"]),
                "blocked": sum(1 for a in assessments if not a["approved"]),
                "receipts": len(receipts),
                "failed_receipts": sum(1 for r in receipts if r["status"] == SettlementStatus.FAILED.value),
                "spent_usd": micros_to_usd(settled_micros),
            },
            "spend_by_action": {k: micros_to_usd(v) for k, v in by_action.items()},
            "spend_by_category": {k: micros_to_usd(v) for k, v in by_category.items()},
            "receipts": receipts,
            "assessments": assessments,
            "entries": entries,
        }

    # -- internals --

    def _append(self, kind: RecordKind, payload: dict, timestamp: float) -> LedgerRecord:
        with self._lock:
            return self._append_locked(kind, payload, timestamp)

    def _append_locked(self, kind: RecordKind, payload: dict, timestamp: float) -> LedgerRecord:
        record = LedgerRecord(
            seq=len(self._records),
            kind=kind,
            timestamp=timestamp,
            payload=json.loads(json.dumps(payload, default=str)),
        )
        if self.path is not None:
            self._persist(record)
        self._records.append(record)
        return record

    def _load_or_create_key(self, key_path: Path) -> bytes:
        env_key = os.getenv("PURSER_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if key_path.exists() and key_path.stat().st_size > 0:
            return key_path.read_bytes().strip()
        ensure_private_dir(key_path.parent)
        key = secrets.token_hex(32).encode()
        key_path.write_bytes(key)
        ensure_private_file(key_path)
        return key

    def _record_hash(self, body: dict, prev_hash: str) -> str:
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _persist(self, record: LedgerRecord) -> None:
        body = record.to_dict()
        current_hash = self._record_hash(body, self._last_hash)
        line = dict(body, prev_hash=self._last_hash or None, hash=current_hash)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(line, separators=(",", ":"), default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._last_hash = current_hash

    def _load(self) -> None:
        expected_prev = ""
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise LedgerIntegrityError(f"Audit chain broken: unreadable line {lineno}") from exc
                prev_hash = raw.pop("prev_hash", None) or ""
                record_hash = raw.pop("hash", None) or ""
                if prev_hash != expected_prev:
                    raise LedgerIntegrityError(f"Audit chain broken: previous hash mismatch at line {lineno}")
                if not hmac.compare_digest(self._record_hash(raw, prev_hash), record_hash):
                    raise LedgerIntegrityError(f"Audit chain broken: record hash mismatch at line {lineno}")
                if raw.get("seq") != len(self._records):
                    raise LedgerIntegrityError(f"Audit chain broken: sequence gap at line {lineno}")
                self._records.append(
                    LedgerRecord(
                        seq=raw["seq"],
                        kind=RecordKind(raw["kind"]),
                        timestamp=raw["timestamp"],
                        payload=raw["payload"],
                    )
                )
                expected_prev = record_hash
        self._last_hash = expected_prev
        if self._records:
            logger.info("Loaded %d audit records from %s", len(self._records), self.path)
