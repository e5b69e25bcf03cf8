"""
Weighted fusion of confidence-scored signals.

Sources that failed to produce data are left out entirely. Omission lowers
the composite confidence; a zero-score placeholder would instead drag the
score toward neutral at full confidence.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


POSITIVE_THRESHOLD = 0.25
NEGATIVE_THRESHOLD = -0.25
DEFAULT_WEIGHT = 0.33

SOURCE_WEIGHTS: dict[str, float] = {
    "news": 0.35,
    "index": 0.30,
    "on-chain": 0.35,
}

_SOURCE_ALIASES = {
    "onchain": "on-chain",
    "fear-greed": "index",
    "fear-greed-index": "index",
}


class SentimentLabel(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"

    @classmethod
    def for_score(cls, score: float) -> "SentimentLabel":
        if score > POSITIVE_THRESHOLD:
            return cls.POSITIVE
        if score < NEGATIVE_THRESHOLD:
            return cls.NEGATIVE
        return cls.NEUTRAL


def source_class(source: str) -> str:
    key = source.strip().lower()
    return _SOURCE_ALIASES.get(key, key)


@dataclass(frozen=True)
class Signal:
    """One source's opinion, score in [-1, 1] and confidence in [0, 1]."""

    source: str
    score: float
    confidence: float
    label: Optional[SentimentLabel] = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not -1.0 <= self.score <= 1.0 or math.isnan(self.score):
            raise ValueError(f"Signal score out of range [-1, 1]: {self.score}")
        if not 0.0 <= self.confidence <= 1.0 or math.isnan(self.confidence):
            raise ValueError(f"Signal confidence out of range [0, 1]: {self.confidence}")
        if self.label is None:
            object.__setattr__(self, "label", SentimentLabel.for_score(self.score))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Signal":
        label = data.get("label")
        return cls(
            source=str(data["source"]),
            score=float(data["score"]),
            confidence=float(data.get("confidence", 1.0)),
            label=SentimentLabel(label) if label in SentimentLabel._value2member_map_ else None,
            details=dict(data.get("details") or {}),
        )


@dataclass(frozen=True)
class CompositeScore:
    score: float
    label: SentimentLabel
    confidence: float
    signal_count: int = 0

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "label": self.label.value,
            "confidence": self.confidence,
            "signal_count": self.signal_count,
        }


class SignalAggregator:
    """Pure, order-invariant weighted aggregation."""

    def __init__(self, weights: Optional[Mapping[str, float]] = None, default_weight: float = DEFAULT_WEIGHT):
        self.weights = {source_class(k): v for k, v in (weights or SOURCE_WEIGHTS).items()}
        self.default_weight = default_weight

    def weight_for(self, source: str) -> float:
        return self.weights.get(source_class(source), self.default_weight)

    def aggregate(self, signals: Iterable[Signal]) -> CompositeScore:
        signals = list(signals)
        if not signals:
            return CompositeScore(score=0.0, label=SentimentLabel.NEUTRAL, confidence=0.0)

        weighted = [self.weight_for(s.source) * s.confidence for s in signals]
        # fsum is exactly rounded, so input order cannot change the result.
        total_weight = math.fsum(weighted)
        weighted_sum = math.fsum(s.score * w for s, w in zip(signals, weighted))

        score = weighted_sum / total_weight if total_weight > 0 else 0.0
        score = max(-1.0, min(1.0, score))
        return CompositeScore(
            score=score,
            label=SentimentLabel.for_score(score),
            confidence=total_weight / len(signals),
            signal_count=len(signals),
        )


_DEFAULT_AGGREGATOR = SignalAggregator()


def aggregate(signals: Iterable[Signal]) -> CompositeScore:
    return _DEFAULT_AGGREGATOR.aggregate(signals)


def collect_signals(
    fetchers: Mapping[str, Callable[[], Optional[Signal]]],
    timeout: float = 10.0,
    max_workers: int = 4,
) -> list[Signal]:
    """
    Run side-effect-free signal reads concurrently and join before returning.

    A fetcher that raises, returns None, or misses the deadline is omitted.
    Results are ordered by fetcher name.
    """
    if not fetchers:
        return []
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="purser-signal")
    try:
        futures = {name: executor.submit(fetch) for name, fetch in fetchers.items()}
        wait(futures.values(), timeout=timeout)
        signals: list[Signal] = []
        for name in sorted(futures):
            future = futures[name]
            if not future.done():
                future.cancel()
                logger.warning("Signal source %s timed out after %gs; omitted", name, timeout)
                continue
            exc = future.exception()
            if exc is not None:
                logger.warning("Signal source %s failed; omitted: %s", name, exc)
                continue
            signal = future.result()
            if signal is not None:
                signals.append(signal)
        return signals
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


class TTLCache:
    """Small thread-safe cache with a fixed time-to-live per entry."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            stored_at, value = item
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = loader()
            self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
