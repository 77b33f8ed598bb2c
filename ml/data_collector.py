"""
Training data collection.

Routing decisions are buffered by request id and completed with their
outcome once the provider call finishes. Completed entries become training
examples for the PredictionEngine; outcomes also feed rolling per-provider
performance snapshots and per-user usage patterns.
"""

import logging
import time
from collections import OrderedDict, Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Deque, Iterable

import numpy as np

from .feature_extractor import RequestFeatures

logger = logging.getLogger(__name__)

BUFFER_LIMIT = 10000
SNAPSHOT_LIMIT = 100
RECENT_WINDOW = 5

OPTIMAL_QUALITY = 0.8
OPTIMAL_COST = 0.05
OPTIMAL_LATENCY_MS = 3000

DEFAULT_PERFORMANCE = {
    "latency": 1000.0,
    "success_rate": 0.95,
    "cost": 0.01,
    "quality": 0.8,
}


@dataclass
class RoutingOutcome:
    cost: float
    latency_ms: float
    quality: float
    success: bool
    user_feedback: Optional[float] = None


@dataclass
class CollectedDecision:
    request_id: str
    user_id: str
    timestamp: float
    features: RequestFeatures
    provider: str
    model: str
    reasoning: str = ""
    confidence: float = 0.0
    outcome: Optional[RoutingOutcome] = None


@dataclass(frozen=True)
class TrainingExample:
    """A completed routing decision with its observed outcome"""
    request_id: str
    user_id: str
    features: RequestFeatures
    provider: str
    model: str
    cost: float
    latency_ms: float
    quality: float
    was_optimal: bool
    user_satisfaction: Optional[float] = None
    timestamp: float = 0.0


@dataclass
class PerformanceSnapshot:
    timestamp: float
    latency: float
    success: float
    cost: float
    quality: float


def was_optimal(quality: float, cost: float, latency_ms: float) -> bool:
    """Retrospective judgement of a routing outcome"""
    return quality > OPTIMAL_QUALITY and cost < OPTIMAL_COST and latency_ms < OPTIMAL_LATENCY_MS


class TrainingDataCollector:
    """Bounded in-memory store of routing decisions and outcomes"""

    def __init__(self, buffer_limit: int = BUFFER_LIMIT, clock=time.time):
        self.buffer_limit = buffer_limit
        self._clock = clock
        self._buffer: "OrderedDict[str, CollectedDecision]" = OrderedDict()
        self._snapshots: Dict[str, Deque[PerformanceSnapshot]] = {}

    def collect_routing_decision(self, request_id: str, user_id: str, features: RequestFeatures,
                                 provider: str, model: str, reasoning: str = "",
                                 confidence: float = 0.0) -> None:
        """Buffer a routing decision until its outcome arrives"""
        self._buffer[request_id] = CollectedDecision(
            request_id=request_id,
            user_id=user_id,
            timestamp=self._clock(),
            features=features,
            provider=provider,
            model=model,
            reasoning=reasoning,
            confidence=confidence,
        )
        self._buffer.move_to_end(request_id)
        while len(self._buffer) > self.buffer_limit:
            self._buffer.popitem(last=False)

    def collect_outcome(self, request_id: str, cost: float, latency_ms: float, quality: float,
                        success: bool, user_feedback: Optional[float] = None,
                        provider: Optional[str] = None, model: Optional[str] = None) -> bool:
        """
        Attach the outcome to a buffered decision.

        provider/model override the decision when recovery served the
        request elsewhere.

        Returns:
            bool: False when no decision is buffered under request_id
        """
        decision = self._buffer.get(request_id)
        if decision is None:
            logger.warning(f"No routing data found for request {request_id}")
            return False

        if provider:
            decision.provider = provider
        if model:
            decision.model = model
        decision.outcome = RoutingOutcome(
            cost=max(0.0, cost),
            latency_ms=max(0.0, latency_ms),
            quality=min(1.0, max(0.0, quality)),
            success=success,
            user_feedback=user_feedback,
        )

        snapshots = self._snapshots.setdefault(decision.provider, deque(maxlen=SNAPSHOT_LIMIT))
        snapshots.append(PerformanceSnapshot(
            timestamp=self._clock(),
            latency=decision.outcome.latency_ms,
            success=1.0 if success else 0.0,
            cost=decision.outcome.cost,
            quality=decision.outcome.quality,
        ))
        return True

    def get_training_examples(self, limit: int = 1000, min_quality: float = 0.5) -> List[TrainingExample]:
        """Completed, successful examples at or above min_quality, most recent last"""
        examples = [
            TrainingExample(
                request_id=d.request_id,
                user_id=d.user_id,
                features=d.features,
                provider=d.provider,
                model=d.model,
                cost=d.outcome.cost,
                latency_ms=d.outcome.latency_ms,
                quality=d.outcome.quality,
                was_optimal=was_optimal(d.outcome.quality, d.outcome.cost, d.outcome.latency_ms),
                user_satisfaction=d.outcome.user_feedback,
                timestamp=d.timestamp,
            )
            for d in self._completed()
            if d.outcome.success and d.outcome.quality >= min_quality
        ]
        return examples[-limit:] if limit else examples

    def _completed(self) -> Iterable[CollectedDecision]:
        return (d for d in self._buffer.values() if d.outcome is not None)

    def get_recent_performance(self, providers: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, float]]:
        """Averages of the last five snapshots per provider, defaults when none"""
        names = list(providers) if providers is not None else list(self._snapshots)
        performance = {}
        for provider in names:
            recent = list(self._snapshots.get(provider, ()))[-RECENT_WINDOW:]
            if not recent:
                performance[provider] = dict(DEFAULT_PERFORMANCE)
                continue
            performance[provider] = {
                "latency": float(np.mean([s.latency for s in recent])),
                "success_rate": float(np.mean([s.success for s in recent])),
                "cost": float(np.mean([s.cost for s in recent])),
                "quality": float(np.mean([s.quality for s in recent])),
            }
        return performance

    def get_user_patterns(self, user_id: str) -> Dict[str, Any]:
        """Provider shares, top models, peak hours and average cost of a user"""
        decisions = [d for d in self._completed() if d.user_id == user_id]
        if not decisions:
            return {
                "provider_preference": {},
                "preferred_models": [],
                "peak_usage_hours": [9, 14],
                "avg_cost": 0.01,
                "request_count": 0,
            }

        providers = Counter(d.provider for d in decisions)
        models = Counter(d.model for d in decisions)
        hours = Counter(datetime.fromtimestamp(d.timestamp, tz=timezone.utc).hour for d in decisions)
        return {
            "provider_preference": {p: count / len(decisions) for p, count in providers.items()},
            "preferred_models": [m for m, _ in models.most_common(3)],
            "peak_usage_hours": [h for h, _ in hours.most_common(3)],
            "avg_cost": float(np.mean([d.outcome.cost for d in decisions])),
            "request_count": len(decisions),
        }

    def cleanup_old_data(self, retention_days: float = 30) -> int:
        """Drop decisions and snapshots older than the retention window"""
        cutoff = self._clock() - retention_days * 24 * 60 * 60
        stale = [rid for rid, d in self._buffer.items() if d.timestamp < cutoff]
        for request_id in stale:
            del self._buffer[request_id]
        for provider, snapshots in self._snapshots.items():
            self._snapshots[provider] = deque(
                (s for s in snapshots if s.timestamp >= cutoff), maxlen=SNAPSHOT_LIMIT
            )
        logger.info(f"Cleaned up {len(stale)} training records older than {retention_days} days")
        return len(stale)

    def __len__(self) -> int:
        return len(self._buffer)

    def get_summary(self) -> Dict[str, Any]:
        completed = list(self._completed())
        return {
            "buffered": len(self._buffer),
            "completed": len(completed),
            "successful": sum(1 for d in completed if d.outcome.success),
            "snapshots": {p: len(s) for p, s in self._snapshots.items()},
        }
