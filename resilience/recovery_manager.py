"""
Recovery orchestration for provider calls.

ResilienceManager runs a call against the primary candidate and, on failure,
walks the recovery ladder: retries with exponential backoff on the same
provider, ranked fallback providers, then graceful degradation to cheap
models. Every error is recorded per provider and error code and logged with a
severity classification.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable, Awaitable, Sequence, Tuple

import numpy as np

from core.config import RetryConfig, CircuitBreakerConfig
from core.constants import DEGRADED_MODELS, find_fallback_model
from core.data_models import ChatResponse, FallbackOption
from core.errors import (
    RouterError, CircuitOpenError, AuthenticationError, InvalidRequestError,
    is_retryable, classify_severity,
)

from .circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)

SEVERITY_LOG_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}

RECENT_ERROR_WINDOW_SECONDS = 60 * 60

# Executor signature: (provider_id, model) -> response
Executor = Callable[[str, str], Awaitable[ChatResponse]]


@dataclass
class RecoveryContext:
    """Identifies the request being recovered"""
    user_id: str
    provider: str
    model: str
    request_id: str
    attempt: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecoveryResult:
    """Outcome of execute_with_recovery"""
    success: bool
    recovery_strategy: str
    response: Optional[ChatResponse] = None
    final_provider: Optional[str] = None
    final_model: Optional[str] = None
    total_attempts: int = 0
    total_latency_ms: float = 0.0
    cost_incurred: float = 0.0
    last_error: Optional[BaseException] = None
    attempts: List[Tuple[str, str, str]] = field(default_factory=list)


@dataclass
class ErrorMetric:
    count: int = 0
    last_occurrence: float = 0.0
    severity: str = "medium"


class ResilienceManager:
    """
    Retry, fallback and degradation around provider calls.

    Circuit state is shared through a CircuitBreakerRegistry; the manager
    itself only keeps error metrics.
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        graceful_degradation: bool = True,
        fallback_enabled: bool = True,
        call_timeout: Optional[float] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        seed: Optional[int] = None,
    ):
        """
        Initialize the manager.

        Args:
            retry_config: Backoff settings
            circuit_config: Circuit thresholds, used when no registry is given
            graceful_degradation: Whether to fall back to cheap models last
            fallback_enabled: Whether to try fallback providers at all
            call_timeout: Per-call timeout in seconds
            breakers: Shared circuit breaker registry
            clock: Time source
            sleep: Coroutine used for backoff delays
            seed: Seed for the jitter generator
        """
        self.retry_config = retry_config or RetryConfig()
        self.graceful_degradation = graceful_degradation
        self.fallback_enabled = fallback_enabled
        self.call_timeout = call_timeout
        self.breakers = breakers or CircuitBreakerRegistry(circuit_config, clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._rng = np.random.default_rng(seed)
        self._error_metrics: Dict[str, ErrorMetric] = {}
        self._error_log: List[Tuple[float, str, str, str]] = []
        self._strategy_counts: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def compute_backoff_delay(self, attempt: int) -> float:
        """
        Delay in milliseconds before retry number `attempt` (1-based).

        min(base * multiplier^(attempt-1), max_delay) plus symmetric jitter,
        floored at 0.
        """
        cfg = self.retry_config
        delay = min(cfg.base_delay_ms * cfg.backoff_multiplier ** (attempt - 1), cfg.max_delay_ms)
        jitter = delay * cfg.jitter_factor * self._rng.uniform(-1, 1)
        return max(0.0, float(delay + jitter))

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def execute_with_recovery(
        self,
        context: RecoveryContext,
        candidates: Sequence[FallbackOption],
        executor: Executor,
        degradation_candidates: Optional[Sequence[FallbackOption]] = None,
    ) -> RecoveryResult:
        """
        Execute a provider call with the full recovery ladder.

        Args:
            context: Request identity, used for logging and error metrics
            candidates: Primary first, then ranked fallbacks
            executor: Coroutine function performing the call for (provider, model)
            degradation_candidates: Cheap (provider, model) pairs for the last
                resort; derived from the degraded model list when omitted

        Returns:
            RecoveryResult: success flag, response and the strategy that won
        """
        if not candidates:
            return RecoveryResult(success=False, recovery_strategy="all_failed")

        start = self._clock()
        result = RecoveryResult(success=False, recovery_strategy="all_failed")
        primary = candidates[0]

        # Primary
        error = await self._try(primary.provider, primary.model, executor, context, result, "primary")
        if error is None:
            return self._finish(result, "primary_success", start)

        if isinstance(error, (AuthenticationError, InvalidRequestError)):
            logger.info(f"Non-retryable error from {primary.provider}, stopping recovery")
            return self._finish(result, "non_retryable_error", start)

        # Retries on the same provider
        if is_retryable(error) and not isinstance(error, CircuitOpenError):
            for attempt in range(1, self.retry_config.max_retries + 1):
                delay_ms = self.compute_backoff_delay(attempt)
                logger.debug(f"Retrying {primary.provider} in {delay_ms:.0f}ms (attempt {attempt})")
                await self._sleep(delay_ms / 1000)

                context.attempt = attempt
                error = await self._try(primary.provider, primary.model, executor, context, result, "retry")
                if error is None:
                    return self._finish(result, "retry_success", start)
                if isinstance(error, CircuitOpenError) or not is_retryable(error):
                    break

        # Ranked fallbacks
        tried = {(primary.provider, primary.model)}
        if self.fallback_enabled:
            for candidate in candidates[1:]:
                if candidate.provider == primary.provider:
                    continue
                if not self.breakers.is_available(candidate.provider):
                    logger.debug(f"Skipping fallback {candidate.provider}: circuit open")
                    continue
                model = candidate.model or find_fallback_model(context.model, candidate.provider)
                if not model:
                    continue
                tried.add((candidate.provider, model))
                error = await self._try(candidate.provider, model, executor, context, result, "fallback")
                if error is None:
                    return self._finish(result, "fallback_success", start)

        # Graceful degradation
        if self.graceful_degradation:
            if degradation_candidates is None:
                degradation_candidates = self._default_degradation_candidates(candidates)
            for candidate in degradation_candidates:
                if (candidate.provider, candidate.model) in tried:
                    continue
                if not self.breakers.is_available(candidate.provider):
                    continue
                tried.add((candidate.provider, candidate.model))
                error = await self._try(candidate.provider, candidate.model, executor, context, result, "degradation")
                if error is None:
                    return self._finish(result, "graceful_degradation", start)

        return self._finish(result, "all_failed", start)

    @staticmethod
    def _default_degradation_candidates(candidates: Sequence[FallbackOption]) -> List[FallbackOption]:
        providers = []
        for candidate in candidates:
            if candidate.provider not in providers:
                providers.append(candidate.provider)
        return [
            FallbackOption(provider=provider, model=model, cost=0.0)
            for model in DEGRADED_MODELS
            for provider in providers
        ]

    async def _try(self, provider: str, model: str, executor: Executor, context: RecoveryContext,
                   result: RecoveryResult, phase: str) -> Optional[BaseException]:
        """Run one attempt; returns None on success, the error otherwise"""
        result.total_attempts += 1
        try:
            response = await self.breakers.call(
                provider, lambda: executor(provider, model), timeout=self.call_timeout
            )
        except RouterError as e:
            result.last_error = e
            result.attempts.append((phase, provider, type(e).__name__))
            self.record_error(e, provider, context)
            return e

        result.attempts.append((phase, provider, "ok"))
        result.success = True
        result.response = response
        result.final_provider = provider
        result.final_model = model
        result.cost_incurred = response.usage.cost
        return None

    def _finish(self, result: RecoveryResult, strategy: str, start: float) -> RecoveryResult:
        result.recovery_strategy = strategy
        result.total_latency_ms = (self._clock() - start) * 1000
        self._strategy_counts[strategy] = self._strategy_counts.get(strategy, 0) + 1
        if strategy not in ("primary_success", "all_failed", "non_retryable_error"):
            logger.info(
                f"Recovered via {strategy} on {result.final_provider}/{result.final_model} "
                f"after {result.total_attempts} attempts"
            )
        return result

    # ------------------------------------------------------------------
    # Error metrics
    # ------------------------------------------------------------------

    def record_error(self, error: BaseException, provider: Optional[str] = None,
                     context: Optional[RecoveryContext] = None) -> None:
        """Count an error under provider:code and log it at its severity"""
        provider = provider or getattr(error, "provider", None) or "unknown"
        code = getattr(error, "error_code", type(error).__name__)
        severity = classify_severity(error)
        now = self._clock()

        metric = self._error_metrics.setdefault(f"{provider}:{code}", ErrorMetric())
        metric.count += 1
        metric.last_occurrence = now
        metric.severity = severity

        self._error_log.append((now, provider, code, severity))
        cutoff = now - RECENT_ERROR_WINDOW_SECONDS
        while self._error_log and self._error_log[0][0] < cutoff:
            self._error_log.pop(0)

        logger.log(
            SEVERITY_LOG_LEVELS.get(severity, logging.WARNING),
            f"Provider error [{severity}] {provider}:{code}: {error}",
            extra={
                "provider": provider,
                "error_code": code,
                "severity": severity,
                "request_id": context.request_id if context else None,
                "user_id": context.user_id if context else None,
                "attempt": context.attempt if context else None,
            },
        )

    def is_provider_available(self, provider: str) -> bool:
        return self.breakers.is_available(provider)

    def get_circuit_breaker_statuses(self) -> Dict[str, Dict[str, Any]]:
        return self.breakers.get_statuses()

    def get_error_statistics(self) -> Dict[str, Any]:
        """
        Summarize recorded errors.

        Returns:
            Dict with total_errors, errors_by_type, errors_by_provider,
            critical_errors, recent_errors (last hour) and recovery strategy
            counts
        """
        by_type: Dict[str, int] = {}
        by_provider: Dict[str, int] = {}
        critical = 0
        for key, metric in self._error_metrics.items():
            provider, code = key.split(":", 1)
            by_type[code] = by_type.get(code, 0) + metric.count
            by_provider[provider] = by_provider.get(provider, 0) + metric.count
            if metric.severity == "critical":
                critical += metric.count

        cutoff = self._clock() - RECENT_ERROR_WINDOW_SECONDS
        return {
            "total_errors": sum(m.count for m in self._error_metrics.values()),
            "errors_by_type": by_type,
            "errors_by_provider": by_provider,
            "critical_errors": critical,
            "recent_errors": sum(1 for entry in self._error_log if entry[0] >= cutoff),
            "recovery_strategies": dict(self._strategy_counts),
        }

    def reset_metrics(self) -> None:
        self._error_metrics.clear()
        self._error_log.clear()
        self._strategy_counts.clear()
