"""
Resilience Package.

Per-provider circuit breakers and the retry/fallback/degradation ladder.
"""

from .circuit_breaker import CircuitBreakerRegistry, CircuitBreakerState
from .recovery_manager import ResilienceManager, RecoveryContext, RecoveryResult, SEVERITY_LOG_LEVELS

__all__ = [
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "ResilienceManager",
    "RecoveryContext",
    "RecoveryResult",
    "SEVERITY_LOG_LEVELS",
]
