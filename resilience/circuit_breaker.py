"""
Per-provider circuit breakers.

Each provider has its own state record and its own lock, kept in a registry
keyed by provider id. CLOSED opens after `failure_threshold` consecutive
failures; OPEN becomes HALF_OPEN once `timeout_ms` has elapsed; HALF_OPEN
closes after `success_threshold` consecutive successes and re-opens on any
failure.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Dict, Any, Callable, Awaitable, Optional, TypeVar

from core.config import CircuitBreakerConfig
from core.data_models import CircuitState
from core.errors import RouterError, CircuitOpenError, ProviderTimeoutError, ServerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CircuitBreakerState:
    """Health record of one provider"""
    provider: str
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    last_failure_time: float = 0.0
    last_success_time: float = 0.0
    next_attempt_time: float = 0.0
    times_opened: int = 0


class CircuitBreakerRegistry:
    """Circuit breaker state for every provider, keyed by provider id"""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._states: Dict[str, CircuitBreakerState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _record(self, provider: str) -> CircuitBreakerState:
        record = self._states.get(provider)
        if record is None:
            record = self._states[provider] = CircuitBreakerState(provider=provider)
            self._locks[provider] = asyncio.Lock()
        return record

    def _lock(self, provider: str) -> asyncio.Lock:
        self._record(provider)
        return self._locks[provider]

    # Snapshot reads

    def get_state(self, provider: str) -> CircuitState:
        """
        Effective state of a provider's circuit.

        An OPEN circuit whose timeout has elapsed reports HALF_OPEN, matching
        is_available. The stored record moves on the next before_call.
        """
        return self._effective_state(self._record(provider))

    def _effective_state(self, record: CircuitBreakerState) -> CircuitState:
        if record.state == CircuitState.OPEN and self._clock() >= record.next_attempt_time:
            return CircuitState.HALF_OPEN
        return record.state

    def snapshot(self, provider: str) -> CircuitBreakerState:
        """Copy of a provider's record"""
        return replace(self._record(provider))

    def is_available(self, provider: str) -> bool:
        """False only while the circuit is OPEN and its timeout has not elapsed"""
        record = self._states.get(provider)
        if record is None:
            return True
        if record.state == CircuitState.OPEN:
            return self._clock() >= record.next_attempt_time
        return True

    # Transitions

    async def before_call(self, provider: str) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is OPEN and still cooling down
        """
        async with self._lock(provider):
            record = self._record(provider)
            if record.state != CircuitState.OPEN:
                return
            now = self._clock()
            if now < record.next_attempt_time:
                raise CircuitOpenError(
                    f"Circuit breaker is open for {provider} "
                    f"(retry in {record.next_attempt_time - now:.1f}s)",
                    provider=provider
                )
            record.state = CircuitState.HALF_OPEN
            record.successes = 0
            logger.info(f"Circuit breaker half-open for {provider}")

    async def record_success(self, provider: str) -> None:
        async with self._lock(provider):
            record = self._record(provider)
            record.successes += 1
            record.last_success_time = self._clock()

            if record.state == CircuitState.HALF_OPEN:
                if record.successes >= self.config.success_threshold:
                    record.state = CircuitState.CLOSED
                    record.failures = 0
                    logger.info(f"Circuit breaker closed for {provider}")
            elif record.state == CircuitState.CLOSED:
                record.failures = 0

    async def record_failure(self, provider: str) -> None:
        async with self._lock(provider):
            self.record_failure_nowait(provider)

    def record_failure_nowait(self, provider: str) -> None:
        """
        Record a failure without taking the provider lock.

        For cleanup paths that cannot await, such as a closed or cancelled
        stream. The update itself never suspends, so it cannot interleave
        with a locked transition.
        """
        record = self._record(provider)
        now = self._clock()
        record.failures += 1
        record.last_failure_time = now

        if record.state == CircuitState.CLOSED:
            if record.failures >= self.config.failure_threshold:
                self._open(record, now)
        elif record.state == CircuitState.HALF_OPEN:
            self._open(record, now)

    def _open(self, record: CircuitBreakerState, now: float) -> None:
        record.state = CircuitState.OPEN
        record.next_attempt_time = now + self.config.timeout_ms / 1000
        record.times_opened += 1
        logger.warning(
            f"Circuit breaker opened for {record.provider} after {record.failures} failures"
        )

    async def call(self, provider: str, func: Callable[[], Awaitable[T]], timeout: Optional[float] = None) -> T:
        """
        Run one provider call through the breaker.

        The call itself runs outside the lock. Timeouts and cancellation count
        as failures; unexpected exceptions are wrapped as ServerError.

        Args:
            provider: Provider id
            func: Zero-argument coroutine function performing the call
            timeout: Optional timeout in seconds

        Returns:
            Whatever func returns
        """
        await self.before_call(provider)
        try:
            if timeout is not None:
                result = await asyncio.wait_for(func(), timeout)
            else:
                result = await func()
        except RouterError:
            await self.record_failure(provider)
            raise
        except asyncio.TimeoutError as e:
            await self.record_failure(provider)
            raise ProviderTimeoutError(f"Request to {provider} timed out after {timeout}s", provider=provider) from e
        except asyncio.CancelledError:
            await self.record_failure(provider)
            raise
        except Exception as e:
            await self.record_failure(provider)
            raise ServerError(f"Unexpected error from {provider}: {e}", provider=provider) from e

        await self.record_success(provider)
        return result

    def reset(self, provider: Optional[str] = None) -> None:
        """Force one provider (or every provider) back to CLOSED"""
        targets = [provider] if provider else list(self._states)
        for name in targets:
            self._states[name] = CircuitBreakerState(provider=name)

    def get_statuses(self) -> Dict[str, Dict[str, Any]]:
        now = self._clock()
        return {
            provider: {
                "state": self._effective_state(record).value,
                "failures": record.failures,
                "successes": record.successes,
                "is_available": self.is_available(provider),
                "retry_in_seconds": max(0.0, record.next_attempt_time - now)
                if record.state == CircuitState.OPEN else 0.0,
                "times_opened": record.times_opened,
            }
            for provider, record in self._states.items()
        }
