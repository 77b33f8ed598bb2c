import asyncio

import pytest

from core.config import CircuitBreakerConfig
from core.data_models import CircuitState
from core.errors import CircuitOpenError, ServerError, ProviderTimeoutError, RateLimitError
from resilience import CircuitBreakerRegistry


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=3, success_threshold=2, timeout_ms=10_000), clock=clock
    )


async def fail(breakers, provider, times):
    for _ in range(times):
        await breakers.record_failure(provider)


class TestTransitions:
    def test_unknown_provider_is_closed_and_available(self, breakers):
        assert breakers.get_state("openai") == CircuitState.CLOSED
        assert breakers.is_available("openai")

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, breakers):
        await fail(breakers, "openai", 2)
        assert breakers.get_state("openai") == CircuitState.CLOSED

        await fail(breakers, "openai", 1)

        assert breakers.get_state("openai") == CircuitState.OPEN
        assert not breakers.is_available("openai")
        assert breakers.snapshot("openai").times_opened == 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_count_while_closed(self, breakers):
        await fail(breakers, "openai", 2)
        await breakers.record_success("openai")
        await fail(breakers, "openai", 2)

        assert breakers.get_state("openai") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_rejects_until_timeout_then_half_opens(self, breakers, clock):
        await fail(breakers, "openai", 3)

        with pytest.raises(CircuitOpenError):
            await breakers.before_call("openai")

        clock.advance(10)
        assert breakers.is_available("openai")
        await breakers.before_call("openai")
        assert breakers.get_state("openai") == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_closes_after_enough_successes(self, breakers, clock):
        await fail(breakers, "openai", 3)
        clock.advance(10)
        await breakers.before_call("openai")

        await breakers.record_success("openai")
        assert breakers.get_state("openai") == CircuitState.HALF_OPEN
        await breakers.record_success("openai")

        record = breakers.snapshot("openai")
        assert record.state == CircuitState.CLOSED
        assert record.failures == 0

    @pytest.mark.asyncio
    async def test_half_open_reopens_on_failure(self, breakers, clock):
        await fail(breakers, "openai", 3)
        clock.advance(10)
        await breakers.before_call("openai")

        await breakers.record_failure("openai")

        assert breakers.get_state("openai") == CircuitState.OPEN
        assert breakers.snapshot("openai").times_opened == 2
        assert not breakers.is_available("openai")

    @pytest.mark.asyncio
    async def test_providers_are_independent(self, breakers):
        await fail(breakers, "openai", 3)
        assert breakers.get_state("google") == CircuitState.CLOSED
        assert breakers.is_available("google")

    @pytest.mark.asyncio
    async def test_reset(self, breakers):
        await fail(breakers, "openai", 3)
        await fail(breakers, "google", 3)

        breakers.reset("openai")
        assert breakers.get_state("openai") == CircuitState.CLOSED
        assert breakers.get_state("google") == CircuitState.OPEN

        breakers.reset()
        assert breakers.get_state("google") == CircuitState.CLOSED


class TestCall:
    @pytest.mark.asyncio
    async def test_success_passes_result_through(self, breakers):
        async def ok():
            return "done"

        assert await breakers.call("openai", ok) == "done"
        assert breakers.snapshot("openai").successes == 1

    @pytest.mark.asyncio
    async def test_router_errors_count_and_propagate(self, breakers):
        async def rate_limited():
            raise RateLimitError("slow down", provider="openai")

        with pytest.raises(RateLimitError):
            await breakers.call("openai", rate_limited)
        assert breakers.snapshot("openai").failures == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_timeout(self, breakers):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(ProviderTimeoutError):
            await breakers.call("openai", slow, timeout=0.01)
        assert breakers.snapshot("openai").failures == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, breakers):
        async def broken():
            raise KeyError("missing")

        with pytest.raises(ServerError) as excinfo:
            await breakers.call("openai", broken)
        assert isinstance(excinfo.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_call(self, breakers):
        await fail(breakers, "openai", 3)
        calls = []

        async def tracked():
            calls.append(1)

        with pytest.raises(CircuitOpenError):
            await breakers.call("openai", tracked)
        assert calls == []

    @pytest.mark.asyncio
    async def test_cancelled_call_counts_as_failure(self, breakers):
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(breakers.call("openai", hang))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert breakers.snapshot("openai").failures == 1
        assert breakers.get_state("openai") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_repeated_cancellations_open_circuit(self, breakers):
        async def hang():
            await asyncio.sleep(10)

        for _ in range(breakers.config.failure_threshold):
            task = asyncio.create_task(breakers.call("openai", hang))
            await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert breakers.get_state("openai") == CircuitState.OPEN
        assert breakers.snapshot("openai").times_opened == 1
        with pytest.raises(CircuitOpenError):
            await breakers.call("openai", hang)

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self, breakers):
        await asyncio.gather(*(breakers.record_failure("openai") for _ in range(10)))
        record = breakers.snapshot("openai")
        assert record.failures == 10
        assert record.times_opened == 1


class TestStatuses:
    @pytest.mark.asyncio
    async def test_status_dict(self, breakers, clock):
        await fail(breakers, "openai", 3)
        await breakers.record_success("google")
        clock.advance(4)

        statuses = breakers.get_statuses()

        assert statuses["openai"]["state"] == "OPEN"
        assert statuses["openai"]["is_available"] is False
        assert statuses["openai"]["retry_in_seconds"] == pytest.approx(6)
        assert statuses["openai"]["times_opened"] == 1
        assert statuses["google"] == {
            "state": "CLOSED",
            "failures": 0,
            "successes": 1,
            "is_available": True,
            "retry_in_seconds": 0.0,
            "times_opened": 0,
        }

    @pytest.mark.asyncio
    async def test_elapsed_open_circuit_reports_half_open(self, breakers, clock):
        await fail(breakers, "openai", 3)
        clock.advance(10)

        assert breakers.get_state("openai") == CircuitState.HALF_OPEN
        assert breakers.is_available("openai")
        status = breakers.get_statuses()["openai"]
        assert status["state"] == "HALF_OPEN"
        assert status["is_available"] is True
        assert status["retry_in_seconds"] == 0.0

        await breakers.before_call("openai")
        assert breakers.snapshot("openai").state == CircuitState.HALF_OPEN
