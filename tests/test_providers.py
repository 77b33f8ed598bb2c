import pytest

from core.config import AppConfig, SimulatedProviderConfig
from core.data_models import UsageRecord
from core.errors import AuthenticationError, ConfigurationError, InvalidRequestError, LLMProviderError
from llm_providers import (
    InMemoryUsageSink,
    ProviderFactory,
    ProviderRegistry,
    SimulatedProvider,
    StaticCredentialProvider,
    create_provider_registry,
    estimate_tokens,
    get_provider_models,
)

from conftest import FakeAdapter, make_request


def simulated(provider="openai", **config):
    return ProviderFactory.create_provider(
        provider, config=SimulatedProviderConfig(**config) if config else None, time_scale=0, seed=3,
    )


class TestCatalog:
    def test_prices_are_per_thousand_tokens(self):
        gpt4 = {m.id: m for m in get_provider_models("openai")}["gpt-4"]
        assert gpt4.input_cost_per_1k == pytest.approx(0.03)
        assert gpt4.output_cost_per_1k == pytest.approx(0.06)
        assert get_provider_models("unknown") == []

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("hi") == 1
        assert estimate_tokens("x" * 9) == 3


class TestSimulatedProvider:
    @pytest.mark.asyncio
    async def test_chat(self):
        provider = simulated()
        response = await provider.chat(make_request("hello there", model="gpt-3.5-turbo"), "sk-test")

        assert response.provider == "openai"
        assert response.model == "gpt-3.5-turbo"
        assert response.content
        assert response.usage.total_tokens == response.usage.prompt_tokens + response.usage.completion_tokens
        assert response.usage.cost > 0
        assert provider.get_stats()["request_count"] == 1

    @pytest.mark.asyncio
    async def test_estimate_cost(self):
        cost = await simulated().estimate_cost(make_request("hi", model="gpt-4"))
        assert cost == pytest.approx((1 * 0.03 + 256 * 0.06) / 1000)

    @pytest.mark.asyncio
    async def test_price_multiplier(self):
        request = make_request("hi", model="gpt-4", max_tokens=10)
        base = await simulated().estimate_cost(request)
        doubled = await simulated(price_multiplier=2.0).estimate_cost(request)
        assert doubled == pytest.approx(2 * base)

    @pytest.mark.asyncio
    async def test_rejects_missing_credential_and_unknown_model(self):
        provider = simulated()
        with pytest.raises(AuthenticationError):
            await provider.chat(make_request(model="gpt-4"), "  ")
        with pytest.raises(InvalidRequestError):
            await provider.chat(make_request(model="claude-3-opus-20240229"), "sk-test")

    @pytest.mark.asyncio
    async def test_simulated_failures_make_it_unhealthy(self):
        provider = simulated(error_rate=1.0, base_latency_ms=0)
        for _ in range(3):
            with pytest.raises(LLMProviderError) as exc_info:
                await provider.chat(make_request(model="gpt-4"), "sk-test")
            assert exc_info.value.retryable

        status = await provider.health_check()

        assert not status.is_healthy
        assert status.error_rate == 1.0

    @pytest.mark.asyncio
    async def test_stream(self):
        provider = simulated()
        chunks = [c async for c in provider.chat_stream(make_request("hello", model="gpt-4"), "sk-test")]

        assert len({c.id for c in chunks}) == 1
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].usage is not None
        assert all(c.usage is None for c in chunks[:-1])
        assert "gpt-4" in "".join(c.delta for c in chunks)

    def test_needs_models(self):
        with pytest.raises(ValueError):
            SimulatedProvider("empty", models=[])


class TestFactoryAndRegistry:
    def test_unknown_provider_type(self):
        with pytest.raises(ConfigurationError):
            ProviderFactory.create_provider("mistral")
        with pytest.raises(ConfigurationError):
            ProviderFactory.get_provider_models("mistral")

    def test_available_providers(self):
        assert ProviderFactory.get_available_providers() == ["openai", "anthropic", "google"]
        assert "gemini-1.5-flash" in ProviderFactory.get_provider_models("Google")

    def test_registry_from_config(self):
        config = AppConfig(providers=["google", "openai"])
        registry = create_provider_registry(config, time_scale=0)

        assert registry.provider_ids() == ["google", "openai"]
        assert "anthropic" not in registry
        assert set(registry.get_stats_all()) == {"google", "openai"}

    def test_registry_requires_a_provider(self):
        with pytest.raises(ConfigurationError):
            create_provider_registry(AppConfig(providers=[]))

    def test_register_validates_interface(self):
        registry = ProviderRegistry()
        with pytest.raises(TypeError):
            registry.register(object(), "bogus")

        registry.register(FakeAdapter("x"))
        assert registry.get("x") is not None
        assert registry.remove("x")
        assert not registry.remove("x")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_health_check_all_catches_failures(self):
        class Broken(FakeAdapter):
            async def health_check(self):
                raise RuntimeError("boom")

        registry = ProviderRegistry({"ok": FakeAdapter("ok"), "broken": Broken("broken")})

        statuses = await registry.health_check_all()

        assert statuses["ok"].is_healthy
        assert not statuses["broken"].is_healthy
        assert statuses["broken"].issues == ["Health check failed: boom"]


class TestCollaborators:
    @pytest.mark.asyncio
    async def test_user_credential_wins_over_shared(self):
        credentials = StaticCredentialProvider({"openai": "shared"})
        credentials.set_credential("openai", "mine", user_id="u1")

        assert await credentials.resolve("u1", "openai") == "mine"
        assert await credentials.resolve("u2", "openai") == "shared"
        assert await credentials.resolve("u2", "google") is None

    @pytest.mark.asyncio
    async def test_in_memory_sink_is_bounded(self):
        sink = InMemoryUsageSink(max_records=2)
        for i in range(3):
            await sink.record(UsageRecord("u1", "openai", "gpt-4", f"r{i}", 10, 0.5, 100.0, True))

        assert [r.request_id for r in sink.records] == ["r1", "r2"]
        assert sink.total_cost() == pytest.approx(1.0)
