import asyncio
from unittest.mock import MagicMock

import pytest

from core.config import AppConfig
from core.data_models import CircuitState
from core.errors import (
    AuthenticationError, ServerError, ProviderTimeoutError, NetworkError, NoAvailableProviders,
    RecoveryExhaustedError, ConfigurationError, InsufficientTrainingData, ModelNotTrained,
)
from ml.prediction_engine import EnsemblePrediction, ModelPrediction
from routers import RouteOptions, Candidate, ProviderMetrics

from conftest import FakeAdapter, FakeClock, build_router, make_request


def prediction(provider, quality):
    return ModelPrediction(provider, f"{provider}-model", 0.9, 0.0001, 500.0, quality, quality)


class TestSelection:
    @pytest.mark.asyncio
    async def test_selects_cheapest_provider_with_lowest_cost_reasoning(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        router = build_router([x, y])

        response = await router.route(make_request("hi"))

        decision = response.metadata["route_decision"]
        assert response.provider == "x"
        assert decision["selected_provider"] == "x"
        assert "lowest cost" in decision["reasoning"]
        assert "highest overall score" in decision["reasoning"]
        assert [f["provider"] for f in decision["fallback_options"]] == ["y"]
        assert response.metadata["recovery_strategy"] == "primary_success"

    @pytest.mark.asyncio
    async def test_open_circuit_provider_is_skipped(self):
        a, b = FakeAdapter("a", cost=0.0001), FakeAdapter("b", cost=0.0005)
        router = build_router([a, b])
        for _ in range(5):
            await router.breakers.record_failure("a")

        response = await router.route(make_request("hi"))

        assert response.provider == "b"
        assert a.calls == []
        fallbacks = response.metadata["route_decision"]["fallback_options"]
        assert all(f["provider"] != "a" for f in fallbacks)

    @pytest.mark.asyncio
    async def test_preferred_provider_becomes_primary(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        router = build_router([x, y])

        response = await router.route(make_request("hi"), options=RouteOptions(preferred_provider="y"))

        decision = response.metadata["route_decision"]
        assert response.provider == "y"
        assert "user preferred provider" in decision["reasoning"]
        assert decision["fallback_options"][0]["provider"] == "x"

    @pytest.mark.asyncio
    async def test_max_cost_filters_candidates(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        router = build_router([x, y])

        response = await router.route(
            make_request("hi"), options=RouteOptions(preferred_provider="y", max_cost=0.0002)
        )

        assert response.provider == "x"
        assert response.metadata["route_decision"]["fallback_options"] == []

    @pytest.mark.asyncio
    async def test_no_candidate_within_max_cost(self):
        router = build_router([FakeAdapter("x", cost=0.01)])
        with pytest.raises(NoAvailableProviders):
            await router.route(make_request("hi"), options=RouteOptions(max_cost=0.001))

    @pytest.mark.asyncio
    async def test_no_credentials_means_no_available_providers(self):
        router = build_router([FakeAdapter("x"), FakeAdapter("y")], credentials={})
        with pytest.raises(NoAvailableProviders):
            await router.route(make_request("hi"))

    @pytest.mark.asyncio
    async def test_require_tools_skips_models_without_tools(self):
        x = FakeAdapter("x", cost=0.0001)
        x.models[0].supports_tools = False
        y = FakeAdapter("y", cost=0.0003)
        router = build_router([x, y])

        response = await router.route(make_request("hi"), options=RouteOptions(require_tools=True))

        assert response.provider == "y"

    @pytest.mark.asyncio
    async def test_unhealthy_provider_is_excluded_after_status_refresh(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        x.healthy = False
        router = build_router([x, y])

        statuses = {s.provider: s for s in await router.get_provider_statuses()}
        response = await router.route(make_request("hi"))

        assert statuses["x"].is_healthy is False
        assert statuses["y"].circuit_state == "CLOSED"
        assert response.provider == "y"


class TestRanking:
    def test_near_equal_scores_prefer_lower_cost(self):
        router = build_router([FakeAdapter("openai"), FakeAdapter("google")])
        cheap = Candidate("openai", "m", cost=0.001, score=0.5)
        pricey = Candidate("google", "m", cost=0.002, score=0.5 + 1e-12)

        ranked = router.rank_candidates([pricey, cheap])

        assert ranked[0] is cheap

    def test_equal_cost_ties_follow_fallback_order(self):
        router = build_router([FakeAdapter("openai"), FakeAdapter("google")])
        openai = Candidate("openai", "m", cost=0.001, score=0.5)
        google = Candidate("google", "m", cost=0.001, score=0.5)

        ranked = router.rank_candidates([openai, google])

        assert [c.provider for c in ranked] == ["google", "openai"]

    def test_clear_score_difference_wins_over_cost(self):
        router = build_router([FakeAdapter("openai"), FakeAdapter("google")])
        better = Candidate("openai", "m", cost=0.01, score=0.9)
        cheaper = Candidate("google", "m", cost=0.001, score=0.5)

        assert router.rank_candidates([cheaper, better])[0] is better

    def test_provider_metrics_moving_average(self):
        metrics = ProviderMetrics()
        assert metrics.success_rate == 1.0

        metrics.record(100.0, 0.01, True)
        metrics.record(100.0, 0.0, False)

        assert metrics.total_requests == 2
        assert metrics.success_rate == 0.5
        assert metrics.avg_latency == pytest.approx(100 * 0.1 * 0.9 + 100 * 0.1)
        assert metrics.avg_cost == pytest.approx(0.01 * 0.1 * 0.9)
        assert metrics.performance_score() == pytest.approx(0.5 * 0.7 + (1 - metrics.avg_latency / 200) * 0.3)


class TestMachineLearningPath:
    @pytest.mark.asyncio
    async def test_untrained_engine_routes_rules_only(self):
        router = build_router([FakeAdapter("x"), FakeAdapter("y", cost=0.0003)])
        response = await router.route(make_request("hi"))
        assert response.metadata["route_decision"]["ml_recommendation"] == "rules_only"

    @pytest.mark.asyncio
    async def test_model_not_trained_falls_back_to_rules(self):
        router = build_router([FakeAdapter("x"), FakeAdapter("y", cost=0.0003)])
        engine = MagicMock()
        engine.is_trained = True
        engine.get_ensemble_prediction.side_effect = ModelNotTrained("not yet")
        router.prediction_engine = engine

        response = await router.route(make_request("hi"))

        assert response.provider == "x"
        assert response.metadata["route_decision"]["ml_recommendation"] == "rules_only"

    @pytest.mark.asyncio
    async def test_use_ml_replaces_static_quality(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0001)
        router = build_router([x, y])
        engine = MagicMock()
        engine.is_trained = True
        engine.get_ensemble_prediction.return_value = EnsemblePrediction(
            consensus=prediction("y", 0.9),
            uncertainty=0.05,
            recommended_action="use_ml",
            candidate_predictions=(prediction("x", 0.1), prediction("y", 0.9)),
        )
        router.prediction_engine = engine

        response = await router.route(make_request("hi"))

        decision = response.metadata["route_decision"]
        assert response.provider == "y"
        assert decision["ml_recommendation"] == "use_ml"
        assert "ML recommendation: use_ml" in decision["reasoning"]

    @pytest.mark.asyncio
    async def test_explore_keeps_static_quality(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0001)
        router = build_router([x, y])
        engine = MagicMock()
        engine.is_trained = True
        engine.get_ensemble_prediction.return_value = EnsemblePrediction(
            consensus=prediction("y", 0.9),
            uncertainty=0.6,
            recommended_action="explore",
            candidate_predictions=(prediction("x", 0.1), prediction("y", 0.9)),
        )
        router.prediction_engine = engine

        response = await router.route(make_request("hi"))

        assert response.provider == "x"
        assert response.metadata["route_decision"]["ml_recommendation"] == "explore"

    @pytest.mark.asyncio
    async def test_train_models_requires_enough_examples(self):
        router = build_router([FakeAdapter("x")])
        await router.route(make_request("hi"))
        with pytest.raises(InsufficientTrainingData):
            await router.train_models()

    @pytest.mark.asyncio
    async def test_outcomes_reach_collector_and_quality_history(self):
        router = build_router([FakeAdapter("x")])
        await router.route(make_request("Explain how a hash map works"))

        summary = router.collector.get_summary()
        assert summary["completed"] == 1
        assert summary["successful"] == 1
        assert router.quality_scorer.average_quality("x", "x-model") is not None
        insights = router.get_ml_insights()
        assert insights["collector"]["buffered"] == 1
        assert "feature_importance" in insights


class TestRecovery:
    @pytest.mark.asyncio
    async def test_five_timeouts_open_circuit_and_fall_back(self):
        config = AppConfig()
        config.router.max_retries = 4
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        x.fail_next(*[ProviderTimeoutError("timed out", provider="x") for _ in range(5)])
        router = build_router([x, y], app_config=config)

        first = await router.route(make_request("hi"))

        assert first.provider == "y"
        assert first.metadata["recovery_strategy"] == "fallback_success"
        assert len(x.calls) == 5
        assert router.breakers.get_state("x").value == "OPEN"

        second = await router.route(make_request("a different question"))

        assert second.provider == "y"
        assert len(x.calls) == 5

    @pytest.mark.asyncio
    async def test_retry_success_on_same_provider(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        x.fail_next(ServerError("boom", provider="x"))
        router = build_router([x, y])

        response = await router.route(make_request("hi"))

        assert response.provider == "x"
        assert response.metadata["recovery_strategy"] == "retry_success"
        assert y.calls == []

    @pytest.mark.asyncio
    async def test_authentication_error_is_surfaced(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        x.fail_next(AuthenticationError("bad key", provider="x"))
        router = build_router([x, y])

        with pytest.raises(AuthenticationError):
            await router.route(make_request("hi"))
        assert y.calls == []

    @pytest.mark.asyncio
    async def test_exhaustion_raises_with_strategy_and_root_cause(self, usage_sink):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003)
        x.fail_next(*[ServerError("down", provider="x") for _ in range(10)])
        y.fail_next(*[ServerError("down", provider="y") for _ in range(10)])
        router = build_router([x, y], usage_sink=usage_sink)

        with pytest.raises(RecoveryExhaustedError) as excinfo:
            await router.route(make_request("hi"))

        assert excinfo.value.strategy == "all_failed"
        assert isinstance(excinfo.value.root_cause, ServerError)
        assert usage_sink.records[-1].success is False
        assert router.get_stats()["router"]["failed_requests"] == 1


class TestCachingAndUsage:
    @pytest.mark.asyncio
    async def test_repeated_request_is_served_from_cache(self, usage_sink):
        x = FakeAdapter("x")
        router = build_router([x], usage_sink=usage_sink)

        first = await router.route(make_request("hi"))
        second = await router.route(make_request("hi"))

        assert first.metadata["from_cache"] is False
        assert second.metadata["from_cache"] is True
        assert second.metadata["cache_key"] == first.metadata["cache_key"]
        assert len(x.calls) == 1
        assert router.cache_hits == 1
        assert len(usage_sink.records) == 1

    @pytest.mark.asyncio
    async def test_usage_record_emitted(self, usage_sink):
        router = build_router([FakeAdapter("x", cost=0.0002)], usage_sink=usage_sink)

        response = await router.route(make_request("hi"), user_id="user-1")

        record = usage_sink.records[0]
        assert record.user_id == "user-1"
        assert record.provider == "x"
        assert record.cost == pytest.approx(0.0002)
        assert record.success is True
        assert record.streaming is False
        assert record.request_id == response.metadata["request_id"]

    @pytest.mark.asyncio
    async def test_metrics_updated_after_route(self):
        clock = FakeClock()
        router = build_router([FakeAdapter("x", cost=0.001)], clock=clock)

        await router.route(make_request("hi"))

        metrics = router.get_performance_metrics()["x"]
        assert metrics["total_requests"] == 1
        assert metrics["success_rate"] == 1.0
        assert metrics["avg_cost"] == pytest.approx(0.0001)


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_annotated_with_decision_and_index(self, usage_sink):
        x = FakeAdapter("x", content="one two three")
        router = build_router([x, FakeAdapter("y", cost=0.0003)], usage_sink=usage_sink)

        chunks = [c async for c in router.route_stream(make_request("hi", stream=True))]

        assert [c.delta for c in chunks] == ["one", "two", "three"]
        assert [c.metadata["chunk_index"] for c in chunks] == [0, 1, 2]
        assert chunks[0].metadata["route_decision"]["selected_provider"] == "x"
        assert usage_sink.records[-1].streaming is True
        assert usage_sink.records[-1].cost == pytest.approx(x.cost)
        assert len(router.cache) == 0

    @pytest.mark.asyncio
    async def test_failure_before_first_chunk_uses_fallback(self):
        x, y = FakeAdapter("x", cost=0.0001), FakeAdapter("y", cost=0.0003, content="from y")
        x.fail_next(NetworkError("refused", provider="x"))
        router = build_router([x, y])

        chunks = [c async for c in router.route_stream(make_request("hi", stream=True))]

        assert {c.provider for c in chunks} == {"y"}
        assert router.breakers.snapshot("x").failures == 1

    @pytest.mark.asyncio
    async def test_failure_after_chunks_is_raised(self):
        x = FakeAdapter("x", content="one two three four")
        x.stream_failure_after = 2
        router = build_router([x, FakeAdapter("y", cost=0.0003)])

        received = []
        with pytest.raises(NetworkError):
            async for chunk in router.route_stream(make_request("hi", stream=True)):
                received.append(chunk.delta)

        assert received == ["one", "two"]

    @pytest.mark.asyncio
    async def test_cancelled_consumer_counts_as_failure(self):
        x = FakeAdapter("x")
        x.chunk_delay = 0.01
        router = build_router([x])
        received = []

        async def consume():
            async for chunk in router.route_stream(make_request("hi", stream=True)):
                received.append(chunk)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0.005)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(received) < len(x.content.split(" "))
        assert router.breakers.snapshot("x").failures == 1
        assert router.get_performance_metrics()["x"]["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_closing_half_open_stream_reopens_circuit(self, clock):
        x = FakeAdapter("x")
        router = build_router([x, FakeAdapter("y", cost=0.0003)], clock=clock)
        for _ in range(5):
            await router.breakers.record_failure("x")
        clock.advance(61)

        stream = router.route_stream(make_request("hi", stream=True))
        first = await stream.__anext__()
        assert router.breakers.get_state("x") == CircuitState.HALF_OPEN
        await stream.aclose()

        assert first.provider == "x"
        assert router.breakers.get_state("x") == CircuitState.OPEN
        assert router.breakers.snapshot("x").times_opened == 2

    @pytest.mark.asyncio
    async def test_stalled_stream_times_out_and_falls_back(self):
        app_config = AppConfig()
        app_config.router.request_timeout_seconds = 0.02
        x, y = FakeAdapter("x"), FakeAdapter("y", cost=0.0003, content="from y")
        x.chunk_delay = 0.5
        router = build_router([x, y], app_config=app_config)

        chunks = [c async for c in router.route_stream(make_request("hi", stream=True))]

        assert [c.delta for c in chunks] == ["from", "y"]
        assert router.breakers.snapshot("x").failures == 1
        stats = router.resilience.get_error_statistics()
        assert stats["errors_by_type"] == {"TIMEOUT": 1}


class TestCostAnalysis:
    @pytest.mark.asyncio
    async def test_recommendations_ranked_by_value(self):
        router = build_router([
            FakeAdapter("openai", cost=0.0005),
            FakeAdapter("google", cost=0.0002),
            FakeAdapter("anthropic", cost=0.002),
        ])

        analysis = await router.analyze_costs(make_request("hi"))

        assert analysis.cheapest_provider == "google"
        assert analysis.estimated_cost == pytest.approx(0.0002)
        assert analysis.cost_by_provider["anthropic"] == pytest.approx(0.002)
        assert [r.provider for r in analysis.recommendations] == ["google", "openai", "anthropic"]
        codes = {r.provider: r.reason_code for r in analysis.recommendations}
        assert codes == {"openai": "cheapest", "google": "cheapest", "anthropic": "highest_quality"}
        google = analysis.recommendations[0]
        assert google.model == "gemini-1.5-flash"
        assert google.description == "Lowest cost option at $0.0002"


class TestAdministration:
    def test_update_config(self):
        router = build_router([FakeAdapter("x")])

        updated = router.update_config(performance_weighting=0.6, max_retries=1, fallback_enabled=False)

        assert updated["performance_weighting"] == 0.6
        assert router.resilience.retry_config.max_retries == 1
        assert router.resilience.fallback_enabled is False

    def test_update_config_rejects_unknown_and_invalid(self):
        router = build_router([FakeAdapter("x")])
        with pytest.raises(ConfigurationError):
            router.update_config(no_such_setting=1)
        with pytest.raises(ConfigurationError):
            router.update_config(performance_weighting=1.5)

    @pytest.mark.asyncio
    async def test_stats_shape(self):
        router = build_router([FakeAdapter("x")])
        await router.route(make_request("hi"))

        stats = router.get_stats()

        assert set(stats) == {"router", "cache", "resilience", "ml", "providers"}
        assert stats["router"]["total_requests"] == 1
        assert stats["router"]["performance_summary"]["x"]["total_requests"] == 1
        assert "circuit_breakers" in stats["resilience"]

    @pytest.mark.asyncio
    async def test_start_and_stop_background_tasks(self):
        router = build_router([FakeAdapter("x")])

        router.start()
        assert len(router._tasks) == 2
        await router.stop()
        await router.stop()

        assert router._tasks == []
