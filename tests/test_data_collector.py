import pytest

from ml import TrainingDataCollector, was_optimal

from conftest import make_features


@pytest.fixture
def collector(clock):
    return TrainingDataCollector(clock=clock)


def record(collector, request_id, provider="openai", model="gpt-4", user_id="u1",
           cost=0.01, latency_ms=500.0, quality=0.9, success=True):
    collector.collect_routing_decision(request_id, user_id, make_features("hello"), provider, model)
    return collector.collect_outcome(request_id, cost=cost, latency_ms=latency_ms, quality=quality, success=success)


class TestCollection:
    def test_examples_only_from_completed_successes_above_quality(self, collector):
        record(collector, "a", quality=0.9)
        record(collector, "b", quality=0.3)
        record(collector, "c", success=False)
        collector.collect_routing_decision("d", "u1", make_features("hello"), "openai", "gpt-4")

        examples = collector.get_training_examples()

        assert [e.request_id for e in examples] == ["a"]
        assert examples[0].was_optimal
        assert len(collector.get_training_examples(min_quality=0.0)) == 2

    def test_limit_keeps_most_recent(self, collector):
        for i in range(5):
            record(collector, f"r{i}")
        assert [e.request_id for e in collector.get_training_examples(limit=2)] == ["r3", "r4"]

    def test_outcome_without_decision(self, collector):
        assert collector.collect_outcome("missing", cost=0.0, latency_ms=0.0, quality=0.0, success=False) is False

    def test_outcome_can_override_served_provider(self, collector):
        collector.collect_routing_decision("a", "u1", make_features("hello"), "openai", "gpt-4")
        collector.collect_outcome("a", cost=0.01, latency_ms=100, quality=0.9, success=True,
                                  provider="google", model="gemini-1.5-pro")

        example = collector.get_training_examples()[0]

        assert (example.provider, example.model) == ("google", "gemini-1.5-pro")
        assert list(collector.get_recent_performance()) == ["google"]

    def test_outcome_values_are_clamped(self, collector):
        record(collector, "a", cost=-1.0, latency_ms=-5.0, quality=1.5)
        example = collector.get_training_examples()[0]
        assert (example.cost, example.latency_ms, example.quality) == (0.0, 0.0, 1.0)

    def test_buffer_is_bounded(self, clock):
        collector = TrainingDataCollector(buffer_limit=3, clock=clock)
        for i in range(5):
            record(collector, f"r{i}")
        assert len(collector) == 3
        assert [e.request_id for e in collector.get_training_examples()] == ["r2", "r3", "r4"]

    def test_was_optimal_thresholds(self):
        assert was_optimal(0.85, 0.01, 1000)
        assert not was_optimal(0.8, 0.01, 1000)
        assert not was_optimal(0.9, 0.05, 1000)
        assert not was_optimal(0.9, 0.01, 3000)


class TestPerformanceAndPatterns:
    def test_recent_performance_averages_last_five(self, collector):
        for i, latency in enumerate([1000, 100, 200, 300, 400, 500]):
            record(collector, f"r{i}", latency_ms=latency, success=i != 5)

        performance = collector.get_recent_performance(["openai", "anthropic"])

        assert performance["openai"]["latency"] == pytest.approx(300)
        assert performance["openai"]["success_rate"] == pytest.approx(0.8)
        assert performance["anthropic"] == {"latency": 1000.0, "success_rate": 0.95, "cost": 0.01, "quality": 0.8}

    def test_user_patterns(self, collector):
        record(collector, "a", provider="openai", cost=0.01)
        record(collector, "b", provider="openai", cost=0.03)
        record(collector, "c", provider="google", model="gemini-1.5-pro", cost=0.02)
        record(collector, "d", user_id="someone-else")

        patterns = collector.get_user_patterns("u1")

        assert patterns["request_count"] == 3
        assert patterns["provider_preference"] == pytest.approx({"openai": 2 / 3, "google": 1 / 3})
        assert patterns["preferred_models"][0] == "gpt-4"
        assert patterns["avg_cost"] == pytest.approx(0.02)
        assert patterns["peak_usage_hours"] == [22]

    def test_unknown_user_gets_defaults(self, collector):
        patterns = collector.get_user_patterns("nobody")
        assert patterns["request_count"] == 0
        assert patterns["peak_usage_hours"] == [9, 14]

    def test_cleanup_old_data(self, collector, clock):
        record(collector, "old")
        clock.advance(31 * 24 * 60 * 60)
        record(collector, "new")

        assert collector.cleanup_old_data(retention_days=30) == 1
        assert [e.request_id for e in collector.get_training_examples()] == ["new"]
        assert collector.get_summary()["snapshots"] == {"openai": 1}
