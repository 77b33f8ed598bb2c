from datetime import datetime, timezone

import numpy as np
import pytest

from core.data_models import ChatRequest
from ml import FeatureExtractor, ExtractionContext
from ml.feature_extractor import FEATURE_NAMES, count_syllables, readability_score, get_season

from conftest import WEDNESDAY_10AM, make_request

SATURDAY_8PM = datetime(2024, 3, 16, 20, 0, tzinfo=timezone.utc)


@pytest.fixture
def extractor():
    return FeatureExtractor()


def content_of(extractor, text):
    return extractor.extract_content_features(make_request(text))


class TestContentFeatures:
    def test_counts(self, extractor):
        content = content_of(extractor, "Why is the sky blue? How do clouds form?")
        assert content.word_count == 9
        assert content.sentence_count == 2
        assert content.question_count == 2
        assert content.total_length == len("Why is the sky blue? How do clouds form?")

    def test_topic_by_keyword_count(self, extractor):
        content = content_of(extractor, "Debug this API function")
        assert content.topic == "technical"
        assert content.topic_categories == ("technical",)

    def test_topic_tie_takes_first_category(self, extractor):
        content = content_of(extractor, "explain")
        assert content.topic == "conversational"
        assert content.topic_categories == ("conversational", "educational")

    def test_topic_defaults_to_conversational(self, extractor):
        content = content_of(extractor, "zzz qqq")
        assert content.topic == "conversational"
        assert content.topic_categories == ("conversational",)

    def test_sentiment(self, extractor):
        assert content_of(extractor, "great great bad").sentiment == pytest.approx(2 / 3)
        assert content_of(extractor, "a plain sentence").sentiment == 0.5

    def test_formality(self, extractor):
        assert content_of(extractor, "However we shall proceed").formality == 1.0
        assert content_of(extractor, "hey gonna do it!!").formality == 0.0
        assert content_of(extractor, "the cat sat").formality == 0.5

    def test_code_lists_and_instructions(self, extractor):
        content = content_of(extractor, "Please write a script:\n- use `print`\n- loop")
        assert content.has_code
        assert content.has_lists
        assert content.instruction_count == 2
        assert content.has_instructions

    def test_technical_terms_include_phrases(self, extractor):
        content = content_of(extractor, "machine learning on docker and kubernetes")
        assert content.technical_terms == 3

    def test_reasoning_creativity_precision_and_urgency(self, extractor):
        content = content_of(extractor, "urgent: first write a poem then give exact numbers asap")
        assert content.multi_step_reasoning
        assert content.requires_creativity
        assert content.requires_precision
        assert content.urgency_indicators == ("urgent", "asap")

    def test_message_types(self, extractor):
        request = ChatRequest.from_dict({
            "model": "chat-small",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
                {"role": "user", "content": "bye"},
            ],
        })
        content = extractor.extract_content_features(request)
        assert content.message_types == {"system": 1, "user": 2, "assistant": 1}


class TestHelpers:
    def test_count_syllables(self):
        assert count_syllables("cat") == 1
        assert count_syllables("table") == 2
        assert count_syllables("reading") == 2

    def test_readability_is_clamped(self):
        assert readability_score([], []) == 0.5
        assert readability_score(["The cat sat"], ["the", "cat", "sat"]) == 1.0

    def test_seasons(self):
        assert [get_season(m) for m in (1, 4, 7, 10, 12)] == ["winter", "spring", "summer", "fall", "winter"]


class TestUserSystemTemporal:
    def test_user_defaults_and_overrides(self, extractor):
        user = extractor.extract_user_features("u1", {"tier": "free", "cost_sensitivity": 0.9, "device": None})
        assert user.tier == "free"
        assert user.cost_sensitivity == 0.9
        assert user.device == "api"
        assert user.quality_tolerance == 0.8
        assert user.interaction_style == "balanced"

    def test_interaction_style(self, extractor):
        assert extractor.extract_user_features("u", {"avg_message_length": 30}).interaction_style == "brief"
        assert extractor.extract_user_features("u", {"avg_message_length": 250}).interaction_style == "detailed"

    def test_system_features(self, extractor):
        system = extractor.extract_system_features({"openai": {"latency": 120, "available": False}, "google": {}})
        assert system.latency == {"openai": 120.0, "google": 0.0}
        assert system.available == {"openai": False, "google": True}
        assert system.healthy_provider_count == 1

    def test_weekday_business_hours(self, extractor):
        temporal = extractor.extract_temporal_features(WEDNESDAY_10AM)
        assert temporal.weekday == 3
        assert temporal.is_business_hours
        assert temporal.is_peak_hours
        assert temporal.hourly_pattern == 0.9
        assert temporal.weekly_pattern == 0.8
        assert temporal.monthly_pattern == 0.6
        assert temporal.season == "spring"

    def test_weekend_evening(self, extractor):
        temporal = extractor.extract_temporal_features(SATURDAY_8PM)
        assert not temporal.is_business_hours
        assert temporal.is_peak_hours
        assert temporal.hourly_pattern == 0.8
        assert temporal.weekly_pattern == 0.55

    def test_business_hours_end_at_five(self, extractor):
        temporal = extractor.extract_temporal_features(datetime(2024, 3, 13, 17, tzinfo=timezone.utc))
        assert not temporal.is_business_hours
        assert temporal.hourly_pattern == 0.55
        night = extractor.extract_temporal_features(datetime(2024, 3, 13, 3, tzinfo=timezone.utc))
        assert night.hourly_pattern == 0.2


class TestVector:
    def test_vector_shape_and_range(self, extractor):
        features = extractor.extract(
            make_request("x" * 20000), ExtractionContext(now=WEDNESDAY_10AM)
        )
        values = features.vector.as_dict()

        assert len(features.vector) == 13
        assert tuple(values) == FEATURE_NAMES
        assert values["text_length"] == 1.0
        assert values["hour_of_day"] == pytest.approx(10 / 24)
        assert values["is_business_hours"] == 1.0
        assert np.all((features.vector.values >= 0) & (features.vector.values <= 1))

    def test_extraction_is_deterministic(self, extractor):
        context = ExtractionContext(user_id="u1", now=WEDNESDAY_10AM, user_context={"tier": "enterprise"})
        first = extractor.extract(make_request("Debug this API function"), context)
        second = extractor.extract(make_request("Debug this API function"), context)

        assert np.array_equal(first.vector.values, second.vector.values)
        assert first.feature_hash == second.feature_hash == "technical|factual|enterprise|business|0"
