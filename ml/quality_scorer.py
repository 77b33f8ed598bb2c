"""
Response quality scoring.

QualityScorer grades a completed response on five heuristic dimensions
(relevance, coherence, completion, format, accuracy), keeps a bounded quality
history per provider/model and derives averages, trends, benchmarks and
quality predictions from it.
"""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple, Deque

import numpy as np

from core.data_models import ChatRequest, ChatResponse

from .feature_extractor import RequestFeatures, CODE_BLOCK_RE, INLINE_CODE_RE, BULLET_LIST_RE, NUMBERED_LIST_RE

logger = logging.getLogger(__name__)

DIMENSION_WEIGHTS: Dict[str, float] = {
    "relevance": 0.35,
    "coherence": 0.25,
    "completion": 0.2,
    "format": 0.1,
    "accuracy": 0.1,
}

HISTORY_LIMIT = 1000
AVERAGE_WINDOW = 100
TREND_WINDOW = 20
TREND_MIN_SAMPLES = 10
TREND_DELTA = 0.05

RELEVANCE_POSITIVE = (
    re.compile(r"directly answers?.*question", re.I),
    re.compile(r"addresses?.*request", re.I),
    re.compile(r"relevant.*information", re.I),
    re.compile(r"on.topic", re.I),
)
RELEVANCE_NEGATIVE = (
    re.compile(r"off.topic", re.I),
    re.compile(r"unrelated", re.I),
    re.compile(r"doesn't answer", re.I),
    re.compile(r"irrelevant", re.I),
    re.compile(r"i don'?t understand", re.I),
    re.compile(r"unclear what you", re.I),
)
COHERENCE_POSITIVE = (
    re.compile(r"clear.*structure", re.I),
    re.compile(r"logical.*flow", re.I),
    re.compile(r"well.organized", re.I),
    re.compile(r"coherent", re.I),
)
COHERENCE_NEGATIVE = (
    re.compile(r"confusing", re.I),
    re.compile(r"incoherent", re.I),
    re.compile(r"jumbled", re.I),
    re.compile(r"disorganized", re.I),
)

TRANSITION_WORDS = ("however", "therefore", "furthermore", "meanwhile", "consequently")
COMPLETION_WORDS = ("in conclusion", "to summarize", "finally", "in summary")
QUESTION_WORDS = ("what", "how", "why", "when", "where", "who")
HEDGING_WORDS = ("might", "could", "possibly", "likely", "probably", "seems")
ABSOLUTE_WORDS = ("always", "never", "definitely", "certainly", "absolutely")
ANSWER_INDICATORS = (
    "the answer is", "the solution is", "this means", "this is because",
    "here's how", "here's why", "the result is", "it works by",
)
RESPONSE_TECHNICAL_WORDS = frozenset((
    "function", "variable", "algorithm", "database", "api", "server",
    "framework", "library", "protocol", "architecture", "implementation",
))
HEADER_RE = re.compile(r"^#{1,6}\s", re.M)
CITATION_RE = re.compile(r"\[[^\]]+\]|according to", re.I)


@dataclass(frozen=True)
class QualityDimension:
    score: float
    confidence: float
    evidence: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QualityAssessment:
    """Graded response: five dimensions and a weighted overall score"""
    relevance: QualityDimension
    coherence: QualityDimension
    completion: QualityDimension
    format: QualityDimension
    accuracy: QualityDimension
    overall_score: float
    confidence: float
    reasoning: Tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)

    @property
    def dimensions(self) -> Dict[str, QualityDimension]:
        return {name: getattr(self, name) for name in DIMENSION_WEIGHTS}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "dimensions": {
                name: {"score": d.score, "confidence": d.confidence, "evidence": list(d.evidence)}
                for name, d in self.dimensions.items()
            },
            "timestamp": self.timestamp,
        }


@dataclass
class QualityModel:
    """Quality history of one provider/model pair"""
    provider: str
    model: str
    history: Deque[float] = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))
    average_quality: float = 0.8
    trend: str = "stable"
    last_updated: float = 0.0


@dataclass
class QualityBenchmark:
    provider: str
    model: str
    task_type: str
    average_quality: float
    sample_count: int
    last_updated: float


@dataclass(frozen=True)
class QualityPrediction:
    expected_quality: float
    confidence: float
    factors: Tuple[Dict[str, Any], ...] = ()


def _clamp(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def calculate_trend(scores: List[float]) -> str:
    """Compare the last 20 scores with the 20 before them"""
    if len(scores) < TREND_MIN_SAMPLES:
        return "stable"
    recent = scores[-TREND_WINDOW:]
    older = scores[-2 * TREND_WINDOW:-TREND_WINDOW]
    if not older:
        return "stable"
    change = float(np.mean(recent) - np.mean(older))
    if change > TREND_DELTA:
        return "improving"
    if change < -TREND_DELTA:
        return "declining"
    return "stable"


class QualityScorer:
    """Heuristic response grader with per-model quality history"""

    def __init__(self, clock=time.time):
        self._clock = clock
        self.models: Dict[str, QualityModel] = {}
        self.benchmarks: Dict[str, QualityBenchmark] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------

    def assess_quality(self, request: ChatRequest, response: ChatResponse,
                       features: RequestFeatures) -> QualityAssessment:
        """
        Grade a response.

        Args:
            request: The routed request
            response: The provider's response
            features: Features extracted from the request

        Returns:
            QualityAssessment: sub-scores, overall score and confidence, all in [0, 1]
        """
        request_text = request.text_content
        response_text = response.content

        dims = {
            "relevance": self._assess_relevance(request_text, response_text, features),
            "coherence": self._assess_coherence(response_text),
            "completion": self._assess_completion(request_text, response_text, features),
            "format": self._assess_format(response_text, features),
            "accuracy": self._assess_accuracy(response_text, features),
        }

        overall = _clamp(sum(dims[name].score * weight for name, weight in DIMENSION_WEIGHTS.items()))
        mean_confidence = float(np.mean([d.confidence for d in dims.values()]))
        evidence_count = sum(len(d.evidence) for d in dims.values())
        confidence = min(1.0, mean_confidence + min(0.2, evidence_count * 0.02))

        assessment = QualityAssessment(
            overall_score=overall,
            confidence=confidence,
            reasoning=self._reasoning(dims, features),
            timestamp=self._clock(),
            **dims,
        )
        logger.debug(
            f"Quality assessment {response.provider}/{response.model}: "
            f"overall={overall:.3f} confidence={confidence:.3f}"
        )
        return assessment

    def _assess_relevance(self, request: str, response: str, features: RequestFeatures) -> QualityDimension:
        evidence = []
        score = 0.5

        request_words = request.lower().split()
        response_words = set(response.lower().split())
        overlap = sum(1 for w in request_words if w in response_words) / max(len(request_words), 1)
        if overlap > 0.3:
            score += 0.3
            evidence.append(f"High word overlap ({overlap:.1%})")

        for pattern in RELEVANCE_POSITIVE:
            if pattern.search(response):
                score += 0.1
                evidence.append(f"Positive relevance indicator: {pattern.pattern}")
        for pattern in RELEVANCE_NEGATIVE:
            if pattern.search(response):
                score -= 0.2
                evidence.append(f"Negative relevance indicator: {pattern.pattern}")

        if features.content.topic == "technical" and response_words & RESPONSE_TECHNICAL_WORDS:
            score += 0.1
            evidence.append("Contains relevant technical content")

        lower_response = response.lower()
        if features.content.question_count > 0 and any(i in lower_response for i in ANSWER_INDICATORS):
            score += 0.1
            evidence.append("Directly answers questions")

        return QualityDimension(_clamp(score), 0.8 if evidence else 0.5, tuple(evidence))

    def _assess_coherence(self, response: str) -> QualityDimension:
        sentences = [s.strip() for s in re.split(r"[.!?]+", response) if s.strip()]
        if not sentences:
            return QualityDimension(0.0, 1.0, ("Empty response",))

        evidence = []
        score = 0.6
        lower = response.lower()

        if any(word in lower for word in TRANSITION_WORDS):
            score += 0.1
            evidence.append("Contains logical transitions")

        if float(np.var([len(s) for s in sentences])) > 100:
            score += 0.1
            evidence.append("Good sentence length variation")

        if any(p.search(response) for p in COHERENCE_POSITIVE):
            score += 0.05
            evidence.append("Contains structure indicators")
        if any(p.search(response) for p in COHERENCE_NEGATIVE):
            score -= 0.1
            evidence.append("Contains incoherence indicators")

        words = lower.split()
        repetition = 1 - len(set(words)) / len(words) if words else 0.0
        if repetition > 0.3:
            score -= 0.1
            evidence.append("High repetition detected")

        return QualityDimension(_clamp(score), 0.7, tuple(evidence))

    @staticmethod
    def estimate_expected_length(request: str, features: RequestFeatures) -> float:
        content = features.content
        expected = 200 + len(request) * 0.5 + content.technical_terms * 50
        if content.multi_step_reasoning:
            expected += 300
        if content.requires_creativity:
            expected += 200
        expected += content.question_count * 100
        return max(100.0, min(2000.0, expected))

    def _assess_completion(self, request: str, response: str, features: RequestFeatures) -> QualityDimension:
        evidence = []
        score = 0.7
        stripped = response.strip()

        if stripped.endswith("..."):
            score -= 0.2
            evidence.append("Response appears incomplete (ends with ellipsis)")
        elif stripped.endswith((".", "!")):
            score += 0.1
            evidence.append("Response ends properly")

        ratio = len(response) / self.estimate_expected_length(request, features)
        if 0.5 <= ratio <= 2.0:
            score += 0.1
            evidence.append("Appropriate response length")
        elif ratio < 0.3:
            score -= 0.2
            evidence.append("Response too short for request complexity")

        lower_response = response.lower()
        if any(word in lower_response for word in COMPLETION_WORDS):
            score += 0.1
            evidence.append("Contains completion indicators")

        questions = features.content.question_count
        if questions > 1:
            lower_request = request.lower()
            answered = sum(1 for w in QUESTION_WORDS if w in lower_request and w in lower_response)
            if answered >= questions * 0.8:
                score += 0.2
                evidence.append("Addresses most questions")

        return QualityDimension(_clamp(score), 0.8, tuple(evidence))

    def _assess_format(self, response: str, features: RequestFeatures) -> QualityDimension:
        evidence = []
        score = 0.8

        if features.content.has_code:
            if CODE_BLOCK_RE.search(response) or INLINE_CODE_RE.search(response):
                score += 0.1
                evidence.append("Proper code formatting")
            else:
                score -= 0.1
                evidence.append("Missing code formatting")

        if features.content.has_lists and (BULLET_LIST_RE.search(response) or NUMBERED_LIST_RE.search(response)):
            score += 0.1
            evidence.append("Proper list formatting")

        if len(response) > 500 and HEADER_RE.search(response):
            score += 0.05
            evidence.append("Good structural formatting")

        lines = response.split("\n")
        content_ratio = sum(1 for line in lines if line.strip()) / len(lines)
        if 0.8 < content_ratio < 1.0:
            score += 0.05
            evidence.append("Good spacing and readability")

        return QualityDimension(_clamp(score), 0.9, tuple(evidence))

    def _assess_accuracy(self, response: str, features: RequestFeatures) -> QualityDimension:
        evidence = []
        score = 0.8
        lower = response.lower()

        if features.content.requires_precision and any(w in lower for w in HEDGING_WORDS):
            score += 0.1
            evidence.append("Appropriately expresses uncertainty")

        if any(w in lower for w in ABSOLUTE_WORDS):
            score -= 0.05
            evidence.append("Contains absolute claims")

        if CITATION_RE.search(response):
            score += 0.1
            evidence.append("Contains citations or references")

        if features.content.topic == "technical" and features.content.has_code:
            syntax_score = 0.8
            for block in CODE_BLOCK_RE.findall(response):
                if self._has_unbalanced_brackets(block):
                    syntax_score -= 0.2
            score = (score + syntax_score) / 2
            evidence.append(f"Code syntax assessment: {syntax_score:.2f}")

        return QualityDimension(_clamp(score), 0.6, tuple(evidence))

    @staticmethod
    def _has_unbalanced_brackets(block: str) -> bool:
        code = re.sub(r"^```\w*\n?", "", block)
        code = re.sub(r"```$", "", code)
        return any(code.count(open_) != code.count(close) for open_, close in ("()", "[]", "{}"))

    @staticmethod
    def _reasoning(dims: Dict[str, QualityDimension], features: RequestFeatures) -> Tuple[str, ...]:
        reasoning = [f"Strong {name} ({d.score:.2f})" for name, d in dims.items() if d.score > 0.8]
        reasoning += [f"Weak {name} ({d.score:.2f})" for name, d in dims.items() if d.score < 0.6]
        if features.content.topic == "technical" and dims["format"].score > 0.8:
            reasoning.append("Technical content properly formatted")
        return tuple(reasoning) or ("Standard quality response",)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def update_quality_model(self, provider: str, model: str, assessment: QualityAssessment,
                                   topic: str = "conversational") -> QualityModel:
        """Record an assessment in the provider/model history and its topic benchmark"""
        key = f"{provider}_{model}"
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            quality_model = self.models.get(key)
            if quality_model is None:
                quality_model = self.models[key] = QualityModel(provider=provider, model=model)

            quality_model.history.append(assessment.overall_score)
            scores = list(quality_model.history)
            quality_model.average_quality = float(np.mean(scores[-AVERAGE_WINDOW:]))
            quality_model.trend = calculate_trend(scores)
            quality_model.last_updated = self._clock()

            self._update_benchmark(provider, model, topic, assessment.overall_score)

        logger.debug(
            f"Updated quality model for {key}: average={quality_model.average_quality:.3f} "
            f"trend={quality_model.trend} samples={len(quality_model.history)}"
        )
        return quality_model

    def _update_benchmark(self, provider: str, model: str, topic: str, score: float) -> None:
        key = f"{provider}_{model}_{topic}"
        benchmark = self.benchmarks.get(key)
        if benchmark is None:
            self.benchmarks[key] = QualityBenchmark(provider, model, topic, score, 1, self._clock())
            return
        total = benchmark.average_quality * benchmark.sample_count + score
        benchmark.sample_count += 1
        benchmark.average_quality = total / benchmark.sample_count
        benchmark.last_updated = self._clock()

    def get_benchmarks(self, task_type: Optional[str] = None, provider: Optional[str] = None) -> List[QualityBenchmark]:
        benchmarks = [
            b for b in self.benchmarks.values()
            if (task_type is None or b.task_type == task_type) and (provider is None or b.provider == provider)
        ]
        return sorted(benchmarks, key=lambda b: b.average_quality, reverse=True)

    def average_quality(self, provider: str, model: str) -> Optional[float]:
        quality_model = self.models.get(f"{provider}_{model}")
        return quality_model.average_quality if quality_model else None

    # ------------------------------------------------------------------
    # Prediction and insights
    # ------------------------------------------------------------------

    def predict_quality(self, provider: str, model: str, features: RequestFeatures) -> QualityPrediction:
        """Expected quality of a provider/model for a request, before calling it"""
        quality_model = self.models.get(f"{provider}_{model}")
        if quality_model is None or not quality_model.history:
            return QualityPrediction(
                expected_quality=0.8,
                confidence=0.5,
                factors=({"factor": "unknown_model", "impact": -0.2,
                          "description": "Model quality not yet assessed"},),
            )

        factors = self._quality_factors(provider, features)
        expected = quality_model.average_quality + sum(f["impact"] for f in factors) * 0.1
        if quality_model.trend == "improving":
            expected += 0.05
        elif quality_model.trend == "declining":
            expected -= 0.05

        scores = list(quality_model.history)
        spread = float(np.std(scores)) if len(scores) >= 2 else 0.5
        confidence = min(0.95, max(0.1, (len(scores) / 100) * (1 - spread)))
        return QualityPrediction(expected_quality=_clamp(expected), confidence=confidence, factors=tuple(factors))

    @staticmethod
    def _quality_factors(provider: str, features: RequestFeatures) -> List[Dict[str, Any]]:
        content = features.content
        factors = []
        if provider == "anthropic" and content.requires_creativity:
            factors.append({"factor": "creative_task_anthropic", "impact": 0.1,
                            "description": "Anthropic models excel at creative tasks"})
        if provider == "openai" and content.technical_terms > 10:
            factors.append({"factor": "technical_task_openai", "impact": 0.05,
                            "description": "OpenAI models are strong for technical content"})
        if content.total_length > 5000:
            factors.append({"factor": "long_request", "impact": -0.05,
                            "description": "Very long requests may reduce quality"})
        if features.temporal.is_business_hours:
            factors.append({"factor": "business_hours", "impact": 0.02,
                            "description": "Business hours typically have better performance"})
        if features.user.tier == "enterprise":
            factors.append({"factor": "enterprise_tier", "impact": 0.05,
                            "description": "Enterprise tier may receive priority treatment"})
        return factors

    def get_quality_insights(self, provider: Optional[str] = None) -> Dict[str, Any]:
        """
        Summarize quality across models.

        Returns:
            Dict with per-model stats, top models, declining models and
            recommendations
        """
        models = [m for m in self.models.values() if provider is None or m.provider == provider]
        ranked = sorted(models, key=lambda m: m.average_quality, reverse=True)
        declining = [f"{m.provider}/{m.model}" for m in models if m.trend == "declining"]

        recommendations = []
        if declining:
            recommendations.append({
                "type": "quality_alert",
                "description": f"{len(declining)} models showing quality decline",
            })
        top = [m for m in ranked if m.average_quality > 0.9]
        if top:
            recommendations.append({
                "type": "optimization",
                "description": f"Route more traffic to {top[0].provider} {top[0].model}",
            })
        if any(len(m.history) < 20 for m in models):
            recommendations.append({
                "type": "data_collection",
                "description": "Increase sampling for models with limited quality data",
            })

        return {
            "models": {
                f"{m.provider}/{m.model}": {
                    "average_quality": m.average_quality,
                    "trend": m.trend,
                    "sample_count": len(m.history),
                }
                for m in models
            },
            "top_models": [
                {"provider": m.provider, "model": m.model, "quality": m.average_quality}
                for m in ranked[:5]
            ],
            "declining_models": declining,
            "recommendations": recommendations,
        }
