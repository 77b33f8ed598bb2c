"""
Prediction models for cost, latency, quality and provider choice.

Three linear regressors (batch gradient descent over min-max normalized
features) forecast cost, latency and quality per provider/model; a small
entropy-split decision tree learns which provider tends to be optimal. An
ensemble combines the regression ranking, the tree and a rules prior into a
recommendation for the router.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Sequence, Tuple

import numpy as np

from core.config import MLConfig
from core.constants import PREMIUM_MODEL_MARKERS, static_quality_score
from core.data_models import FallbackOption
from core.errors import InsufficientTrainingData, ModelNotTrained

from .data_collector import TrainingExample
from .feature_extractor import RequestFeatures, FEATURE_NAMES

logger = logging.getLogger(__name__)

KNOWN_PROVIDERS = ("openai", "anthropic", "google")
PROVIDER_FEATURE_NAMES = ("provider_openai", "provider_anthropic", "provider_google", "premium_model")

LEARNING_RATE = 0.01
ITERATIONS = 1000
TREE_MAX_DEPTH = 5
TREE_MIN_SAMPLES = 10

DEFAULT_QUALITY = {"openai": 0.85, "anthropic": 0.9, "google": 0.8}

DEFAULT_FEATURE_IMPORTANCE = {
    "text_length": 0.2,
    "technical_terms": 0.15,
    "quality_tolerance": 0.1,
    "cost_sensitivity": 0.1,
    "is_business_hours": 0.05,
}

# Ensemble source weights: regression ranking, decision tree, rules prior
ENSEMBLE_WEIGHTS = {"regression": 0.5, "tree": 0.3, "rules": 0.2}
RULES_PRIOR_CONFIDENCE = 0.6


@dataclass
class LinearModel:
    """Linear regressor over min-max normalized features, bias first"""
    coefficients: np.ndarray
    mins: np.ndarray
    ranges: np.ndarray
    r2_score: float
    feature_names: Tuple[str, ...]

    def predict(self, x: np.ndarray) -> float:
        normalized = (x - self.mins) / self.ranges
        return float(self.coefficients[0] + normalized @ self.coefficients[1:])


@dataclass
class DecisionNode:
    feature_index: int = -1
    threshold: float = 0.0
    left: Optional["DecisionNode"] = None
    right: Optional["DecisionNode"] = None
    provider: Optional[str] = None
    confidence: float = 0.0
    samples: int = 0

    @property
    def is_leaf(self) -> bool:
        return self.provider is not None


@dataclass(frozen=True)
class ModelPrediction:
    provider: str
    model: str
    confidence: float
    expected_cost: float
    expected_latency: float
    expected_quality: float
    score: float


@dataclass(frozen=True)
class RoutingPrediction:
    recommended_provider: str
    recommended_model: str
    confidence: float
    expected_cost: float
    expected_latency: float
    expected_quality: float
    reasoning: Tuple[str, ...] = ()
    alternatives: Tuple[ModelPrediction, ...] = ()


@dataclass(frozen=True)
class EnsemblePrediction:
    consensus: ModelPrediction
    uncertainty: float
    recommended_action: str
    votes: Dict[str, float] = field(default_factory=dict)
    candidate_predictions: Tuple[ModelPrediction, ...] = ()

    def prediction_for(self, provider: str, model: str) -> Optional[ModelPrediction]:
        for prediction in self.candidate_predictions:
            if prediction.provider == provider and prediction.model == model:
                return prediction
        return None


def provider_features(provider: str, model: str) -> np.ndarray:
    """One-hot provider encoding plus a premium-model flag"""
    onehot = [1.0 if provider == known else 0.0 for known in KNOWN_PROVIDERS]
    premium = 1.0 if any(marker in model for marker in PREMIUM_MODEL_MARKERS) else 0.0
    return np.array(onehot + [premium])


def candidate_score(quality: float, cost: float, latency: float) -> float:
    return 0.4 * quality + 0.3 * max(0.0, 1 - cost / 0.1) + 0.3 * max(0.0, 1 - latency / 5000)


def r2_score(actual: np.ndarray, predicted: np.ndarray) -> float:
    total = float(np.sum((actual - actual.mean()) ** 2))
    residual = float(np.sum((actual - predicted) ** 2))
    if total == 0:
        return 1.0 if residual == 0 else 0.0
    return 1 - residual / total


def train_linear_regression(X: np.ndarray, y: np.ndarray, feature_names: Sequence[str]) -> LinearModel:
    """Batch gradient descent with a bias term"""
    mins = X.min(axis=0)
    ranges = X.max(axis=0) - mins
    ranges[ranges == 0] = 1.0
    design = np.hstack([np.ones((X.shape[0], 1)), (X - mins) / ranges])

    theta = np.zeros(design.shape[1])
    for _ in range(ITERATIONS):
        gradient = design.T @ (design @ theta - y) / len(y)
        theta -= LEARNING_RATE * gradient

    return LinearModel(
        coefficients=theta,
        mins=mins,
        ranges=ranges,
        r2_score=r2_score(y, design @ theta),
        feature_names=tuple(feature_names),
    )


def entropy(counts: np.ndarray) -> np.ndarray:
    """Shannon entropy (bits) of each row of class counts"""
    counts = np.atleast_2d(counts).astype(float)
    totals = counts.sum(axis=1, keepdims=True)
    p = np.divide(counts, totals, out=np.zeros_like(counts), where=totals > 0)
    logs = np.log2(p, out=np.zeros_like(p), where=p > 0)
    return -np.sum(p * logs, axis=1)


def _leaf(labels: Sequence[str]) -> DecisionNode:
    provider, count = Counter(labels).most_common(1)[0]
    return DecisionNode(provider=provider, confidence=count / len(labels), samples=len(labels))


def _best_split(X: np.ndarray, labels: List[str]) -> Tuple[int, float, float]:
    """(feature, threshold, gain) of the highest-gain split, feature -1 if none"""
    classes = sorted(set(labels))
    encoded = np.array([classes.index(label) for label in labels])
    onehot = np.eye(len(classes))[encoded]
    n = len(labels)
    base = entropy(onehot.sum(axis=0))[0]

    best_gain, best_feature, best_threshold = 0.0, -1, 0.0
    for feature in range(X.shape[1]):
        order = np.argsort(X[:, feature], kind="stable")
        values = X[order, feature]
        left_counts = np.cumsum(onehot[order], axis=0)[:-1]
        # Only split between distinct values
        valid = values[:-1] < values[1:]
        if not valid.any():
            continue
        left_counts = left_counts[valid]
        right_counts = onehot.sum(axis=0) - left_counts
        left_n = left_counts.sum(axis=1)
        weighted = (left_n * entropy(left_counts) + (n - left_n) * entropy(right_counts)) / n
        gains = base - weighted
        i = int(np.argmax(gains))
        if gains[i] > best_gain + 1e-12:
            best_gain, best_feature, best_threshold = float(gains[i]), feature, float(values[:-1][valid][i])
    return best_feature, best_threshold, best_gain


def build_decision_tree(X: np.ndarray, labels: List[str], depth: int = 0,
                        max_depth: int = TREE_MAX_DEPTH) -> DecisionNode:
    """Entropy information-gain tree over feature thresholds"""
    if depth >= max_depth or len(labels) < TREE_MIN_SAMPLES or len(set(labels)) == 1:
        return _leaf(labels)

    labels_arr = np.array(labels)
    best_feature, best_threshold, _ = _best_split(X, labels)
    if best_feature < 0:
        return _leaf(labels)

    mask = X[:, best_feature] <= best_threshold
    return DecisionNode(
        feature_index=best_feature,
        threshold=best_threshold,
        left=build_decision_tree(X[mask], [str(v) for v in labels_arr[mask]], depth + 1, max_depth),
        right=build_decision_tree(X[~mask], [str(v) for v in labels_arr[~mask]], depth + 1, max_depth),
        samples=len(labels),
    )


def tree_depth(node: Optional[DecisionNode]) -> int:
    if node is None:
        return 0
    if node.is_leaf:
        return 1
    return 1 + max(tree_depth(node.left), tree_depth(node.right))


def tree_leaves(node: Optional[DecisionNode]) -> int:
    if node is None:
        return 0
    if node.is_leaf:
        return 1
    return tree_leaves(node.left) + tree_leaves(node.right)


def fit_models(examples: Sequence[TrainingExample]) -> Tuple[LinearModel, LinearModel, LinearModel, DecisionNode]:
    """Fit the cost, latency and quality regressions and the routing tree"""
    base = np.array([e.features.vector.values for e in examples])
    extra = np.array([provider_features(e.provider, e.model) for e in examples])
    X = np.hstack([base, extra])
    names = FEATURE_NAMES + PROVIDER_FEATURE_NAMES

    cost_model = train_linear_regression(X, np.array([e.cost for e in examples]), names)
    latency_model = train_linear_regression(X, np.array([e.latency_ms for e in examples]), names)
    quality_model = train_linear_regression(X, np.array([e.quality for e in examples]), names)

    optimal = [e for e in examples if e.was_optimal] or list(examples)
    routing_tree = build_decision_tree(
        np.array([e.features.vector.values for e in optimal]),
        [e.provider for e in optimal],
    )
    return cost_model, latency_model, quality_model, routing_tree


class PredictionEngine:
    """Trainable cost/latency/quality forecaster and provider recommender"""

    def __init__(self, config: Optional[MLConfig] = None, clock=time.time):
        self.config = config or MLConfig()
        self._clock = clock
        self._train_lock = asyncio.Lock()
        self.cost_model: Optional[LinearModel] = None
        self.latency_model: Optional[LinearModel] = None
        self.quality_model: Optional[LinearModel] = None
        self.routing_tree: Optional[DecisionNode] = None
        self.feature_importance: Dict[str, float] = {
            name: DEFAULT_FEATURE_IMPORTANCE.get(name, 0.0) for name in FEATURE_NAMES
        }
        self.training_size = 0
        self.last_trained: Optional[float] = None

    @property
    def is_trained(self) -> bool:
        return self.cost_model is not None

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    async def train_models(self, examples: Sequence[TrainingExample]) -> Dict[str, Any]:
        """
        Train every model from completed routing examples.

        Args:
            examples: Training examples from the collector

        Returns:
            Dict[str, Any]: model metrics after training

        Raises:
            InsufficientTrainingData: Below min_training_examples
        """
        if len(examples) < self.config.min_training_examples:
            raise InsufficientTrainingData(
                f"Need at least {self.config.min_training_examples} training examples, got {len(examples)}"
            )

        async with self._train_lock:
            logger.info(f"Training ML models with {len(examples)} examples")
            # Gradient descent and tree building run in a worker thread
            models = await asyncio.to_thread(fit_models, list(examples))
            self.cost_model, self.latency_model, self.quality_model, self.routing_tree = models
            self.training_size = len(examples)
            self.last_trained = self._clock()

        logger.info(
            f"ML training completed: cost R2={self.cost_model.r2_score:.3f} "
            f"latency R2={self.latency_model.r2_score:.3f} quality R2={self.quality_model.r2_score:.3f} "
            f"tree depth={tree_depth(self.routing_tree)}"
        )
        return self.get_model_metrics()

    # ------------------------------------------------------------------
    # Point predictions
    # ------------------------------------------------------------------

    @staticmethod
    def _input(features: RequestFeatures, provider: str, model: str) -> np.ndarray:
        return np.concatenate([features.vector.values, provider_features(provider, model)])

    def predict_cost(self, features: RequestFeatures, provider: str, model: str) -> float:
        if self.cost_model is None:
            raise ModelNotTrained("Cost model not trained")
        return max(0.0, self.cost_model.predict(self._input(features, provider, model)))

    def predict_latency(self, features: RequestFeatures, provider: str, model: str) -> float:
        if self.latency_model is None:
            raise ModelNotTrained("Latency model not trained")
        return max(100.0, self.latency_model.predict(self._input(features, provider, model)))

    def predict_quality(self, features: RequestFeatures, provider: str, model: str) -> float:
        if self.quality_model is None:
            return DEFAULT_QUALITY.get(provider, 0.8)
        quality = self.quality_model.predict(self._input(features, provider, model))
        return float(min(1.0, max(0.0, quality)))

    def predict_provider(self, features: RequestFeatures) -> Tuple[str, float]:
        """Walk the routing tree; returns (provider, leaf confidence)"""
        if self.routing_tree is None:
            raise ModelNotTrained("Routing tree not trained")
        node = self.routing_tree
        values = features.vector.values
        while not node.is_leaf:
            node = node.left if values[node.feature_index] <= node.threshold else node.right
        return node.provider, node.confidence

    def _predict_candidate(self, features: RequestFeatures, provider: str, model: str) -> ModelPrediction:
        cost = self.predict_cost(features, provider, model)
        latency = self.predict_latency(features, provider, model)
        quality = self.predict_quality(features, provider, model)
        return ModelPrediction(
            provider=provider,
            model=model,
            confidence=0.0,
            expected_cost=cost,
            expected_latency=latency,
            expected_quality=quality,
            score=candidate_score(quality, cost, latency),
        )

    def _rank(self, features: RequestFeatures, candidates: Sequence[FallbackOption]) -> List[ModelPrediction]:
        if not candidates:
            raise ValueError("At least one candidate is required")
        predictions = [self._predict_candidate(features, c.provider, c.model) for c in candidates]
        return sorted(predictions, key=lambda p: p.score, reverse=True)

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def predict_optimal_routing(self, features: RequestFeatures,
                                candidates: Sequence[FallbackOption]) -> RoutingPrediction:
        """Rank candidates by predicted score and recommend the best one"""
        return self._routing_from_ranking(features, self._rank(features, candidates))

    def _routing_from_ranking(self, features: RequestFeatures, ranked: List[ModelPrediction]) -> RoutingPrediction:
        best = ranked[0]

        margin = best.score - (ranked[1].score if len(ranked) > 1 else 0.0)
        confidence = min(1.0, max(0.0, 0.5 + margin))
        try:
            tree_provider, leaf_confidence = self.predict_provider(features)
            if tree_provider == best.provider:
                confidence = leaf_confidence
        except ModelNotTrained:
            pass

        reasoning = [f"Selected {best.provider} with {confidence:.1%} confidence"]
        if best.expected_cost < 0.01:
            reasoning.append("Low cost option")
        if best.expected_latency < 2000:
            reasoning.append("Fast response expected")
        if best.expected_quality > 0.9:
            reasoning.append("High quality expected")
        if features.content.requires_creativity and best.provider == "anthropic":
            reasoning.append("Optimal for creative tasks")
        if features.content.technical_terms > 5 and best.provider == "openai":
            reasoning.append("Best for technical content")

        return RoutingPrediction(
            recommended_provider=best.provider,
            recommended_model=best.model,
            confidence=confidence,
            expected_cost=best.expected_cost,
            expected_latency=best.expected_latency,
            expected_quality=best.expected_quality,
            reasoning=tuple(reasoning),
            alternatives=tuple(ranked[1:4]),
        )

    def get_ensemble_prediction(self, features: RequestFeatures,
                                candidates: Sequence[FallbackOption]) -> EnsemblePrediction:
        """
        Confidence-weighted vote of the regression ranking, the routing tree
        and a rules prior.

        Raises:
            ModelNotTrained: Before train_models has run
        """
        ranked = self._rank(features, candidates)
        routing = self._routing_from_ranking(features, ranked)
        by_key = {f"{p.provider}/{p.model}": p for p in ranked}

        votes: Dict[str, float] = {}
        total_weight = 0.0

        def vote(key: Optional[str], source: str, confidence: float) -> None:
            nonlocal total_weight
            total_weight += ENSEMBLE_WEIGHTS[source]
            if key is not None:
                votes[key] = votes.get(key, 0.0) + ENSEMBLE_WEIGHTS[source] * confidence

        vote(f"{routing.recommended_provider}/{routing.recommended_model}", "regression", routing.confidence)

        tree_provider, leaf_confidence = self.predict_provider(features)
        tree_pick = next((p for p in ranked if p.provider == tree_provider), None)
        vote(f"{tree_pick.provider}/{tree_pick.model}" if tree_pick else None, "tree", leaf_confidence)

        rules_pick = max(
            candidates,
            key=lambda c: candidate_score(static_quality_score(c.provider, c.model), c.cost, 1000.0),
        )
        vote(f"{rules_pick.provider}/{rules_pick.model}", "rules", RULES_PRIOR_CONFIDENCE)

        winner = max(votes, key=votes.get)
        consensus_confidence = votes[winner] / total_weight
        winning = by_key[winner]
        consensus = ModelPrediction(
            provider=winning.provider,
            model=winning.model,
            confidence=consensus_confidence,
            expected_cost=winning.expected_cost,
            expected_latency=winning.expected_latency,
            expected_quality=winning.expected_quality,
            score=winning.score,
        )

        scores = [p.score for p in ranked]
        uncertainty = float(np.std(scores)) if len(scores) > 1 else 0.0

        if consensus_confidence > self.config.confidence_threshold and uncertainty < 0.2:
            action = "use_ml"
        elif uncertainty > 0.5:
            action = "explore"
        else:
            action = "fallback_to_rules"

        return EnsemblePrediction(
            consensus=consensus,
            uncertainty=uncertainty,
            recommended_action=action,
            votes=votes,
            candidate_predictions=tuple(ranked),
        )

    # ------------------------------------------------------------------
    # Online update and metrics
    # ------------------------------------------------------------------

    def update_online(self, example: TrainingExample) -> None:
        """
        Nudge feature importance from one outcome.

        Heuristic only: importance drops by error * feature * 0.01 where error
        is 1 for a non-optimal outcome. Its statistical validity is unverified.
        """
        error = 0.0 if example.was_optimal else 1.0
        for name, value in zip(FEATURE_NAMES, example.features.vector.values):
            current = self.feature_importance.get(name, 0.0)
            self.feature_importance[name] = max(0.0, current - error * float(value) * 0.01)

    def get_model_metrics(self) -> Dict[str, Any]:
        return {
            "trained": self.is_trained,
            "cost_model_r2": self.cost_model.r2_score if self.cost_model else 0.0,
            "latency_model_r2": self.latency_model.r2_score if self.latency_model else 0.0,
            "quality_model_r2": self.quality_model.r2_score if self.quality_model else 0.0,
            "routing_tree_depth": tree_depth(self.routing_tree),
            "routing_tree_leaves": tree_leaves(self.routing_tree),
            "training_size": self.training_size,
            "last_trained": self.last_trained,
            "feature_importance": dict(self.feature_importance),
        }
