"""
ML Package.

Feature extraction, response quality scoring, training data collection and
the learned prediction models used to adjust routing.
"""

from .feature_extractor import (
    FeatureExtractor,
    ExtractionContext,
    RequestFeatures,
    FeatureVector,
    FEATURE_NAMES,
)
from .quality_scorer import QualityScorer, QualityAssessment, QualityDimension, DIMENSION_WEIGHTS
from .data_collector import TrainingDataCollector, TrainingExample, was_optimal
from .prediction_engine import PredictionEngine, EnsemblePrediction, RoutingPrediction, ModelPrediction

__all__ = [
    "FeatureExtractor",
    "ExtractionContext",
    "RequestFeatures",
    "FeatureVector",
    "FEATURE_NAMES",
    "QualityScorer",
    "QualityAssessment",
    "QualityDimension",
    "DIMENSION_WEIGHTS",
    "TrainingDataCollector",
    "TrainingExample",
    "was_optimal",
    "PredictionEngine",
    "EnsemblePrediction",
    "RoutingPrediction",
    "ModelPrediction",
]
