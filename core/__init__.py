"""
Core Components Package.

This package contains the data model, error taxonomy, constants and
configuration shared by every part of the routing engine.
"""

from .data_models import (
    ProviderType,
    CircuitState,
    ChatMessage,
    ToolDefinition,
    ChatRequest,
    ChatResponse,
    Choice,
    Usage,
    StreamChunk,
    ModelInfo,
    ProviderStatus,
    FallbackOption,
    RouteDecision,
    CostAnalysis,
    CostRecommendation,
    UsageRecord,
)
from .errors import (
    RouterError,
    LLMProviderError,
    AuthenticationError,
    InvalidRequestError,
    RateLimitError,
    ProviderTimeoutError,
    NetworkError,
    ServerError,
    CircuitOpenError,
    NoAvailableProviders,
    RecoveryExhaustedError,
    InsufficientTrainingData,
    ModelNotTrained,
    ConfigurationError,
)
from .config import (
    AppConfig,
    RouterConfig,
    CacheConfig,
    RetryConfig,
    CircuitBreakerConfig,
    ResilienceConfig,
    MLConfig,
    load_config,
    load_config_or_default,
)

__all__ = [
    "ProviderType",
    "CircuitState",
    "ChatMessage",
    "ToolDefinition",
    "ChatRequest",
    "ChatResponse",
    "Choice",
    "Usage",
    "StreamChunk",
    "ModelInfo",
    "ProviderStatus",
    "FallbackOption",
    "RouteDecision",
    "CostAnalysis",
    "CostRecommendation",
    "UsageRecord",
    "RouterError",
    "LLMProviderError",
    "AuthenticationError",
    "InvalidRequestError",
    "RateLimitError",
    "ProviderTimeoutError",
    "NetworkError",
    "ServerError",
    "CircuitOpenError",
    "NoAvailableProviders",
    "RecoveryExhaustedError",
    "InsufficientTrainingData",
    "ModelNotTrained",
    "ConfigurationError",
    "AppConfig",
    "RouterConfig",
    "CacheConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "ResilienceConfig",
    "MLConfig",
    "load_config",
    "load_config_or_default",
]
