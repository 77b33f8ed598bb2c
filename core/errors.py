"""
Error taxonomy for the routing engine.

Provider failures, circuit-breaker rejections, routing exhaustion and the
internal ML-path errors all derive from RouterError so callers can catch the
whole family in one place.
"""

from typing import Optional


class RouterError(Exception):
    """Base exception for every error raised by the routing engine"""

    error_code = "ROUTER_ERROR"
    retryable = False
    severity = "medium"

    def __init__(self, message: str, provider: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        if error_code:
            self.error_code = error_code

    def to_dict(self):
        """Convert error to dictionary format"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
            "severity": self.severity,
        }


class LLMProviderError(RouterError):
    """Base exception for failures reported by a provider adapter"""
    error_code = "PROVIDER_ERROR"


class AuthenticationError(LLMProviderError):
    """Raised when the provider rejects the credential"""
    error_code = "AUTHENTICATION_ERROR"
    severity = "high"


class InvalidRequestError(LLMProviderError):
    """Raised when the provider rejects the request as malformed"""
    error_code = "INVALID_REQUEST"
    severity = "low"


class RateLimitError(LLMProviderError):
    """Raised when rate limits are exceeded"""
    error_code = "RATE_LIMIT_ERROR"
    retryable = True


class ProviderTimeoutError(LLMProviderError):
    """Raised when a provider call does not finish in time"""
    error_code = "TIMEOUT"
    retryable = True


class NetworkError(LLMProviderError):
    """Raised when the provider cannot be reached"""
    error_code = "NETWORK_ERROR"
    retryable = True


class ServerError(LLMProviderError):
    """Raised when the provider fails on its side"""
    error_code = "SERVER_ERROR"
    retryable = True
    severity = "high"


class CircuitOpenError(RouterError):
    """Raised instead of calling a provider whose circuit is open"""
    error_code = "CIRCUIT_BREAKER_OPEN"
    retryable = True


class NoAvailableProviders(RouterError):
    """Raised when no candidate provider can serve the request"""
    error_code = "NO_AVAILABLE_PROVIDERS"
    severity = "critical"


class RecoveryExhaustedError(RouterError):
    """Raised when retries, fallbacks and degradation all failed"""
    error_code = "RECOVERY_EXHAUSTED"
    severity = "high"

    def __init__(self, message: str, strategy: str, root_cause: Optional[BaseException] = None,
                 provider: Optional[str] = None, attempts: int = 0):
        cause_text = f"{type(root_cause).__name__}: {root_cause}" if root_cause else "unknown"
        super().__init__(f"{message} (strategy={strategy}, root_cause={cause_text})", provider=provider)
        self.strategy = strategy
        self.root_cause = root_cause
        self.attempts = attempts

    def to_dict(self):
        data = super().to_dict()
        data.update({
            "strategy": self.strategy,
            "attempts": self.attempts,
            "root_cause": self.root_cause.to_dict() if isinstance(self.root_cause, RouterError)
            else (str(self.root_cause) if self.root_cause else None),
        })
        return data


class MLError(RouterError):
    """Base exception for the learned scoring layer"""
    error_code = "ML_ERROR"
    severity = "low"


class InsufficientTrainingData(MLError):
    """Raised when there are too few examples to train the models"""
    error_code = "INSUFFICIENT_TRAINING_DATA"


class ModelNotTrained(MLError):
    """Raised when a prediction is requested before training"""
    error_code = "MODEL_NOT_TRAINED"


class ConfigurationError(RouterError):
    """Raised when a configuration value is missing or invalid"""
    error_code = "CONFIGURATION_ERROR"
    severity = "high"


NON_RETRYABLE_ERRORS = (AuthenticationError, InvalidRequestError)


def is_retryable(error: BaseException) -> bool:
    """Return True for errors worth retrying or falling back from"""
    if isinstance(error, NON_RETRYABLE_ERRORS):
        return False
    return bool(getattr(error, "retryable", False))


def classify_severity(error: BaseException) -> str:
    """Map an error to the low/medium/high/critical monitoring scale"""
    return getattr(error, "severity", "medium")
