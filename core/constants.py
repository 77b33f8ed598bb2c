"""
Shared routing constants: model equivalence classes, thresholds and the
static provider quality table.
"""

from typing import Dict, Optional

MODEL_EQUIVALENTS: Dict[str, Dict[str, str]] = {
    "chat-small": {
        "openai": "gpt-3.5-turbo",
        "anthropic": "claude-3-haiku-20240307",
        "google": "gemini-1.5-flash",
    },
    "chat-medium": {
        "openai": "gpt-4",
        "anthropic": "claude-3-sonnet-20240229",
        "google": "gemini-1.5-pro",
    },
    "chat-large": {
        "openai": "gpt-4-turbo",
        "anthropic": "claude-3-opus-20240229",
        "google": "gemini-1.5-pro",
    },
}

# Cross-provider mapping used when falling back away from a failing provider
FALLBACK_MODEL_MAPPINGS: Dict[str, Dict[str, str]] = {
    "gpt-4": {
        "openai": "gpt-4",
        "anthropic": "claude-3-opus-20240229",
        "google": "gemini-1.5-pro",
    },
    "gpt-3.5-turbo": {
        "openai": "gpt-3.5-turbo",
        "anthropic": "claude-3-haiku-20240307",
        "google": "gemini-1.5-flash",
    },
}

BASIC_MODELS: Dict[str, str] = {
    "openai": "gpt-3.5-turbo",
    "anthropic": "claude-3-haiku-20240307",
    "google": "gemini-1.5-flash",
}

DEGRADED_MODELS = (
    "gpt-3.5-turbo",
    "claude-3-haiku-20240307",
    "gemini-1.5-flash-8b",
)

PERFORMANCE_TARGETS = {
    "MAX_RESPONSE_TIME": 200,  # ms
}

COST_THRESHOLDS = {
    "CHEAP_REQUEST": 0.001,
    "EXPENSIVE_REQUEST": 0.1,
    "SAVINGS_THRESHOLD": 0.2,
}

PROVIDER_QUALITY_SCORES: Dict[str, float] = {
    "openai": 0.9,
    "anthropic": 0.95,
    "google": 0.85,
}

PREMIUM_MODEL_MARKERS = ("gpt-4", "opus", "pro")

DEFAULT_FALLBACK_ORDER = ("google", "anthropic", "openai")


def find_equivalent_model(model: str, provider: str) -> Optional[str]:
    """
    Find the model a provider offers for the same equivalence class.

    Args:
        model: Requested model id or equivalence class name
        provider: Target provider id

    Returns:
        The provider's equivalent model, or None when the model is unknown
    """
    if model in MODEL_EQUIVALENTS:
        return MODEL_EQUIVALENTS[model].get(provider)
    for provider_models in MODEL_EQUIVALENTS.values():
        if model in provider_models.values():
            return provider_models.get(provider)
    return None


def find_fallback_model(model: str, provider: str) -> Optional[str]:
    """Map a model to the equivalent offered by a fallback provider"""
    for mapping in FALLBACK_MODEL_MAPPINGS.values():
        if model in mapping.values():
            return mapping.get(provider)
    equivalent = find_equivalent_model(model, provider)
    if equivalent:
        return equivalent
    return BASIC_MODELS.get(provider)


def static_quality_score(provider: str, model: str) -> float:
    """Static quality estimate for a provider/model pair"""
    base = PROVIDER_QUALITY_SCORES.get(provider, 0.8)
    bonus = 0.1 if any(marker in model for marker in PREMIUM_MODEL_MARKERS) else 0.0
    return min(1.0, base + bonus)
