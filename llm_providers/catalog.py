"""
Model catalogs of the known providers.

Prices are dollars per one million tokens.
"""

from typing import Dict, Any, List

from core.data_models import ModelInfo

SUPPORTED_MODELS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "openai": {
        "gpt-3.5-turbo": {
            "context_window": 16385,
            "input_cost_per_million": 0.50,
            "output_cost_per_million": 1.50,
            "supports_tools": True,
        },
        "gpt-4": {
            "context_window": 8192,
            "input_cost_per_million": 30.00,
            "output_cost_per_million": 60.00,
            "supports_tools": True,
        },
        "gpt-4-turbo": {
            "context_window": 128000,
            "input_cost_per_million": 10.00,
            "output_cost_per_million": 30.00,
            "supports_tools": True,
        },
    },
    "anthropic": {
        "claude-3-haiku-20240307": {
            "context_window": 200000,
            "input_cost_per_million": 0.25,
            "output_cost_per_million": 1.25,
            "supports_tools": True,
        },
        "claude-3-sonnet-20240229": {
            "context_window": 200000,
            "input_cost_per_million": 3.00,
            "output_cost_per_million": 15.00,
            "supports_tools": True,
        },
        "claude-3-opus-20240229": {
            "context_window": 200000,
            "input_cost_per_million": 15.00,
            "output_cost_per_million": 75.00,
            "supports_tools": True,
        },
    },
    "google": {
        "gemini-1.5-flash": {
            "context_window": 1000000,
            "input_cost_per_million": 0.075,
            "output_cost_per_million": 0.30,
            "supports_tools": False,
        },
        "gemini-1.5-flash-8b": {
            "context_window": 1000000,
            "input_cost_per_million": 0.0375,
            "output_cost_per_million": 0.15,
            "supports_tools": False,
        },
        "gemini-1.5-pro": {
            "context_window": 2000000,
            "input_cost_per_million": 1.25,
            "output_cost_per_million": 5.00,
            "supports_tools": True,
        },
    },
}


def get_provider_models(provider_id: str) -> List[ModelInfo]:
    """Return the catalog of a provider as ModelInfo objects"""
    models = SUPPORTED_MODELS.get(provider_id, {})
    return [
        ModelInfo(
            id=name,
            provider=provider_id,
            input_cost_per_1k=spec["input_cost_per_million"] / 1000,
            output_cost_per_1k=spec["output_cost_per_million"] / 1000,
            context_window=spec["context_window"],
            supports_streaming=True,
            supports_tools=spec.get("supports_tools", False),
        )
        for name, spec in models.items()
    ]
