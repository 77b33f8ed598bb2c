"""
LLM Providers Package.

This package defines the provider capability contract consumed by the
routing engine, the credential and usage collaborators, and the registry that
selects adapters by provider id.
"""

from .base_provider import (
    ProviderAdapter,
    CredentialProvider,
    UsageSink,
    StaticCredentialProvider,
    LoggingUsageSink,
    InMemoryUsageSink,
)
from .catalog import SUPPORTED_MODELS, get_provider_models
from .simulated_provider import SimulatedProvider, estimate_tokens
from .factory import ProviderRegistry, ProviderFactory, create_provider_registry

__all__ = [
    "ProviderAdapter",
    "CredentialProvider",
    "UsageSink",
    "StaticCredentialProvider",
    "LoggingUsageSink",
    "InMemoryUsageSink",
    "SUPPORTED_MODELS",
    "get_provider_models",
    "SimulatedProvider",
    "estimate_tokens",
    "ProviderRegistry",
    "ProviderFactory",
    "create_provider_registry",
]
