"""
Provider registry and factory.

The registry maps provider ids to adapters; the router looks adapters up by
id and never depends on a concrete adapter class.
"""

import logging
from typing import Dict, Any, Optional, List, Union

from core.config import AppConfig, SimulatedProviderConfig
from core.data_models import ProviderType, ProviderStatus
from core.errors import ConfigurationError

from .base_provider import ProviderAdapter
from .catalog import SUPPORTED_MODELS, get_provider_models
from .simulated_provider import SimulatedProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Registry of provider adapters keyed by provider id.

    Provides lookup, health checks and statistics across every registered
    adapter.
    """

    def __init__(self, adapters: Optional[Dict[str, ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for provider_id, adapter in (adapters or {}).items():
            self.register(adapter, provider_id)

    def register(self, adapter: ProviderAdapter, provider_id: Optional[str] = None) -> None:
        """
        Add an adapter to the registry.

        Args:
            adapter: Object satisfying the ProviderAdapter protocol
            provider_id: Id to register under (defaults to adapter.provider_id)
        """
        if not isinstance(adapter, ProviderAdapter):
            raise TypeError(f"{adapter!r} does not implement the ProviderAdapter interface")
        key = provider_id or adapter.provider_id
        self._adapters[key] = adapter
        logger.info(f"Registered provider adapter: {key}")

    def get(self, provider_id: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider_id)

    def remove(self, provider_id: str) -> bool:
        """Remove a provider from the registry."""
        return self._adapters.pop(provider_id, None) is not None

    def provider_ids(self) -> List[str]:
        return list(self._adapters.keys())

    def items(self):
        return list(self._adapters.items())

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    async def health_check_all(self) -> Dict[str, ProviderStatus]:
        """
        Perform health check on all registered providers.

        Returns:
            Dict[str, ProviderStatus]: Health status for each provider
        """
        results = {}
        for provider_id, adapter in self.items():
            try:
                results[provider_id] = await adapter.health_check()
            except Exception as e:
                logger.error(f"Health check failed for {provider_id}: {e}")
                results[provider_id] = ProviderStatus(
                    provider=provider_id,
                    is_healthy=False,
                    issues=[f"Health check failed: {e}"],
                )
        return results

    def get_stats_all(self) -> Dict[str, Dict[str, Any]]:
        """Usage statistics of every adapter that reports them"""
        return {
            provider_id: adapter.get_stats()
            for provider_id, adapter in self.items()
            if hasattr(adapter, "get_stats")
        }


class ProviderFactory:
    """
    Factory for the adapters shipped with the engine.

    Vendor wire-protocol adapters live outside this repository; the factory
    builds simulated adapters over each known provider's model catalog.
    """

    PROVIDERS = {
        ProviderType.OPENAI: {"default_config": SimulatedProviderConfig(base_latency_ms=900, quality_factor=0.9)},
        ProviderType.ANTHROPIC: {"default_config": SimulatedProviderConfig(base_latency_ms=1000, quality_factor=0.95)},
        ProviderType.GOOGLE: {"default_config": SimulatedProviderConfig(base_latency_ms=700, quality_factor=0.85)},
    }

    @classmethod
    def create_provider(
        cls,
        provider_type: Union[str, ProviderType],
        config: Optional[SimulatedProviderConfig] = None,
        time_scale: float = 1.0,
        seed: Optional[int] = None,
    ) -> SimulatedProvider:
        """
        Create a provider adapter.

        Args:
            provider_type: Provider id ("openai", "anthropic", "google" or enum)
            config: Simulation settings (provider defaults if not given)
            time_scale: Latency multiplier for the simulation
            seed: Random seed

        Returns:
            SimulatedProvider: Configured adapter

        Raises:
            ConfigurationError: If provider type is not supported
        """
        if isinstance(provider_type, str):
            try:
                provider_type = ProviderType(provider_type.lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unsupported provider type: {provider_type}. "
                    f"Available: {[p.value for p in ProviderType]}",
                    provider=provider_type
                )

        provider_info = cls.PROVIDERS[provider_type]
        return SimulatedProvider(
            provider_id=provider_type.value,
            models=get_provider_models(provider_type.value),
            config=config or provider_info["default_config"],
            time_scale=time_scale,
            seed=seed,
        )

    @classmethod
    def get_available_providers(cls) -> List[str]:
        return [provider.value for provider in cls.PROVIDERS.keys()]

    @classmethod
    def get_provider_models(cls, provider_type: Union[str, ProviderType]) -> List[str]:
        key = provider_type.value if isinstance(provider_type, ProviderType) else provider_type.lower()
        if key not in SUPPORTED_MODELS:
            raise ConfigurationError(f"Unknown provider: {provider_type}", provider=key)
        return list(SUPPORTED_MODELS[key].keys())


def create_provider_registry(app_config: AppConfig, time_scale: float = 1.0,
                             seed: Optional[int] = None) -> ProviderRegistry:
    """
    Build a registry with one adapter per enabled provider.

    Args:
        app_config: Loaded application configuration
        time_scale: Latency multiplier for simulated adapters
        seed: Random seed shared by the adapters

    Returns:
        ProviderRegistry: Registry with every enabled provider
    """
    registry = ProviderRegistry()
    for provider_id in app_config.providers:
        adapter = ProviderFactory.create_provider(
            provider_id,
            config=app_config.simulation.get(provider_id),
            time_scale=time_scale,
            seed=seed,
        )
        registry.register(adapter)

    if not len(registry):
        raise ConfigurationError("No providers enabled. Set [PROVIDERS] enabled in config.ini")
    return registry
