"""
Configuration for the routing engine.

Settings are read from an INI file with configparser and mapped onto
dataclasses. Every key is optional; missing keys keep the dataclass default.
"""

import configparser
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Any, List, Optional

from .constants import DEFAULT_FALLBACK_ORDER
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class RouterConfig:
    """Routing behaviour"""
    fallback_enabled: bool = True
    fallback_order: List[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_ORDER))
    cost_optimization_enabled: bool = True
    performance_weighting: float = 0.3
    max_retries: int = 3
    retry_delay_ms: float = 1000
    circuit_breaker_threshold: int = 5
    ml_routing_enabled: bool = True
    request_timeout_seconds: float = 30.0
    health_check_interval_seconds: float = 60.0
    status_refresh_seconds: float = 30.0


@dataclass
class CacheConfig:
    """Response cache behaviour"""
    enabled: bool = True
    ttl_seconds: float = 300
    max_size: int = 1000
    key_strategy: str = "content_hash"
    cleanup_interval_seconds: float = 300
    max_temperature: float = 0.7
    short_request_length: int = 1000


@dataclass
class RetryConfig:
    """Retry with exponential backoff"""
    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1


@dataclass
class CircuitBreakerConfig:
    """Per-provider circuit breaker thresholds"""
    failure_threshold: int = 5
    success_threshold: int = 3
    timeout_ms: float = 60000


@dataclass
class ResilienceConfig:
    """Recovery strategy"""
    graceful_degradation: bool = True
    success_threshold: int = 3
    timeout_ms: float = 60000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1


@dataclass
class MLConfig:
    """Learned scoring layer"""
    confidence_threshold: float = 0.7
    min_training_examples: int = 100
    model_update_interval_minutes: float = 60
    training_data_retention_days: float = 30


@dataclass
class SimulatedProviderConfig:
    """Behaviour of one simulated provider"""
    base_latency_ms: float = 800.0
    error_rate: float = 0.0
    quality_factor: float = 0.85
    price_multiplier: float = 1.0


@dataclass
class AppConfig:
    """Complete application configuration"""
    router: RouterConfig = field(default_factory=RouterConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    ml: MLConfig = field(default_factory=MLConfig)
    providers: List[str] = field(default_factory=lambda: ["openai", "anthropic", "google"])
    simulation: Dict[str, SimulatedProviderConfig] = field(default_factory=dict)
    credentials: Dict[str, str] = field(default_factory=dict)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.router.max_retries,
            base_delay_ms=self.router.retry_delay_ms,
            max_delay_ms=self.resilience.max_delay_ms,
            backoff_multiplier=self.resilience.backoff_multiplier,
            jitter_factor=self.resilience.jitter_factor,
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.router.circuit_breaker_threshold,
            success_threshold=self.resilience.success_threshold,
            timeout_ms=self.resilience.timeout_ms,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "router": vars(self.router).copy(),
            "cache": vars(self.cache).copy(),
            "resilience": vars(self.resilience).copy(),
            "ml": vars(self.ml).copy(),
            "providers": list(self.providers),
        }


def parse_value(raw: str) -> Any:
    """Parse an INI value: strip inline comments, then bool, number, list or string"""
    value = raw
    if '#' in value:
        value = value.split('#')[0]
    value = value.strip()

    if value.lower() in ['true', 'false']:
        return value.lower() == 'true'
    try:
        if value.isdigit() or (value.startswith('-') and value[1:].isdigit()):
            return int(value)
        return float(value)
    except ValueError:
        pass
    if ',' in value:
        return [item.strip() for item in value.split(',') if item.strip()]
    return value


def _coerce(section: str, key: str, value: Any, default: Any) -> Any:
    """Coerce a parsed value to the type of the dataclass default"""
    try:
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ValueError(f"expected true/false, got {value!r}")
            return value
        if isinstance(default, int):
            if isinstance(value, bool) or float(value) != int(float(value)):
                raise ValueError(f"expected an integer, got {value!r}")
            return int(float(value))
        if isinstance(default, float):
            if isinstance(value, bool):
                raise ValueError(f"expected a number, got {value!r}")
            return float(value)
        if isinstance(default, list):
            return value if isinstance(value, list) else [str(value)]
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for [{section}] {key}: {e}") from e


def _apply_section(config: configparser.ConfigParser, section: str, target: Any) -> None:
    if section not in config:
        return
    known = {f.name: getattr(target, f.name) for f in fields(target)}
    for key, raw in config[section].items():
        if key not in known:
            logger.warning(f"Ignoring unknown configuration key [{section}] {key}")
            continue
        setattr(target, key, _coerce(section, key, parse_value(raw), known[key]))


def _validate(app_config: AppConfig) -> None:
    router = app_config.router
    if not 0.0 <= router.performance_weighting <= 1.0:
        raise ConfigurationError(
            f"performance_weighting must be within [0, 1], got {router.performance_weighting}"
        )
    if router.max_retries < 0:
        raise ConfigurationError("max_retries must not be negative")
    if router.circuit_breaker_threshold < 1:
        raise ConfigurationError("circuit_breaker_threshold must be at least 1")
    if app_config.cache.key_strategy not in ("content_hash", "request_fingerprint"):
        raise ConfigurationError(f"Unsupported cache key_strategy: {app_config.cache.key_strategy}")
    if app_config.cache.max_size < 1:
        raise ConfigurationError("cache max_size must be at least 1")
    if not 0.0 <= app_config.ml.confidence_threshold <= 1.0:
        raise ConfigurationError("confidence_threshold must be within [0, 1]")


def load_config(config_file: str = "config.ini") -> AppConfig:
    """Load configuration from INI file.

    Args:
        config_file: Path to configuration file

    Returns:
        AppConfig populated from the file

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If a value cannot be parsed
    """
    config = configparser.ConfigParser()
    config_path = Path(config_file)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    config.read(config_path)
    return config_from_parser(config)


def config_from_parser(config: configparser.ConfigParser) -> AppConfig:
    """Build an AppConfig from an already populated ConfigParser"""
    app_config = AppConfig()
    _apply_section(config, 'ROUTER', app_config.router)
    _apply_section(config, 'CACHE', app_config.cache)
    _apply_section(config, 'RESILIENCE', app_config.resilience)
    _apply_section(config, 'ML', app_config.ml)

    if 'PROVIDERS' in config:
        enabled = parse_value(config['PROVIDERS'].get('enabled', ''))
        if isinstance(enabled, str):
            enabled = [enabled] if enabled else []
        if enabled:
            app_config.providers = [p.lower() for p in enabled]

    if 'SIMULATION' in config:
        section = config['SIMULATION']
        for provider in app_config.providers:
            sim = SimulatedProviderConfig()
            for f in fields(sim):
                key = f"{provider}_{f.name}"
                if key in section:
                    setattr(sim, f.name, _coerce('SIMULATION', key, parse_value(section[key]), getattr(sim, f.name)))
            app_config.simulation[provider] = sim

    if 'CREDENTIALS' in config:
        for key, raw in config['CREDENTIALS'].items():
            if key.endswith('_api_key'):
                value = str(parse_value(raw))
                if value:
                    app_config.credentials[key[:-len('_api_key')]] = value

    _validate(app_config)
    return app_config


def load_config_or_default(config_file: Optional[str] = "config.ini") -> AppConfig:
    """Load the INI file when present, otherwise fall back to defaults"""
    if config_file is None:
        return AppConfig()
    try:
        return load_config(config_file)
    except FileNotFoundError:
        logger.warning(f"{config_file} not found, using default configuration")
        return AppConfig()
