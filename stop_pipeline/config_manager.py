"""
Configuration manager for pipeline settings.

Loads pipeline configuration from YAML files, validates settings,
and provides environment variable substitution.
"""

import logging
import os
import re
import yaml
from typing import Dict, Any, Optional
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

LEARNED_STORE_BACKENDS = ("json", "sqlite", "memory")
GEOCODER_PROVIDERS = ("locationiq", "nominatim")


@dataclass
class LearnedStoreConfig:
    """Where learned locations are kept."""
    backend: str = "json"
    path: Optional[Path] = Path("learned_locations.json")


@dataclass
class GeocoderConfig:
    """Geocoding provider settings."""
    provider: str = "nominatim"
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    country: Optional[str] = None
    timeout: float = 10.0
    min_delay_seconds: float = 1.1
    max_retries: int = 2
    error_wait_seconds: float = 5.0
    user_agent: str = "delivery-stop-pipeline/0.1"
    enabled: bool = True


@dataclass
class ReconciliationConfig:
    """Arbitration thresholds."""
    distance_threshold_m: float = 50.0
    report_mismatch_status: bool = False


@dataclass
class PipelineConfig:
    """Validated pipeline configuration."""
    name: str = "delivery_stop_pipeline"
    learned_store: LearnedStoreConfig = field(default_factory=LearnedStoreConfig)
    geocoder: GeocoderConfig = field(default_factory=GeocoderConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    batch_size: int = 50
    output_dir: Path = Path("outputs")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "learned_store": {
                "backend": self.learned_store.backend,
                "path": str(self.learned_store.path) if self.learned_store.path else None,
            },
            "geocoder": {
                "provider": self.geocoder.provider,
                "api_url": self.geocoder.api_url,
                "api_key": "***" if self.geocoder.api_key else None,
                "country": self.geocoder.country,
                "timeout": self.geocoder.timeout,
                "min_delay_seconds": self.geocoder.min_delay_seconds,
                "max_retries": self.geocoder.max_retries,
                "error_wait_seconds": self.geocoder.error_wait_seconds,
                "user_agent": self.geocoder.user_agent,
                "enabled": self.geocoder.enabled,
            },
            "reconciliation": {
                "distance_threshold_m": self.reconciliation.distance_threshold_m,
                "report_mismatch_status": self.reconciliation.report_mismatch_status,
            },
            "batch_size": self.batch_size,
            "output_dir": str(self.output_dir),
        }


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class ConfigManager:
    """Manages pipeline configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration YAML file (optional)
        """
        self.config_path = config_path
        self._config: Optional[Dict[str, Any]] = None

    def load(self, config_path: Optional[Path] = None) -> PipelineConfig:
        """Load and validate configuration from YAML file.

        Args:
            config_path: Path to configuration file (overrides init path)

        Returns:
            PipelineConfig with validated settings

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If configuration is invalid
        """
        # Use provided path or fall back to init path
        path = config_path or self.config_path
        if path is None:
            raise ValueError("No configuration path provided")

        # Check file exists
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        # Load YAML
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}

        if not isinstance(config, dict):
            raise ValueError(f"Configuration must be a mapping: {path}")

        # Perform environment variable substitution
        config = self._substitute_env_vars(config)

        # Validate configuration
        self._validate_config(config)

        # Store raw config
        self._config = config

        logger.debug(f"Loaded configuration from {path}")

        # Create PipelineConfig
        return self._create_pipeline_config(config)

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute environment variables in configuration.

        Supports syntax: ${VAR_NAME} or ${VAR_NAME:default_value}

        Args:
            config: Configuration dictionary or value

        Returns:
            Configuration with substituted values
        """
        if isinstance(config, dict):
            return {
                key: self._substitute_env_vars(value)
                for key, value in config.items()
            }
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_string(config)
        else:
            return config

    def _substitute_env_var_string(self, value: str) -> str:
        """Substitute environment variables in a string.

        Args:
            value: String potentially containing ${VAR} syntax

        Returns:
            String with substituted values
        """
        # Pattern: ${VAR_NAME} or ${VAR_NAME:default}
        pattern = r'\$\{([^}:]+)(?::([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""

            # Get from environment or use default
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replacer, value)

    def _validate_config(self, config: Dict[str, Any]) -> None:
        """Validate configuration structure.

        Args:
            config: Configuration dictionary

        Raises:
            ValueError: If configuration is invalid
        """
        for section in ("learned_store", "geocoder", "reconciliation"):
            if section in config and not isinstance(config[section], dict):
                raise ValueError(f"Section {section} must be a dictionary")

        store = config.get("learned_store", {})
        backend = store.get("backend", "json")
        if backend not in LEARNED_STORE_BACKENDS:
            raise ValueError(
                f"Unknown learned_store backend '{backend}' "
                f"(expected one of {', '.join(LEARNED_STORE_BACKENDS)})"
            )
        if backend != "memory" and not store.get("path", LearnedStoreConfig.path):
            raise ValueError(f"learned_store backend '{backend}' requires a path")

        geocoder = config.get("geocoder", {})
        provider = str(geocoder.get("provider", "nominatim")).lower()
        if provider not in GEOCODER_PROVIDERS:
            raise ValueError(
                f"Unknown geocoder provider '{provider}' "
                f"(expected one of {', '.join(GEOCODER_PROVIDERS)})"
            )
        if provider == "locationiq" and _as_bool(geocoder.get("enabled", True)) and not geocoder.get("api_key"):
            raise ValueError("Geocoder provider 'locationiq' requires api_key")

        try:
            batch_size = int(config.get("batch_size", 50))
        except (TypeError, ValueError):
            raise ValueError(f"batch_size must be an integer, got {config.get('batch_size')!r}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        reconciliation = config.get("reconciliation", {})
        try:
            threshold = float(reconciliation.get("distance_threshold_m", 50.0))
        except (TypeError, ValueError):
            raise ValueError("reconciliation.distance_threshold_m must be a number")
        if threshold < 0:
            raise ValueError("reconciliation.distance_threshold_m must not be negative")

    def _create_pipeline_config(self, config: Dict[str, Any]) -> PipelineConfig:
        """Create PipelineConfig from validated configuration.

        Args:
            config: Validated configuration dictionary

        Returns:
            PipelineConfig instance
        """
        store = config.get("learned_store", {})
        store_path = store.get("path", LearnedStoreConfig.path)
        learned_store = LearnedStoreConfig(
            backend=store.get("backend", "json"),
            path=Path(store_path).expanduser() if store_path else None,
        )

        geocoder = config.get("geocoder", {})
        defaults = GeocoderConfig()
        geocoder_config = GeocoderConfig(
            provider=str(geocoder.get("provider", defaults.provider)).lower(),
            api_url=geocoder.get("api_url") or None,
            api_key=geocoder.get("api_key") or None,
            country=geocoder.get("country") or None,
            timeout=float(geocoder.get("timeout", defaults.timeout)),
            min_delay_seconds=float(geocoder.get("min_delay_seconds", defaults.min_delay_seconds)),
            max_retries=int(geocoder.get("max_retries", defaults.max_retries)),
            error_wait_seconds=float(geocoder.get("error_wait_seconds", defaults.error_wait_seconds)),
            user_agent=geocoder.get("user_agent") or defaults.user_agent,
            enabled=_as_bool(geocoder.get("enabled", True)),
        )

        reconciliation = config.get("reconciliation", {})
        reconciliation_config = ReconciliationConfig(
            distance_threshold_m=float(reconciliation.get("distance_threshold_m", 50.0)),
            report_mismatch_status=_as_bool(reconciliation.get("report_mismatch_status", False)),
        )

        # Get output directory (default to outputs/)
        output_dir = Path(config.get("output_dir", "outputs")).expanduser()

        return PipelineConfig(
            name=config.get("name", "delivery_stop_pipeline"),
            learned_store=learned_store,
            geocoder=geocoder_config,
            reconciliation=reconciliation_config,
            batch_size=int(config.get("batch_size", 50)),
            output_dir=output_dir,
        )

    def save_example_config(self, output_path: Path) -> None:
        """Save an example configuration file.

        Args:
            output_path: Path where to save example config
        """
        example_config = {
            "name": "delivery_stop_pipeline",
            "learned_store": {
                "backend": "json",
                "path": "${HOME}/.delivery-stops/learned_locations.json"
            },
            "geocoder": {
                "provider": "locationiq",
                "api_key": "${LOCATIONIQ_API_KEY}",
                "country": "Brazil",
                "timeout": 10,
                "min_delay_seconds": 1.1,
                "max_retries": 2,
                "user_agent": "delivery-stop-pipeline/0.1",
                "enabled": True
            },
            "reconciliation": {
                "distance_threshold_m": 50,
                "report_mismatch_status": False
            },
            "batch_size": 50,
            "output_dir": "outputs"
        }

        with open(output_path, 'w', encoding='utf-8') as f:
            yaml.dump(example_config, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved example configuration to {output_path}")
