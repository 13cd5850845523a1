"""
Config Module - Black Box Interface

Purpose: Application configuration management
Interface: get_config(), set_config(), load_from_env()
Hidden: Config sources, validation logic, environment parsing

Can be replaced with different config systems (Consul, etcd, AWS Parameter Store).
"""

import os
from typing import Any, Dict


# Configuration Contract: Required and Optional Keys
# This defines the black box interface - what the config module guarantees to provide

REQUIRED_CONFIG_KEYS = {
    "host": "API server bind address",
    "port": "API server port",
    "log_level": "Logging level (DEBUG, INFO, WARNING, ERROR)",
    "cache_ttl_seconds": "Orchestration cache time-to-live in seconds",
    "cache_max_entries": "Maximum number of cached orchestration results",
    "stream_queue_size": "Per-subscriber progress queue size",
}

OPTIONAL_CONFIG_KEYS = {
    "debug": {
        "description": "Enable debug mode",
        "default": False,
    },
    "default_temperature": {
        "description": "Sampling temperature for orchestrated model calls",
        "default": 0.3,
    },
}


class ConfigModule:
    """Configuration management module."""

    def __init__(self):
        """Initialize with environment variables."""
        self._config = self._load_from_env()
        self._validate_required_keys()

    def _validate_required_keys(self) -> None:
        """
        Validate that all required configuration keys are present.

        Raises:
            ValueError: If required keys are missing
        """
        missing_keys = []
        for key in REQUIRED_CONFIG_KEYS:
            if key not in self._config or self._config[key] is None:
                missing_keys.append(key)

        if missing_keys:
            raise ValueError(
                f"Missing required configuration keys: {', '.join(missing_keys)}. "
                f"Check environment variables and deployment configuration."
            )

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment."""
        return {
            # API settings
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8080")),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "debug": os.getenv("DEBUG", "false").lower() == "true",
            # Orchestration settings
            "cache_ttl_seconds": float(os.getenv("CACHE_TTL_SECONDS", "600")),
            "cache_max_entries": int(os.getenv("CACHE_MAX_ENTRIES", "256")),
            "default_temperature": float(os.getenv("DEFAULT_TEMPERATURE", "0.3")),
            # Progress streaming
            "stream_queue_size": int(os.getenv("STREAM_QUEUE_SIZE", "100")),
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        self._config[key] = value

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values."""
        return self._config.copy()

    @staticmethod
    def get_config_schema() -> Dict[str, Any]:
        """
        Get the configuration schema (contract) for this module.

        Returns:
            Dictionary with 'required' and 'optional' key specifications

        Example:
            >>> schema = ConfigModule.get_config_schema()
            >>> print(schema['required']['cache_ttl_seconds'])
            'Orchestration cache time-to-live in seconds'
        """
        return {
            "required": REQUIRED_CONFIG_KEYS.copy(),
            "optional": OPTIONAL_CONFIG_KEYS.copy(),
        }


# Singleton instance
_instance = None


def get_config() -> ConfigModule:
    """Get the configuration module singleton."""
    global _instance
    if _instance is None:
        _instance = ConfigModule()
    return _instance


# Public prompt loader interface
from .prompts import get_prompt

__all__ = ["get_config", "ConfigModule", "get_prompt"]
