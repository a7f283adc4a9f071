"""Configuration loader with environment variable expansion."""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_PATH_ENV = "USAGE_AGGREGATOR_CONFIG"

# Values used when the YAML file leaves a key out.
DEFAULT_CONFIG: Dict[str, Any] = {
    "postgresql": {
        "host": "localhost",
        "port": 5432,
        "database": "resource_manager",
        "user": "postgres",
        "password": "",
        "schema": "public",
    },
    "retention": {
        "daily_to_weekly_days": 30,
        "weekly_to_biweekly_days": 90,
        "biweekly_to_monthly_days": 180,
        "schedule_cron": "0 2 * * 1",
    },
    "catalog": {
        "customers_csv": None,
    },
    "logging": {
        "level": "INFO",
        "format": "console",
    },
    "performance": {
        "db_batch_size": 1000,
    },
}


def merge_config(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deep-merge ``override`` on top of ``base`` without mutating either.

    Args:
        base: Default configuration
        override: Loaded configuration (may be None)

    Returns:
        Merged configuration dictionary
    """
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


class ConfigLoader:
    """Load and parse configuration with environment variable expansion."""

    def __init__(self, config_path: str = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to config.yaml (defaults to $USAGE_AGGREGATOR_CONFIG,
                then config/config.yaml next to the package)
        """
        if config_path is None:
            config_path = os.environ.get(CONFIG_PATH_ENV)
        if config_path is None:
            base_dir = Path(__file__).parent.parent
            config_path = base_dir / "config" / "config.yaml"

        self.config_path = Path(config_path)
        self._config = None

    def load(self) -> Dict[str, Any]:
        """Load configuration from YAML file with environment variable expansion.

        Returns:
            Configuration dictionary merged over DEFAULT_CONFIG

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is invalid
            ValueError: If a required environment variable is missing
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            raw_config = yaml.safe_load(f) or {}

        if not isinstance(raw_config, dict):
            raise ValueError(f"Configuration root must be a mapping: {self.config_path}")

        self._config = merge_config(DEFAULT_CONFIG, self._expand_env_vars(raw_config))
        return self._config

    def _expand_env_vars(self, obj: Any) -> Any:
        """Recursively expand environment variables in configuration.

        Supports:
        - ${VAR_NAME}: Required variable (raises if not set)
        - ${VAR_NAME:-default}: Variable with default value

        Args:
            obj: Configuration object (dict, list, str, etc.)

        Returns:
            Object with environment variables expanded
        """
        if isinstance(obj, dict):
            return {k: self._expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._expand_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            return self._expand_string(obj)
        else:
            return obj

    def _expand_string(self, value: str) -> str:
        """Expand environment variables in a string.

        Raises:
            ValueError: If required environment variable is not set
        """
        pattern = r"\$\{([A-Z_][A-Z0-9_]*)(:-([^}]*))?\}"

        def replacer(match):
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) if has_default else None

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            else:
                raise ValueError(
                    f"Required environment variable '{var_name}' is not set. " f"Found in configuration value: {value}"
                )

        return re.sub(pattern, replacer, value)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Example:
            >>> loader = ConfigLoader()
            >>> loader.get('retention.daily_to_weekly_days')
            30
        """
        if self._config is None:
            self.load()
        return lookup(self._config, key_path, default)

    @property
    def config(self) -> Dict[str, Any]:
        """Get full configuration dictionary."""
        if self._config is None:
            self.load()
        return self._config


def lookup(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """Resolve a dot-separated path inside a configuration dictionary.

    Args:
        config: Configuration dictionary
        key_path: Dot-separated path (e.g., 'postgresql.host')
        default: Default value if key doesn't exist

    Returns:
        Configuration value
    """
    value = config
    for key in key_path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


# Singleton instance for convenience
_default_loader = None


def get_config(config_path: str = None, reload: bool = False) -> Dict[str, Any]:
    """Get configuration (singleton pattern).

    Args:
        config_path: Path to config.yaml (optional)
        reload: Force reload from file

    Returns:
        Configuration dictionary
    """
    global _default_loader

    if _default_loader is None or reload:
        _default_loader = ConfigLoader(config_path)
        return _default_loader.load()

    return _default_loader.config
