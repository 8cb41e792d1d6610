"""Configuration management for upnpfwd.

Hierarchical loading from defaults → TOML config file → environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from upnpfwd.exceptions import ConfigurationError
from upnpfwd.logging_config import setup_logging
from upnpfwd.models import Config

CONFIG_FILE_NAME = "upnpfwd.toml"

# Environment variable → config path
ENV_MAPPINGS: dict[str, str] = {
    # Forwarder
    "UPNPFWD_MAPPING_ATTEMPTS": "forwarder.mapping_attempts",
    "UPNPFWD_MAPPING_RETRY_INTERVAL": "forwarder.mapping_retry_interval",
    "UPNPFWD_DESCRIPTION_PREFIX": "forwarder.description_prefix",
    # Discovery
    "UPNPFWD_SEARCH_TARGET": "discovery.search_target",
    "UPNPFWD_SEARCH_INTERVAL": "discovery.search_interval",
    "UPNPFWD_SEARCH_MX": "discovery.search_mx",
    "UPNPFWD_LISTEN_NOTIFY": "discovery.listen_notify",
    "UPNPFWD_HTTP_TIMEOUT": "discovery.http_timeout",
    "UPNPFWD_DEFAULT_MAX_AGE": "discovery.default_max_age",
    # Observability
    "UPNPFWD_LOG_LEVEL": "observability.log_level",
    "UPNPFWD_LOG_FILE": "observability.log_file",
    "UPNPFWD_STRUCTURED_LOGGING": "observability.structured_logging",
    "UPNPFWD_LOG_CORRELATION_ID": "observability.log_correlation_id",
}

# Paths whose environment value is always kept as text
_STRING_PATHS = {
    "forwarder.description_prefix",
    "discovery.search_target",
    "observability.log_file",
    "observability.log_level",
}

# Global configuration instance
_config_manager: ConfigManager | None = None


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for upnpfwd.toml

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._setup_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "upnpfwd" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                logging.warning(
                    "Failed to load config file %s: %s", self.config_file, e
                )

        env_config = self._get_env_config()
        config_data = self._merge_config(config_data, env_config)

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}

        def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
            if path in _STRING_PATHS:
                return raw
            low = raw.lower()
            if low in {"true", "yes", "on"}:
                return True
            if low in {"false", "no", "off"}:
                return False
            try:
                if "." in raw:
                    return float(raw)
                return int(raw)
            except ValueError:
                return raw

        def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
            parts = path.split(".")
            cur = d
            for p in parts[:-1]:
                cur = cur.setdefault(p, {})
            cur[parts[-1]] = value

        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))

        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self) -> str:
        """Export current configuration as TOML."""
        return toml.dumps(self.config.model_dump(mode="json", exclude_none=True))

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime and reconfigure logging."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.config = new_config
    _config_manager._setup_logging()  # noqa: SLF001
