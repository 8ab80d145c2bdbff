"""
Configuration management for the CTF platform.
Supports both JSON file configuration and environment variable overrides.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)


class CTFConfig:
    """Configuration management for the CTF platform."""

    DEFAULT_CONFIG = {
        "ctf_name": "CTF Arena",
        "environment": "production",  # development exposes internal error text
        "flag": {
            "prefix": "CTF",
        },
        "rate_limit": {
            "max_attempts": 5,
            "window_seconds": 60,
            "cooldown_seconds": 30,
            "sweep_interval": 300,
        },
        "scoring": {
            "default_decay": 50,
            "minimum_ratio": 0.25,
        },
        "event": {
            "state_cache_ttl": 3600,
        },
        "scoreboard": {
            "cache_ttl": 30,
            "progression_cache_ttl": 60,
            "max_teams": 20,
            "max_users": 100,
        },
        "teams": {
            "max_members": 2,
        },
        "features": {
            "scoreboard_enabled": True,
            "live_monitor": True,
        },
        "cache": {
            "backend": "memory",  # memory or redis
            "redis_url": "redis://localhost:6379/0",
        },
        "database": {
            "busy_timeout": 30,
        },
        "live": {
            "queue_size": 100,  # messages buffered per monitor socket
            "relay_retry": 5,
        },
    }

    def __init__(
        self,
        config_path: str = "ctf_config.json",
    ) -> None:
        """Initialize configuration from file, environment variables, or defaults."""
        self.config_path = Path(config_path)
        self.config = self._load_config()
        self._apply_env_overrides()
        self._validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """
        Load configuration from JSON file or create default.

        @return: Dictionary containing the loaded configuration
        """
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    loaded_config = json.load(f)

                # Merge with defaults to ensure all keys exist
                config = copy.deepcopy(self.DEFAULT_CONFIG)
                self._deep_merge(config, loaded_config)
                return config

            except (json.JSONDecodeError, IOError) as e:
                logger.error("Error loading config from %s: %s", self.config_path, e)
                logger.warning("Using default configuration")
                return copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            self._create_default_config()
            return copy.deepcopy(self.DEFAULT_CONFIG)

    def _deep_merge(
        self,
        base_dict: Dict[str, Any],
        update_dict: Dict[str, Any],
    ) -> None:
        """
        Recursively merge dictionaries.

        @param base_dict: Base dictionary to merge into
        @param update_dict: Dictionary with updates to merge
        """
        for key, value in update_dict.items():
            if (
                key in base_dict
                and isinstance(base_dict[key], dict)
                and isinstance(value, dict)
            ):
                self._deep_merge(base_dict[key], value)
            else:
                base_dict[key] = value

    def _apply_env_overrides(self) -> None:
        """
        Apply environment variable overrides to configuration.

        Environment variables follow the names used by the deployment
        scripts (e.g., FLAG_SUBMIT_MAX_ATTEMPTS, REDIS_URL).
        """
        env_mappings = {
            "CTF_NAME": ("ctf_name",),
            "CTF_ENV": ("environment",),
            "FLAG_PREFIX": ("flag", "prefix"),

            # Flag submission throttling
            "FLAG_SUBMIT_MAX_ATTEMPTS": ("rate_limit", "max_attempts"),
            "FLAG_SUBMIT_WINDOW": ("rate_limit", "window_seconds"),
            "FLAG_SUBMIT_COOLDOWN": ("rate_limit", "cooldown_seconds"),

            "DYNAMIC_DEFAULT_DECAY": ("scoring", "default_decay"),
            "EVENT_STATE_CACHE_TTL": ("event", "state_cache_ttl"),

            # Scoreboard
            "SCOREBOARD_CACHE_TTL": ("scoreboard", "cache_ttl"),
            "SCOREBOARD_MAX_TEAMS": ("scoreboard", "max_teams"),
            "SCOREBOARD_MAX_USERS": ("scoreboard", "max_users"),
            "SCOREBOARD_ENABLED": ("features", "scoreboard_enabled"),
            "LIVE_MONITOR": ("features", "live_monitor"),

            "MAX_TEAM_MEMBERS": ("teams", "max_members"),

            # Cache backend
            "CACHE_BACKEND": ("cache", "backend"),
            "REDIS_URL": ("cache", "redis_url"),

            "DB_BUSY_TIMEOUT": ("database", "busy_timeout"),
        }

        for env_var, config_path in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                converted_value = self._convert_env_value(env_value)
                self._set_nested_config(config_path, converted_value)

    def _convert_env_value(self, value: str) -> Any:
        """
        Convert environment variable string to appropriate type.

        @param value: String value from environment variable
        @return: Converted value (bool, int, or string)
        """
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        return value

    def _set_nested_config(self, path: tuple, value: Any) -> None:
        """
        Set a nested configuration value using a path tuple.

        @param path: Tuple representing the nested path (e.g., ("rate_limit", "max_attempts"))
        @param value: Value to set
        """
        current = self.config
        for key in path[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    def _create_default_config(self) -> None:
        """
        Create a default configuration file.

        Writes the default configuration to the configured file path.
        """
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.DEFAULT_CONFIG, f, indent=2)
            logger.info("Created default configuration file: %s", self.config_path)
        except IOError as e:
            logger.warning("Could not create config file %s: %s", self.config_path, e)

    def _reset_if_invalid(
        self,
        path: tuple,
        is_valid: Any,
    ) -> None:
        value = self.get(*path)
        try:
            ok = is_valid(value)
        except TypeError:
            ok = False

        if not ok:
            default = self.DEFAULT_CONFIG
            for key in path:
                default = default[key]
            logger.warning(
                "Invalid %s=%r, using %r", ".".join(path), value, default
            )
            self._set_nested_config(path, default)

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Checks configuration values for validity and sets defaults for invalid values.
        """
        def positive(value: Any) -> bool:
            return isinstance(value, int) and not isinstance(value, bool) and value > 0

        self._reset_if_invalid(("environment",), lambda v: v in ("development", "production"))
        self._reset_if_invalid(("cache", "backend"), lambda v: v in ("memory", "redis"))
        self._reset_if_invalid(
            ("flag", "prefix"), lambda v: isinstance(v, str) and v.isalnum()
        )

        for path in (
            ("rate_limit", "max_attempts"),
            ("rate_limit", "window_seconds"),
            ("rate_limit", "cooldown_seconds"),
            ("rate_limit", "sweep_interval"),
            ("scoring", "default_decay"),
            ("event", "state_cache_ttl"),
            ("scoreboard", "cache_ttl"),
            ("scoreboard", "progression_cache_ttl"),
            ("scoreboard", "max_teams"),
            ("scoreboard", "max_users"),
            ("teams", "max_members"),
            ("database", "busy_timeout"),
            ("live", "queue_size"),
            ("live", "relay_retry"),
        ):
            self._reset_if_invalid(path, positive)

        self._reset_if_invalid(
            ("scoring", "minimum_ratio"),
            lambda v: isinstance(v, (int, float)) and 0 <= v <= 1,
        )

    def get(
        self,
        *keys: str,
    ) -> Any:
        """
        Get nested configuration value using dot notation.

        @param keys: Variable arguments representing nested keys to traverse
        @return: Configuration value at the specified path, None if not found
        """
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return value

    def is_feature_enabled(
        self,
        feature_name: str,
    ) -> bool:
        """
        Check if a feature is enabled.

        @param feature_name: Name of the feature to check
        @return: True if feature is enabled, False otherwise
        """
        return self.get("features", feature_name) is True

    def set_feature(
        self,
        feature_name: str,
        enabled: bool,
    ) -> None:
        """Toggle a feature flag at runtime (call save_config to persist)."""
        self._set_nested_config(("features", feature_name), bool(enabled))

    @property
    def is_development(self) -> bool:
        return self.get("environment") == "development"

    def save_config(self) -> bool:
        """
        Save current configuration to file.

        @return: True if saved successfully, False on error
        """
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=2)
            return True
        except IOError as e:
            logger.error("Could not save config file %s: %s", self.config_path, e)
            return False
