#!/usr/bin/env python3
"""
Configuration Manager for the image vacuum daemon

This module handles loading and managing configuration from config.yaml,
environment variables and command-line overrides.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern

import yaml
from humanfriendly import InvalidSize, InvalidTimespan, format_size, format_timespan, parse_size, parse_timespan

DEFAULT_THRESHOLD = "10 GB"


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""


@dataclass(frozen=True)
class Threshold:
    """Either an absolute byte count or a percentage of filesystem capacity."""

    absolute: Optional[int] = None
    percent: Optional[float] = None

    def resolve(self, capacity: Optional[int] = None) -> int:
        """Return the threshold in bytes.

        Args:
            capacity: Filesystem size in bytes, required for percentage thresholds
        """
        if self.absolute is not None:
            return self.absolute
        if capacity is None:
            raise ValueError("A filesystem capacity is required to resolve a percentage threshold")
        return int(capacity * self.percent / 100)

    @property
    def is_percentage(self) -> bool:
        return self.percent is not None

    def describe(self) -> str:
        if self.percent is not None:
            return f"{self.percent:g}% of filesystem capacity"
        return format_size(self.absolute)


def parse_threshold(value: Any) -> Threshold:
    """Parse "10 GB", "512MiB", 1000000 or "50%" into a Threshold.

    Raises:
        ConfigValidationError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ConfigValidationError(f"Invalid threshold: {value}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigValidationError(f"Threshold must not be negative, got: {value}")
        return Threshold(absolute=int(value))

    text = str(value).strip()
    if text.endswith("%"):
        try:
            percent = float(text[:-1].strip())
        except ValueError:
            raise ConfigValidationError(f"Invalid threshold percentage: {text}")
        if not 0 < percent <= 100:
            raise ConfigValidationError(f"Threshold percentage must be in (0, 100], got: {text}")
        return Threshold(percent=percent)

    try:
        return Threshold(absolute=parse_size(text))
    except InvalidSize:
        raise ConfigValidationError(f"Invalid threshold: {text}")


def parse_min_age(value: Any) -> Optional[float]:
    """Parse a timespan such as "2 days" or 3600 into seconds (None disables it).

    Raises:
        ConfigValidationError: If the value cannot be parsed or is negative
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigValidationError(f"Invalid minimum age: {value}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        try:
            seconds = parse_timespan(str(value).strip())
        except InvalidTimespan:
            raise ConfigValidationError(f"Invalid minimum age: {value}")
    if seconds < 0:
        raise ConfigValidationError(f"Minimum age must not be negative, got: {value}")
    return seconds


class ConfigManager:
    """Manages configuration for the image vacuum daemon"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        # Allow override via environment variable for containerized deployments
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()
        self.overridden = set()

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "vacuum": {
                "threshold": DEFAULT_THRESHOLD,
                "keep": [],
                "deletion_chunk_size": 1,
                "min_age": None,
            },
            "state": {"path": None},
            "logging": {"level": "INFO"},
            "retry": {
                "initial_delay": 1.0,
                "max_delay": 60.0,
                "exponential_base": 2.0,
                "jitter": True,
            },
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise ConfigValidationError(f"Config file {self.config_file} must contain a mapping")
                return self._merge_config(default_config, user_config)
            else:
                logging.debug(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Error loading config file {self.config_file}: {e}")

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def override(self, section: str, key: str, value: Any) -> None:
        """Override a single value, e.g. from the command line. None leaves it untouched."""
        if value is None:
            return
        self.config.setdefault(section, {})[key] = value
        self.overridden.add((section, key))

    # Vacuum configuration
    def get_threshold(self) -> Threshold:
        """Get the image storage threshold from an override, environment or config"""
        if ("vacuum", "threshold") in self.overridden:
            return parse_threshold(self.config["vacuum"]["threshold"])
        return parse_threshold(os.environ.get("IMAGE_VACUUM_THRESHOLD") or self.config["vacuum"]["threshold"])

    def get_keep_patterns(self) -> List[Pattern]:
        """Get compiled keep patterns from config"""
        keep = self.config["vacuum"].get("keep") or []
        if isinstance(keep, str):
            keep = [keep]
        patterns = []
        for pattern in keep:
            try:
                patterns.append(re.compile(str(pattern)))
            except re.error as e:
                raise ConfigValidationError(f"Invalid keep pattern '{pattern}': {e}")
        return patterns

    def get_deletion_chunk_size(self) -> int:
        """Get deletion chunk size from config, with type coercion"""
        size = self.config["vacuum"].get("deletion_chunk_size", 1)
        if isinstance(size, bool):
            raise ConfigValidationError(f"vacuum.deletion_chunk_size must be an integer, got: {size}")
        try:
            return int(size)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"vacuum.deletion_chunk_size must be an integer, got: {size} (type: {type(size).__name__})"
            )

    def get_min_age(self) -> Optional[float]:
        """Get minimum image age in seconds from config, or None"""
        return parse_min_age(self.config["vacuum"].get("min_age"))

    # State configuration
    def get_state_path(self) -> Optional[Path]:
        """Get state file path from config (None means the default location)"""
        path = self.config.get("state", {}).get("path")
        return Path(os.path.expanduser(str(path))) if path else None

    # Logging configuration
    def get_log_level(self) -> str:
        """Get log level from environment or config"""
        return os.environ.get("LOG_LEVEL") or str(self.config.get("logging", {}).get("level", "INFO"))

    # Retry configuration
    def get_retry_initial_delay(self) -> float:
        """Get initial restart delay from config, with type coercion"""
        delay = self.config.get("retry", {}).get("initial_delay", 1.0)
        try:
            return float(delay)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"retry.initial_delay must be a number, got: {delay} (type: {type(delay).__name__})"
            )

    def get_retry_max_delay(self) -> float:
        """Get max restart delay from config, with type coercion"""
        delay = self.config.get("retry", {}).get("max_delay", 60.0)
        try:
            return float(delay)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"retry.max_delay must be a number, got: {delay} (type: {type(delay).__name__})"
            )

    def get_retry_exponential_base(self) -> float:
        """Get exponential base for restart backoff from config, with type coercion"""
        base = self.config.get("retry", {}).get("exponential_base", 2.0)
        try:
            return float(base)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"retry.exponential_base must be a number, got: {base} (type: {type(base).__name__})"
            )

    def get_retry_jitter(self) -> bool:
        """Get whether to use jitter in restart delays from config"""
        return bool(self.config.get("retry", {}).get("jitter", True))

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        try:
            threshold = self.get_threshold()
            if threshold.absolute == 0:
                warnings.append("threshold is 0, every eligible image will be deleted")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            self.get_keep_patterns()
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            chunk_size = self.get_deletion_chunk_size()
            if chunk_size < 1:
                errors.append(f"vacuum.deletion_chunk_size must be a positive integer, got: {chunk_size}")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            self.get_min_age()
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            initial_delay = self.get_retry_initial_delay()
            max_delay = self.get_retry_max_delay()
            if initial_delay < 0:
                errors.append(f"retry.initial_delay must be a non-negative number, got: {initial_delay}")
            if max_delay < 0:
                errors.append(f"retry.max_delay must be a non-negative number, got: {max_delay}")
            elif max_delay < initial_delay:
                errors.append(f"retry.max_delay ({max_delay}) must be >= retry.initial_delay ({initial_delay})")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            exponential_base = self.get_retry_exponential_base()
            if exponential_base < 1.0:
                errors.append(f"retry.exponential_base must be >= 1.0, got: {exponential_base}")
        except ConfigValidationError as e:
            errors.append(str(e))

        # Log warnings
        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        # Raise error if there are validation errors
        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg)

    def print_config(self):
        """Print current configuration"""
        min_age = self.get_min_age()
        print("Current Configuration:")
        print(f"  Threshold: {self.get_threshold().describe()}")
        print(f"  Keep Patterns: {[p.pattern for p in self.get_keep_patterns()] or 'None'}")
        print(f"  Deletion Chunk Size: {self.get_deletion_chunk_size()}")
        print(f"  Minimum Age: {format_timespan(min_age) if min_age is not None else 'None'}")
        print(f"  State File: {self.get_state_path() or 'default'}")
        print(f"  Log Level: {self.get_log_level()}")
