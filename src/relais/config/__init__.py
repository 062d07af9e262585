"""Configuration loading (``relais.toml``) and validation."""

from __future__ import annotations

from relais.config.loader import DEFAULT_CONFIG_FILE, ConfigLoadError, load_config
from relais.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    assert_valid_config,
    default_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG_FILE",
    "assert_valid_config",
    "default_config",
    "load_config",
    "validate_config",
]
