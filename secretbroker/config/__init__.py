"""Broker configuration."""

from secretbroker.config.exceptions import (
    ConfigError,
    ConfigNotFoundError,
    ConfigParseError,
    ConfigValidationError,
)
from secretbroker.config.loader import BrokerSettings, load_settings

__all__ = [
    "BrokerSettings",
    "load_settings",
    "ConfigError",
    "ConfigNotFoundError",
    "ConfigParseError",
    "ConfigValidationError",
]
