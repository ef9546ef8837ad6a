"""Configuration loader - builds BrokerSettings from defaults, YAML and env."""

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from secretbroker.config.exceptions import (
    ConfigNotFoundError,
    ConfigParseError,
    ConfigValidationError,
)
from secretbroker.utils.logging import get_logger

logger = get_logger(__name__)

ENV_HOME = "SECRETBROKER_HOME"
ENV_CONFIG = "SECRETBROKER_CONFIG"
ENV_LOG_LEVEL = "SECRETBROKER_LOG_LEVEL"

DEFAULT_HOME = "~/.secretbroker"

DEFAULTS = {
    "home": DEFAULT_HOME,
    "registry_file": "registry.json",
    "store_dir": "localvault",
    "key_file": None,
    "lock": {"attempts": 20, "delay": 0.01, "backoff": 1.5},
    "logging": {"level": "INFO", "format": "standard", "file": None},
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("standard", "json")


@dataclass(frozen=True)
class BrokerSettings:
    """Resolved broker settings. Relative paths are already anchored at home."""

    home: Path
    registry_file: Path
    store_dir: Path
    key_file: Path
    lock_attempts: int = 20
    lock_delay: float = 0.01
    lock_backoff: float = 1.5
    log_level: str = "INFO"
    log_format: str = "standard"
    log_file: Optional[str] = None

    @classmethod
    def for_home(cls, home: Path, **overrides) -> "BrokerSettings":
        """Default layout under a given home directory."""
        home = Path(home).expanduser()
        return cls(
            home=home,
            registry_file=home / DEFAULTS["registry_file"],
            store_dir=home / DEFAULTS["store_dir"],
            key_file=home / DEFAULTS["store_dir"] / ".protection-key",
            **overrides,
        )


def deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries. Override wins on conflicts.

    Example:
        base = {"lock": {"attempts": 20, "delay": 0.01}}
        override = {"lock": {"attempts": 50}}
        result = {"lock": {"attempts": 50, "delay": 0.01}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _load_yaml(path: Path) -> dict:
    """Load and parse a YAML file."""
    if not path.exists():
        raise ConfigNotFoundError(f"Config file not found: {path}")

    try:
        with open(path) as f:
            content = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigParseError(f"Invalid YAML in {path}: {e}")

    if not isinstance(content, dict):
        raise ConfigParseError(f"Config file {path} must contain a mapping")
    logger.debug(f"Loaded config: {path}")
    return content


def _anchor(home: Path, value) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else home / path


def load_settings(config_file: Optional[str] = None) -> BrokerSettings:
    """
    Load broker settings.

    Load order (later wins):
        1. Built-in defaults
        2. YAML file: config_file, else $SECRETBROKER_CONFIG, else
           <home>/config.yaml when it exists
        3. $SECRETBROKER_HOME and $SECRETBROKER_LOG_LEVEL

    Raises:
        ConfigNotFoundError: An explicitly named config file is missing
        ConfigParseError: The config file is not valid YAML
        ConfigValidationError: A value is out of range
    """
    config = copy.deepcopy(DEFAULTS)
    home = Path(os.environ.get(ENV_HOME) or DEFAULT_HOME).expanduser()

    explicit = config_file or os.environ.get(ENV_CONFIG)
    if explicit:
        config = deep_merge(config, _load_yaml(Path(explicit).expanduser()))
        logger.info(f"Merged config file: {explicit}")
    elif (home / "config.yaml").exists():
        config = deep_merge(config, _load_yaml(home / "config.yaml"))
        logger.info(f"Merged config file: {home / 'config.yaml'}")

    if os.environ.get(ENV_HOME):
        config["home"] = os.environ[ENV_HOME]
    if os.environ.get(ENV_LOG_LEVEL):
        config["logging"] = dict(config.get("logging") or {}, level=os.environ[ENV_LOG_LEVEL])

    return _build_settings(config)


def _build_settings(config: dict) -> BrokerSettings:
    lock = config.get("lock") or {}
    log = config.get("logging") or {}

    try:
        attempts = int(lock.get("attempts", 20))
        delay = float(lock.get("delay", 0.01))
        backoff = float(lock.get("backoff", 1.5))
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid lock settings: {e}")
    if attempts < 1 or delay < 0 or backoff < 1:
        raise ConfigValidationError(
            "lock.attempts must be >= 1, lock.delay >= 0 and lock.backoff >= 1"
        )

    level = str(log.get("level", "INFO")).upper()
    if level not in LOG_LEVELS:
        raise ConfigValidationError(f"Unknown log level: {level}")
    log_format = str(log.get("format", "standard"))
    if log_format not in LOG_FORMATS:
        raise ConfigValidationError(f"Unknown log format: {log_format}")

    home = Path(config.get("home") or DEFAULT_HOME).expanduser()
    store_dir = _anchor(home, config.get("store_dir") or DEFAULTS["store_dir"])
    key_file = config.get("key_file")

    return BrokerSettings(
        home=home,
        registry_file=_anchor(home, config.get("registry_file") or DEFAULTS["registry_file"]),
        store_dir=store_dir,
        key_file=_anchor(home, key_file) if key_file else store_dir / ".protection-key",
        lock_attempts=attempts,
        lock_delay=delay,
        lock_backoff=backoff,
        log_level=level,
        log_format=log_format,
        log_file=log.get("file"),
    )
