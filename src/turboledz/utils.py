"""
Turbo LEDz Utility Functions

This module provides helper functions for:
    - Configuration management (YAML, defaults, validation)
    - Logging utilities
"""

import os
import copy
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List

import yaml
import platformdirs

from .errors import ConfigError

# Configure module logger
logger = logging.getLogger("turboledz")

APP_NAME = "turboledz"
CONFIG_ENV_VAR = "TURBOLEDZ_CONFIG"
LEGACY_CONFIG_PATH = Path("/etc/turboledz.yaml")

MAX_POLL_FREQUENCY_HZ = 100
DISPLAY_MODES = ("cpu",)


# =============================================================================
# Configuration Management
# =============================================================================

def get_default_config() -> Dict[str, Any]:
    """Return default configuration values."""
    return {
        "general": {
            "poll_frequency_hz": 10,
            "display_mode": "cpu",
            "launch_pause_ms": 0,
            "supersampling": 1,
        },
        "simulator": {
            "samples_per_second": 40,
            "supersampling": 4,
        },
        "debug": {
            "verbose": False,
            "log_level": "INFO",
            "save_debug_logs": False,
            "debug_log_file": "turboledz.log",
        },
    }


def get_config_search_paths() -> List[Path]:
    """
    Get candidate configuration file locations, most specific first.

    Returns:
        List of paths to try in order
    """
    paths = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        paths.append(Path(env_path))
    paths.append(platformdirs.user_config_path(APP_NAME) / "config.yaml")
    paths.append(platformdirs.site_config_path(APP_NAME) / "config.yaml")
    paths.append(LEGACY_CONFIG_PATH)
    return paths


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge a loaded configuration over the defaults, section by section.

    Args:
        base: Default configuration
        override: Values read from a file

    Returns:
        New merged configuration dictionary
    """
    merged = copy.deepcopy(base)
    for section, values in override.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, the search paths are tried.

    Returns:
        Validated configuration dictionary
    """
    if config_path is None:
        for candidate in get_config_search_paths():
            if candidate.exists():
                config_path = candidate
                break
        else:
            logger.info("No config file found. Using defaults.")
            return get_default_config()

    config_path = Path(config_path)

    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}. Using defaults.")
        return get_default_config()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config: {e}")
        return get_default_config()

    if not isinstance(loaded, dict):
        if loaded is not None:
            logger.error(f"Config file {config_path} is not a mapping. Using defaults.")
        return get_default_config()

    logger.info(f"Loaded config from {config_path}")
    return validate_config(merge_config(get_default_config(), loaded))


def check_poll_frequency(value: Any) -> int:
    """
    Validate a poll frequency in Hertz.

    Raises:
        ConfigError: If the value is not an integer in (0, 100]
    """
    if isinstance(value, bool):
        raise ConfigError(f"poll_frequency_hz must be an integer, got {value!r}")
    try:
        freq = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"poll_frequency_hz must be an integer, got {value!r}")
    if not 0 < freq <= MAX_POLL_FREQUENCY_HZ:
        raise ConfigError(
            f"poll_frequency_hz must be in (0, {MAX_POLL_FREQUENCY_HZ}], got {freq}"
        )
    return freq


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace invalid configuration values with their defaults.

    Args:
        config: Configuration dictionary (modified in place)

    Returns:
        The same dictionary, validated
    """
    defaults = get_default_config()
    general = config.setdefault("general", {})

    try:
        general["poll_frequency_hz"] = check_poll_frequency(
            general.get("poll_frequency_hz", defaults["general"]["poll_frequency_hz"])
        )
    except ConfigError as e:
        logger.warning(f"{e}. Keeping default.")
        general["poll_frequency_hz"] = defaults["general"]["poll_frequency_hz"]

    mode = general.get("display_mode", "cpu")
    if mode not in DISPLAY_MODES:
        logger.warning(f"Unsupported display_mode {mode!r}. Falling back to 'cpu'.")
        general["display_mode"] = "cpu"

    try:
        general["launch_pause_ms"] = max(0, int(general.get("launch_pause_ms", 0)))
    except (TypeError, ValueError):
        logger.warning(f"Invalid launch_pause_ms {general.get('launch_pause_ms')!r}. Using 0.")
        general["launch_pause_ms"] = 0

    for section, key in (("general", "supersampling"), ("simulator", "supersampling"),
                         ("simulator", "samples_per_second")):
        values = config.setdefault(section, {})
        try:
            value = int(values.get(key, defaults[section][key]))
            if value < 1:
                raise ValueError(value)
            values[key] = value
        except (TypeError, ValueError):
            logger.warning(f"Invalid {section}.{key} {values.get(key)!r}. Keeping default.")
            values[key] = defaults[section][key]

    return config


# =============================================================================
# Logging Utilities
# =============================================================================

def setup_logging(config: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """
    Set up logging for Turbo LEDz.

    Args:
        config: Configuration dictionary

    Returns:
        Configured logger
    """
    config = config or get_default_config()
    debug_config = config.get("debug", {})

    log_level = getattr(logging, str(debug_config.get("log_level", "INFO")).upper(), logging.INFO)
    verbose = debug_config.get("verbose", False)
    if verbose:
        log_level = logging.DEBUG

    logger = logging.getLogger("turboledz")
    logger.setLevel(log_level)

    # Reconfiguring (e.g. on reload) must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (if enabled)
    if debug_config.get("save_debug_logs", False):
        log_file = platformdirs.user_log_path(APP_NAME) / debug_config.get(
            "debug_log_file", "turboledz.log"
        )
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return logger
