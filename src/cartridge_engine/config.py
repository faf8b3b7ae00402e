"""Cartridge Engine Configuration

Configuration loading with environment variable support and sensible defaults.

Environment Variables:
    CARTRIDGE_ENGINE_CONFIG_PATH: Path to config file (default: cartridge-engine.yaml in base dir)
    CARTRIDGE_ENGINE_DOMAINS_PATH: Override cartridge domains directory from config
    CARTRIDGE_ENGINE_LOG_LEVEL: Override logging level from config

Configuration Schema:
    routing:
        engine: str - Engine version (e.g., "weighted-1.0")
        features: dict - Feature flags for engine (e.g., {"synonym_matching": False})
        weights: dict - Signal weight overrides (keyword, unit, structure, file, preference)
        thresholds: dict - Threshold overrides (primary, match_floor, profile_overlay)
    cartridges:
        path: str - Directory holding cartridge YAML files (None = built-in catalog)
        hot_reload: bool - Watch the directory and republish the catalog on change
        debounce_seconds: float - Quiet period before a reload fires
    safety:
        mandatory_overlays: dict - Primary domain id -> mandatory safety overlay ids
    logging:
        level: str - Logging level (default: "INFO")
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DEFAULT_CONFIG_FILENAME = "cartridge-engine.yaml"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be applied."""
    pass


# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    "routing": {
        "engine": None,  # Use registered default engine
        "features": {},
        "weights": {},
        "thresholds": {},
    },
    "cartridges": {
        "path": None,  # Use built-in catalog
        "hot_reload": False,
        "debounce_seconds": 1.0,
    },
    "safety": {
        "mandatory_overlays": None,  # Use registry's built-in table
    },
    "logging": {
        "level": "INFO",
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge override dict into base dict.

    Args:
        base: Base dictionary (defaults)
        override: Override dictionary (user config)

    Returns:
        Merged dictionary with override values taking precedence
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _resolve_path(path: Optional[str], base_dir: Path) -> Optional[Path]:
    """
    Resolve a path, making relative paths absolute from base_dir.

    Args:
        path: Path string (absolute or relative) or None
        base_dir: Base directory for relative path resolution

    Returns:
        Resolved absolute Path or None if path was None
    """
    if path is None:
        return None

    path_obj = Path(path)
    if path_obj.is_absolute():
        return path_obj
    return (base_dir / path_obj).resolve()


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {path}")
    return data


def load_config(
    config_path: Optional[str] = None,
    base_dir: Optional[Path] = None
) -> Dict[str, Any]:
    """
    Load configuration from YAML file with environment variable overrides.

    Configuration Loading Order (later overrides earlier):
    1. Default values (DEFAULT_CONFIG)
    2. Config file (config_path parameter, else CARTRIDGE_ENGINE_CONFIG_PATH,
       else an optional cartridge-engine.yaml in base_dir)
    3. Environment variable overrides (domains path, log level)

    Args:
        config_path: Explicit config file path (overrides CARTRIDGE_ENGINE_CONFIG_PATH)
        base_dir: Directory for relative path resolution (default: cwd)

    Returns:
        Merged configuration dictionary

    Raises:
        ConfigurationError: If an explicit config file is invalid YAML or unreadable
    """
    if base_dir is None:
        base_dir = Path.cwd()

    config = copy.deepcopy(DEFAULT_CONFIG)

    file_path = config_path or os.environ.get("CARTRIDGE_ENGINE_CONFIG_PATH")

    if file_path:
        # Explicit config path - must be valid if it exists
        resolved_path = _resolve_path(file_path, base_dir)
        if resolved_path and resolved_path.exists():
            try:
                config = _deep_merge(config, _read_yaml(resolved_path))
                logger.info(f"Loaded configuration from: {resolved_path}")
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in config file: {e}")
            except IOError as e:
                raise ConfigurationError(f"Cannot read config file: {e}")
        else:
            logger.warning(f"Config file not found (using defaults): {file_path}")
    else:
        default_config_path = base_dir / DEFAULT_CONFIG_FILENAME
        if default_config_path.exists():
            try:
                config = _deep_merge(config, _read_yaml(default_config_path))
                logger.info(f"Loaded configuration from: {default_config_path}")
            except (yaml.YAMLError, ConfigurationError) as e:
                logger.warning(f"Invalid default config (ignoring): {e}")
            except IOError as e:
                logger.warning(f"Cannot read default config (ignoring): {e}")
        else:
            logger.debug("No config file found, using defaults")

    # Apply environment variable overrides
    domains_override = os.environ.get("CARTRIDGE_ENGINE_DOMAINS_PATH")
    if domains_override:
        config.setdefault("cartridges", {})["path"] = domains_override
        logger.info(f"Cartridge domains path override from env: {domains_override}")

    level_override = os.environ.get("CARTRIDGE_ENGINE_LOG_LEVEL")
    if level_override:
        config.setdefault("logging", {})["level"] = level_override

    # Resolve domains path
    if config.get("cartridges", {}).get("path"):
        resolved = _resolve_path(config["cartridges"]["path"], base_dir)
        config["cartridges"]["path"] = str(resolved) if resolved else None

    return config


def get_domains_path(config: Dict[str, Any]) -> Optional[Path]:
    """
    Get the cartridge domains directory from config.

    Returns:
        Path to the YAML directory, or None to use the built-in catalog
    """
    path_str = config.get("cartridges", {}).get("path")
    return Path(path_str) if path_str else None


def get_routing_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract routing configuration for create_router() factory.

    Args:
        config: Configuration dictionary from load_config()

    Returns:
        Dictionary suitable for passing to create_router()
    """
    routing = config.get("routing", {})
    return {
        "routing": {
            "engine": routing.get("engine"),
            "features": routing.get("features") or {},
            "weights": routing.get("weights") or {},
            "thresholds": routing.get("thresholds") or {},
        }
    }


def get_safety_overlay_table(config: Dict[str, Any]) -> Optional[Dict[str, List[str]]]:
    """
    Get the mandatory safety overlay table override, if configured.

    Raises:
        ConfigurationError: If the table is not a mapping of id -> list of ids
    """
    table = config.get("safety", {}).get("mandatory_overlays")
    if table is None:
        return None
    if not isinstance(table, dict):
        raise ConfigurationError("safety.mandatory_overlays must be a mapping")
    for domain, overlays in table.items():
        if not isinstance(overlays, list):
            raise ConfigurationError(
                f"safety.mandatory_overlays.{domain} must be a list of cartridge ids"
            )
    return {str(domain): [str(o) for o in overlays] for domain, overlays in table.items()}


def configure_logging(config: Optional[Dict[str, Any]] = None) -> None:
    """Apply the configured log level and the standard log format."""
    level_name = "INFO"
    if config:
        level_name = str(config.get("logging", {}).get("level") or "INFO")
    level = getattr(logging, level_name.upper(), None)
    if not isinstance(level, int):
        logger.warning(f"Unknown log level '{level_name}', using INFO")
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
