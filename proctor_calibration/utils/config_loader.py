"""
Configuration loader utility
"""

import yaml
from typing import Dict, Any, Optional
from pathlib import Path


DEFAULT_CONFIG_PATH = 'config/config.yaml'


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to configuration file

    Returns:
        Dictionary with configuration values (empty for an empty file)
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, 'r') as f:
        config = yaml.safe_load(f)

    return config or {}


def get_section(config: Optional[Dict[str, Any]], section: str) -> Dict[str, Any]:
    """Return one top-level section of a loaded config, or an empty dict."""
    if not config:
        return {}
    value = config.get(section) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{section}' must be a mapping")
    return value
