"""
Shared utilities: logging setup, YAML config loading, JSON encoding.
"""

from proctor_calibration.utils.logger import (
    SessionLoggerAdapter,
    get_logger,
    setup_logger,
    setup_logger_from_config,
)
from proctor_calibration.utils.config_loader import load_config, get_section
from proctor_calibration.utils.json_encoder import NumpyJSONEncoder, dumps

__all__ = [
    'SessionLoggerAdapter',
    'get_logger',
    'setup_logger',
    'setup_logger_from_config',
    'load_config',
    'get_section',
    'NumpyJSONEncoder',
    'dumps',
]
