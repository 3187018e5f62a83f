"""
Logging for the calibration engine.

Core modules log through ``logging.getLogger(__name__)``; everything under
the ``proctor_calibration`` package logger is routed to the handlers set up
here. Server code wraps the package logger in a SessionLoggerAdapter so each
line names the connection it belongs to.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from proctor_calibration.utils.config_loader import get_section


PACKAGE_LOGGER = "proctor_calibration"

CONSOLE_FORMAT = '%(levelname)s: %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'


def _parse_level(log_level: Any) -> int:
    if isinstance(log_level, int):
        return log_level
    level = logging.getLevelName(str(log_level).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level!r}")
    return level


def setup_logger(
    name: str = PACKAGE_LOGGER,
    log_level: Any = "INFO",
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    Configure a logger with console and/or file handlers.

    Args:
        name: Logger name (the package logger by default)
        log_level: Level name or number
        log_dir: Directory for log files; no file is written unless this or
            log_file is given
        log_file: Log file name (default: 'calibration_YYYYMMDD.log')
        console_output: Whether to log to stdout

    Returns:
        Configured logger instance

    Raises:
        ValueError: for an unknown level name
    """
    level = _parse_level(log_level)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Calling setup again replaces the handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console_handler)

    if log_dir or log_file:
        log_directory = Path(log_dir) if log_dir else Path("logs")
        log_directory.mkdir(parents=True, exist_ok=True)
        log_path = log_directory / (log_file or f"calibration_{datetime.now():%Y%m%d}.log")

        file_handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(file_handler)

        logger.info(f"Logging to file: {log_path}")

    return logger


def setup_logger_from_config(config: Optional[Dict[str, Any]], name: str = PACKAGE_LOGGER) -> logging.Logger:
    """
    Configure logging from the ``logging`` section of a loaded config.

    Keys: level, log_dir, log_file, console. Missing keys fall back to INFO
    on the console with no log file.
    """
    section = get_section(config, 'logging')
    return setup_logger(
        name=name,
        log_level=section.get('level', 'INFO'),
        log_dir=section.get('log_dir'),
        log_file=section.get('log_file'),
        console_output=bool(section.get('console', True)),
    )


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the owning client/session id."""

    def process(self, msg, kwargs):
        return f"[{self.extra['session']}] {msg}", kwargs


def get_logger(name: str = PACKAGE_LOGGER, session: Optional[str] = None):
    """
    Get a logger, optionally bound to one client session.

    Args:
        name: Logger name
        session: Client/session id to prefix messages with

    Returns:
        The logger, or a SessionLoggerAdapter over it when session is given
    """
    logger = logging.getLogger(name)
    if session is None:
        return logger
    return SessionLoggerAdapter(logger, {'session': session})
