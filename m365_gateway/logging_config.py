"""
Logging setup for the gateway process.

Library modules only create loggers under the ``m365_gateway`` namespace;
handlers are installed here, once, by the service entry point.
"""
import logging
from typing import Optional, Union

from . import config


LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """
    Configure the package logger with a single stream handler.

    Args:
        level: Logging level name or number (default: LOG_LEVEL env var)

    Returns:
        The configured ``m365_gateway`` logger
    """
    logger = logging.getLogger("m365_gateway")
    resolved = level if level is not None else config.LOG_LEVEL
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    logger.setLevel(resolved)

    # Remove existing handlers
    logger.handlers = []

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    logger.addHandler(handler)
    return logger
