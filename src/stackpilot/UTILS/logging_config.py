"""
Logging configuration for StackPilot command line runs.

Library modules only create loggers; handlers are installed here.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: Optional[str] = None,
    verbose: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Set up console (and optional file) logging for the stackpilot loggers.

    Args:
        level: Override log level (DEBUG, INFO, WARNING, ERROR)
        verbose: Enable debug output on the console
        log_file: Optional path of a rotating log file

    Returns:
        The configured 'stackpilot' logger
    """
    if level:
        log_level = getattr(logging, level.upper(), logging.INFO)
    elif verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    logger = logging.getLogger("stackpilot")
    logger.setLevel(log_level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
