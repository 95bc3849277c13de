import logging
import sys
from enum import Enum

import click
from uvicorn.logging import DefaultFormatter


class LogColor(Enum):
    """Log color enumeration for custom log types.

    Note: INFO messages use the default color (no styling applied).
    """

    SUCCESS = "green"
    SECTION = "blue"
    PROGRESS = "magenta"
    DEBUG = "cyan"
    WARNING = "yellow"
    ERROR = "red"
    CRITICAL = "bright_red"


def setup_logger(loglevel="info"):
    """Setup the anisphere logger with uvicorn-style formatting and colors.

    Args:
        loglevel: Log level string (e.g., 'info', 'debug', 'warning')
    """
    logger = logging.getLogger("anisphere")
    logger.setLevel(loglevel.upper())

    # Re-running setup must not stack handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(DefaultFormatter(fmt="%(levelprefix)s %(message)s"))
    logger.addHandler(handler)

    logger.propagate = False


_logger = logging.getLogger("anisphere")


def success(msg, *args, **kwargs):
    _logger.info(click.style(str(msg), fg=LogColor.SUCCESS.value), *args, **kwargs)


def section(msg, *args, **kwargs):
    _logger.info(click.style(str(msg), fg=LogColor.SECTION.value), *args, **kwargs)


def progress(msg, *args, **kwargs):
    """Log transcode/download progress lines; debug level to keep info output quiet."""
    _logger.debug(click.style(str(msg), fg=LogColor.PROGRESS.value), *args, **kwargs)


def error(msg, *args, **kwargs):
    _logger.error(click.style(str(msg), fg=LogColor.ERROR.value), *args, **kwargs)


def critical(msg, *args, **kwargs):
    _logger.critical(click.style(str(msg), fg=LogColor.CRITICAL.value), *args, **kwargs)


def debug(msg, *args, **kwargs):
    _logger.debug(click.style(str(msg), fg=LogColor.DEBUG.value), *args, **kwargs)


def warning(msg, *args, **kwargs):
    _logger.warning(click.style(str(msg), fg=LogColor.WARNING.value), *args, **kwargs)


def info(msg, *args, **kwargs):
    """Log info message with default color (no styling applied)."""
    _logger.info(msg, *args, **kwargs)
