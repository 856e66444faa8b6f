"""Logging configuration for the CLI and the API server."""

import logging
import sys


def setup_logger(name: str = "domain_email_check", level: int = logging.WARNING) -> logging.Logger:
    """
    Set up and configure the package logger.

    Args:
        name: Logger name
        level: Standard logging level

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if level <= logging.DEBUG:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = logging.Formatter("%(levelname)s: %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
