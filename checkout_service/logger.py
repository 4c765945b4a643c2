"""
Shared logger utility for the checkout service.
"""

import logging


def get_logger(name: str | None = None) -> logging.Logger:
    """
    Returns a logger with a single stream handler and a standard format.
    Records still propagate so that pytest's caplog can capture them.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger
