"""Utility functions for the price streamer."""

import logging
from datetime import datetime, timezone
from typing import Optional


def setup_logging(
    name: str,
    level: str = "INFO",
    format_str: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging for a component.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_str: Optional custom format string

    Returns:
        Configured logger
    """
    if format_str is None:
        format_str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_str,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # aiohttp access logs at INFO drown the pipeline logs
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    return logging.getLogger(name)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
