"""Logging configuration for the tutoring service."""

import logging

from app.config import settings


def configure_logging(level: str | None = None) -> logging.Logger:
    """Configure basic logging for the service and return the package logger."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return logging.getLogger("app")
