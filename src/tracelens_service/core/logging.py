"""Logging configuration."""

import logging
import sys

from tracelens_service.core.config import get_settings


def configure_logging() -> None:
    """Configure application logging."""
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Pillow logs every decoder plugin it probes at DEBUG
    logging.getLogger("PIL").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get logger instance for module."""
    return logging.getLogger(name)
