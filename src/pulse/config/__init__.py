"""Configuration management for the Pulse alert engine."""

from .logging import get_logger, setup_logging, setup_logging_from_settings
from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "setup_logging_from_settings",
    "get_logger",
]
