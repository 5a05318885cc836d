"""Core utilities for configuration, logging and metrics."""

from .config import AppSettings, load_settings
from .logging_config import get_logger, setup_logging
from .metrics import REGISTRY, render_metrics

__all__ = [
    "AppSettings",
    "load_settings",
    "get_logger",
    "setup_logging",
    "REGISTRY",
    "render_metrics",
]
