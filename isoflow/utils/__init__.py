"""
Utilities for isoflow.

- Logging configuration
"""

from .logger import get_logger, setup_rich_logging

__all__ = ["get_logger", "setup_rich_logging"]
