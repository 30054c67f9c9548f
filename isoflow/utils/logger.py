"""
Logging configuration for isoflow.

Every module obtains its logger through :func:`get_logger` so console output
looks the same whether the pipeline runs from the CLI, a notebook or tests.
"""

import logging
import sys


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: the CLI installs a RichHandler on the root logger.
       We detect this and let records propagate to root (single output).
    2. Direct usage: no RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(level)

        root_logger = logging.getLogger()
        has_rich_handler = False

        try:
            from rich.logging import RichHandler

            has_rich_handler = any(
                isinstance(handler, RichHandler) for handler in root_logger.handlers
            )
        except ImportError:
            pass

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            # root may carry a basicConfig handler; avoid printing twice
            logger.propagate = False

    return logger


def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Route all isoflow logging through a single RichHandler on the root logger.

    Loggers created before this call keep their stream handler, so the
    handlers of already-configured ``isoflow`` loggers are replaced.

    Args:
        level: Root logging level
    """
    from rich.logging import RichHandler

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root_logger.handlers):
        root_logger.addHandler(
            RichHandler(rich_tracebacks=True, show_path=False, markup=False)
        )

    for handler in root_logger.handlers:
        handler.setLevel(level)

    for name, existing in logging.Logger.manager.loggerDict.items():
        if not name.startswith("isoflow") or not isinstance(existing, logging.Logger):
            continue
        for handler in list(existing.handlers):
            existing.removeHandler(handler)
        existing.setLevel(level)
        existing.propagate = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)
