"""
ChromaLearn Structured Logging
Centralized logging configuration using loguru.
"""
import sys
from typing import Any, Dict, Optional

from loguru import logger

from chromalearn.config import config


class StructuredLogger:
    """Structured logger bound to a component name."""

    def __init__(self, component: str = "chromalearn"):
        self.component = component

    def _bound(self, extra: Optional[Dict[str, Any]]):
        return logger.bind(component=self.component, **(extra or {}))

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None):
        """Log info message with optional extra data."""
        self._bound(extra).info(message)

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None):
        """Log warning message with optional extra data."""
        self._bound(extra).warning(message)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None):
        """Log error message with optional extra data."""
        self._bound(extra).error(message)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None):
        """Log debug message with optional extra data."""
        self._bound(extra).debug(message)


_configured = False


def configure_logging(level: Optional[str] = None, serialize: bool = False) -> None:
    """
    Replace loguru's default sink with the structured stdout sink.

    Args:
        level: Minimum level (defaults to config.LOG_LEVEL)
        serialize: Emit JSON records instead of the text format
    """
    global _configured
    logger.remove()
    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}",
        level=level or config.LOG_LEVEL,
        serialize=serialize,
    )
    _configured = True


def get_logger(component: str = "chromalearn") -> StructuredLogger:
    """Get a structured logger, configuring the sink on first use."""
    if not _configured:
        configure_logging()
    return StructuredLogger(component)
