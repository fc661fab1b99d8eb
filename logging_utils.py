"""
Shared logging utilities for SARCheck

This module contains the logging setup used by the API server and the
command line tools, plus sanitization for user-supplied text that ends
up in log lines.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from config_manager import LoggingConfig

logger = logging.getLogger(__name__)

_MAX_LOG_TEXT = 500


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install root handlers from logging configuration

    Replaces any handlers already on the root logger so repeated calls
    (e.g. app reload) do not duplicate output.

    Args:
        config: Logging configuration, defaults used if None
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)
    formatter = logging.Formatter(config.format)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if config.console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger.debug(f"Logging configured at {config.level}")


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    # Truncate to reasonable length
    return sanitized[:_MAX_LOG_TEXT] if len(sanitized) > _MAX_LOG_TEXT else sanitized
