"""
Logging setup for processes embedding revstore.

Library modules only create loggers (``logging.getLogger(__name__)``) and
attach context through ``extra``. The host process calls setup_logging()
once at startup.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ObservabilityConfig


def setup_logging(config: ObservabilityConfig) -> logging.Handler:
    """Configure the root logger based on configuration.

    Args:
        config: Logging configuration

    Returns:
        The installed handler
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
    return handler
