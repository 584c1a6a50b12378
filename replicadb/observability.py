"""
Logging setup for applications embedding replicadb.

replicadb itself only creates module loggers; the host application decides
how records are rendered. setup_logging() is the one-call default.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ReplicaConfig


def setup_logging(config: ReplicaConfig) -> logging.Handler:
    """Configure logging based on configuration.

    Args:
        config: replicadb configuration

    Returns:
        The handler installed on the root logger
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return handler
