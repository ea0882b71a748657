"""
===================================================
Core infrastructure package for the bulk engine.
===================================================

This package provides centralized configuration management, logging
infrastructure and the error taxonomy used throughout the project.

Modules:
    config: Configuration management from environment variables
    logger: Centralized logging configuration and utilities
    exceptions: Error classes raised by every bulk operation

Example:
    >>> from core.config import config
    >>> from core.logger import get_logger
    >>>
    >>> logger = get_logger(__name__)
    >>> logger.info(f"Connecting to {config.db_host}")
"""

__version__ = "0.1.0"
__all__ = ['get_logger', 'setup_logging', 'log_sql', 'config', 'Config', 'BulkConfig']

from core.config import BulkConfig, Config, config
from core.logger import get_logger, log_sql, setup_logging
