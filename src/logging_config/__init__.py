"""Structured logging and delivery context.

Provides JSON/console log formatting and binding of the in-flight
notification's identifiers to every log entry.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import LogContext, generate_correlation_id
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "LogContext",
    "configure_logging",
    "generate_correlation_id",
    "get_logger",
]
