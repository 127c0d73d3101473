"""Logging Configuration.

Levels, output formats and the service name stamped on every record.
"""

from dataclasses import dataclass
from enum import Enum


class LogLevel(str, Enum):
    """Log level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output format."""
    JSON = "json"
    CONSOLE = "console"


@dataclass
class LoggingConfig:
    """Structured logging configuration."""

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.CONSOLE
    include_caller: bool = False
    slow_threshold_ms: float = 1000.0
    service_name: str = "slotswitch"


DEFAULT_LOGGING_CONFIG = LoggingConfig()

ENV_LOG_LEVEL = "SLOTSWITCH_LOG_LEVEL"
ENV_LOG_FORMAT = "SLOTSWITCH_LOG_FORMAT"
