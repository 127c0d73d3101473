"""Structured Logging & Invocation Tracing.

Console or JSON log output, invocation context propagation and timing of
long-running steps.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import InvocationContext, generate_invocation_id
from src.logging_config.performance import PerformanceTimer, log_performance
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "InvocationContext",
    "PerformanceTimer",
    "configure_logging",
    "generate_invocation_id",
    "get_logger",
    "log_performance",
]
