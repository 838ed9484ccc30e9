"""
Observability module: Metrics and structured logging.
"""

from persist.observability.metrics import MetricsCollector, Counter, Gauge
from persist.observability.logging import (
    StructuredLogger,
    LogLevel,
    get_logger,
    set_log_level,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "StructuredLogger",
    "LogLevel",
    "get_logger",
    "set_log_level",
    "setup_logging",
]
