"""
spansend - Observability

- Prometheus metrics for sends, calls and client renewals
- Structured JSON logging setup
"""

from spansend.observability.metrics import SenderMetrics
from spansend.observability.logging import JSONFormatter, LoggingConfig, setup_logging

__all__ = [
    "SenderMetrics",
    "JSONFormatter",
    "LoggingConfig",
    "setup_logging",
]
