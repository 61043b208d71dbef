"""
WSGI middleware shared by the production app and the integration test harness.
"""

from app.erp.middleware.request_logging import LoggerOptions, LoggingMiddleware
from app.erp.middleware.response import UpgradeNotSupported, WrappedResponse
from app.erp.middleware.tracing import TracedMiddleware, TracePropagator, init_tracing

__all__ = [
    "LoggerOptions",
    "LoggingMiddleware",
    "TracePropagator",
    "TracedMiddleware",
    "UpgradeNotSupported",
    "WrappedResponse",
    "init_tracing",
]
