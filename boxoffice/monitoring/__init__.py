"""Logging, metrics and health checks for box office payments."""
from .health import HealthCheck, HealthCheckError
from .logging import get_logger, setup_logging
from .metrics import metrics

__all__ = ["HealthCheck", "HealthCheckError", "get_logger", "metrics", "setup_logging"]
