"""Structured logging and Prometheus metrics for authorization decisions."""

from access_control.monitoring.logging import (
    AuthorizationAuditLogger,
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_structured_logging,
)
from access_control.monitoring.metrics import authorization_metrics

__all__ = [
    'AuthorizationAuditLogger',
    'authorization_metrics',
    'clear_correlation_id',
    'get_correlation_id',
    'get_logger',
    'set_correlation_id',
    'setup_structured_logging',
]
