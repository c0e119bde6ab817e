"""
Structured Logging using structlog

This module configures structlog on top of the standard logging module and
provides the authorization audit logger used by the decision engine.

Key Features:
- JSON (default) or console rendering selected by ``LOG_FORMAT``
- Correlation id tracking through a ``ContextVar`` so concurrent decisions on
  one event loop keep their own ids
- Flask request context enrichment (method, path, endpoint) when a request
  context is active
- ``AuthorizationAuditLogger`` emitting one structured event per decision,
  at debug level for grants, warning level for denies and error level for
  role store failures
"""

import logging
import logging.config
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import structlog
from flask import has_request_context, request

from access_control.authz.exceptions import DenyReason, get_error_category

correlation_id_context: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context, generating one if needed."""
    correlation_id = correlation_id or str(uuid.uuid4())
    correlation_id_context.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    return correlation_id_context.get()


def clear_correlation_id() -> None:
    correlation_id_context.set(None)


def create_correlation_processor() -> Callable:
    """
    Create structlog processor for correlation ID enrichment.

    Returns:
        Processor function for structlog
    """
    def processor(logger, method_name, event_dict):
        correlation_id = correlation_id_context.get()
        if correlation_id:
            event_dict.setdefault('correlation_id', correlation_id)
        return event_dict

    return processor


def create_request_context_processor() -> Callable:
    """
    Create structlog processor for Flask request context enrichment.

    Returns:
        Processor function for structlog
    """
    def processor(logger, method_name, event_dict):
        if has_request_context():
            event_dict.setdefault('request_method', request.method)
            event_dict.setdefault('request_path', request.path)
            if request.endpoint:
                event_dict.setdefault('request_endpoint', request.endpoint)
        return event_dict

    return processor


def setup_structured_logging(config: Optional[Any] = None) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the standard logging module.

    Args:
        config: Configuration class or object exposing ``LOG_LEVEL``,
            ``LOG_FORMAT`` and ``APP_NAME``; defaults apply when omitted.

    Returns:
        Configured structured logger instance
    """
    log_level = str(getattr(config, 'LOG_LEVEL', 'INFO')).upper()
    log_format = str(getattr(config, 'LOG_FORMAT', 'json')).lower()
    app_name = getattr(config, 'APP_NAME', 'access-control')

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        create_correlation_processor(),
        create_request_context_processor(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == 'console':
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'plain': {'format': '%(message)s'},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            },
        },
        'loggers': {
            '': {
                'handlers': ['console'],
                'level': log_level,
            },
        },
    })

    logger = structlog.get_logger(app_name)
    logger.info(
        "Structured logging initialized",
        log_level=log_level,
        log_format=log_format
    )
    return logger


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name or 'access_control')


_DENY_MESSAGES: Dict[DenyReason, str] = {
    DenyReason.MISSING_SUBJECT: "Subject identifier missing",
    DenyReason.MISSING_RESOURCE: "Resource identifier not found in context",
    DenyReason.RESOURCE_NOT_FOUND: "Resource not found",
    DenyReason.INSUFFICIENT_ROLE: "Required role not held",
    DenyReason.STORE_FAILURE: "Error checking role requirement",
}


class AuthorizationAuditLogger:
    """
    Audit events for authorization decisions.

    When ``enabled`` is False, grant and deny events are suppressed; store
    failures are always logged at error level.
    """

    def __init__(self, logger: Optional[structlog.stdlib.BoundLogger] = None, enabled: bool = True):
        self.logger = logger or structlog.get_logger('access_control.audit')
        self.enabled = enabled

    def log_decision(
        self,
        scope: str,
        subject: Optional[str],
        allowed: bool,
        reason: Optional[DenyReason] = None,
        resource_id: Optional[str] = None,
        requirement: Optional[str] = None,
        exc_info: Any = None,
        **details: Any
    ) -> None:
        event = {
            'event_category': 'authorization',
            'scope': scope,
            'subject': subject,
            'resource_id': resource_id,
            'requirement': requirement,
            'granted': allowed,
            'deny_reason': reason.value if reason else None,
            'error_code': reason.error_code.value if reason else None,
            'error_category': get_error_category(reason.error_code) if reason else None,
            **details,
        }

        if reason is DenyReason.STORE_FAILURE:
            self.logger.error(_DENY_MESSAGES[reason], exc_info=exc_info, **event)
            return
        if not self.enabled:
            return
        if allowed:
            self.logger.debug("Authorization granted", **event)
        else:
            self.logger.warning(_DENY_MESSAGES.get(reason, "Authorization denied"), **event)
