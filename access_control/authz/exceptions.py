"""
Access Control Exception Classes

This module provides the error taxonomy for the authorization decision engine.
Decision procedures never raise for request-dependent conditions: every such
condition resolves to a deny carrying a ``DenyReason``. The exception classes
below exist for the edges of the component:

- ``AccessDeniedException`` turns a deny into an HTTP 403 inside the Flask
  integration.
- ``RoleStoreError`` wraps failures of a role store backend.
- ``CacheBackendError`` reports an unusable cache configuration.
- ``OrganizationLimitError`` rejects a membership command that would exceed
  an organization's member or project limit.
- ``AccessControlConfigurationError`` reports programmer errors such as a
  requirement whose role belongs to another scope.

Error responses produced from these exceptions never include role or resource
details; those only reach the structured logs.
"""

from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import uuid


class AuthorizationErrorCode(Enum):
    """
    Standardized error codes used in logs, metrics and safe error responses.
    """

    # Decision outcomes (2000-2999)
    AUTHZ_MISSING_SUBJECT = "AUTHZ_2001"
    AUTHZ_MISSING_RESOURCE = "AUTHZ_2002"
    AUTHZ_RESOURCE_NOT_FOUND = "AUTHZ_2003"
    AUTHZ_ROLE_INSUFFICIENT = "AUTHZ_2004"
    AUTHZ_STORE_FAILURE = "AUTHZ_2005"
    AUTHZ_ACCESS_DENIED = "AUTHZ_2006"

    # Collaborator failures (3000-3999)
    EXT_ROLE_STORE_UNAVAILABLE = "EXT_3001"
    EXT_CACHE_UNAVAILABLE = "EXT_3002"

    # Command rejections (4000-4999)
    CMD_MEMBER_LIMIT_REACHED = "CMD_4001"
    CMD_PROJECT_LIMIT_REACHED = "CMD_4002"
    CMD_ORGANIZATION_NOT_FOUND = "CMD_4003"

    # Programmer errors (9000-9999)
    CFG_INVALID_REQUIREMENT = "CFG_9001"
    CFG_INVALID_CACHE_BACKEND = "CFG_9002"
    CFG_INVALID_SETTING = "CFG_9003"


class DenyReason(Enum):
    """Why a decision procedure returned deny."""

    MISSING_SUBJECT = "missing_subject"
    MISSING_RESOURCE = "missing_resource"
    RESOURCE_NOT_FOUND = "resource_not_found"
    INSUFFICIENT_ROLE = "insufficient_role"
    STORE_FAILURE = "store_failure"

    @property
    def error_code(self) -> AuthorizationErrorCode:
        return _DENY_REASON_CODES[self]


_DENY_REASON_CODES = {
    DenyReason.MISSING_SUBJECT: AuthorizationErrorCode.AUTHZ_MISSING_SUBJECT,
    DenyReason.MISSING_RESOURCE: AuthorizationErrorCode.AUTHZ_MISSING_RESOURCE,
    DenyReason.RESOURCE_NOT_FOUND: AuthorizationErrorCode.AUTHZ_RESOURCE_NOT_FOUND,
    DenyReason.INSUFFICIENT_ROLE: AuthorizationErrorCode.AUTHZ_ROLE_INSUFFICIENT,
    DenyReason.STORE_FAILURE: AuthorizationErrorCode.AUTHZ_STORE_FAILURE,
}


class AccessControlException(Exception):
    """
    Base exception class for the access control package.

    Carries a unique error id and timestamp for log correlation and a safe
    ``user_message`` that is the only text ever returned to clients.

    Args:
        message: Detailed description for logs
        error_code: Standardized error code
        user_message: Safe message for client responses
        metadata: Additional context for structured logging
        http_status: HTTP status used by the Flask integration
    """

    def __init__(
        self,
        message: str,
        error_code: AuthorizationErrorCode,
        user_message: str = "Access denied",
        metadata: Optional[Dict[str, Any]] = None,
        http_status: int = 403
    ) -> None:
        super().__init__(message)

        self.error_id = str(uuid.uuid4())
        self.error_code = error_code
        self.user_message = user_message
        self.metadata = metadata or {}
        self.http_status = http_status
        self.timestamp = datetime.now(timezone.utc)

        self.metadata.update({
            'error_id': self.error_id,
            'error_code': self.error_code.value,
            'timestamp': self.timestamp.isoformat(),
            'exception_type': self.__class__.__name__,
        })


class AccessDeniedException(AccessControlException):
    """
    Raised by the Flask integration when a decision procedure denies access.

    The deny reason is recorded in metadata for logging only; the client sees
    the generic "Access denied" message.
    """

    def __init__(
        self,
        message: str = "Access denied",
        reason: Optional[DenyReason] = None,
        scope: Optional[str] = None,
        **kwargs
    ) -> None:
        # The public error code is always the generic one so responses do not
        # reveal which check failed.
        super().__init__(message, AuthorizationErrorCode.AUTHZ_ACCESS_DENIED, **kwargs)
        self.reason = reason
        self.metadata.update({
            'deny_reason': reason.value if reason else None,
            'deny_code': reason.error_code.value if reason else None,
            'scope': scope,
        })


class RoleStoreError(AccessControlException):
    """
    Raised by role store adapters when the backing store fails.

    The decision engine converts it, like any other store exception, into a
    deny with ``DenyReason.STORE_FAILURE``.
    """

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs) -> None:
        kwargs.setdefault('http_status', 503)
        super().__init__(message, AuthorizationErrorCode.EXT_ROLE_STORE_UNAVAILABLE, **kwargs)
        self.operation = operation
        self.metadata['operation'] = operation


class CacheBackendError(AccessControlException):
    """Raised when a decision cache cannot be constructed from configuration."""

    def __init__(self, message: str, backend: Optional[str] = None, **kwargs) -> None:
        kwargs.setdefault('http_status', 500)
        super().__init__(message, AuthorizationErrorCode.EXT_CACHE_UNAVAILABLE, **kwargs)
        self.backend = backend
        self.metadata['backend'] = backend


class AccessControlConfigurationError(AccessControlException):
    """
    Programmer error: malformed requirement, unknown backend, invalid setting.

    Never raised because of request data.
    """

    def __init__(
        self,
        message: str,
        error_code: AuthorizationErrorCode = AuthorizationErrorCode.CFG_INVALID_SETTING,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status', 500)
        kwargs.setdefault('user_message', 'Internal server error')
        super().__init__(message, error_code, **kwargs)


class OrganizationLimitError(AccessControlException):
    """
    Raised by the command layer when an organization cannot take another
    member or project, or does not exist.
    """

    def __init__(
        self,
        message: str,
        error_code: AuthorizationErrorCode,
        organization_id: Optional[str] = None,
        current: Optional[int] = None,
        limit: Optional[int] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status', 409)
        kwargs.setdefault('user_message', 'Organization limit reached')
        super().__init__(message, error_code, **kwargs)
        self.organization_id = organization_id
        self.current = current
        self.limit = limit
        self.metadata.update({
            'organization_id': organization_id,
            'current': current,
            'limit': limit,
        })


def get_error_category(error_code: AuthorizationErrorCode) -> str:
    """Map an error code to its category name for metrics and log routing."""
    prefix = error_code.value.split("_", 1)[0]
    return {
        'AUTHZ': 'authorization',
        'EXT': 'external_service',
        'CMD': 'command',
        'CFG': 'configuration',
    }.get(prefix, 'unknown')


def create_safe_error_response(exception: AccessControlException) -> Dict[str, Any]:
    """
    Create a client-safe error payload.

    Only the generic user message and correlation identifiers are included;
    deny reasons, roles and resource ids stay in the logs.

    Example:
        except AccessDeniedException as e:
            return jsonify(create_safe_error_response(e)), e.http_status
    """
    return {
        'error': exception.user_message,
        'error_code': exception.error_code.value,
        'error_id': exception.error_id,
        'timestamp': exception.timestamp.isoformat(),
    }
