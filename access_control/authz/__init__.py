"""
Authorization Module

Role-based authorization for organization, project and system scoped
operations.

Key Components:
- roles: ordered role enumerations per scope, requirements, sufficiency
  and organization-to-project role derivation
- resolver: locates the target organization or project id in a request
- engine: the three decision procedures with cached role lookups
- invalidation: mutation-side cache invalidation and the membership
  command service
- decorators: Flask extension and route decorators
- exceptions: error codes, deny reasons and safe error responses

Only the dependency-free building blocks are re-exported here; import the
engine, invalidation and decorators from their modules.
"""

from access_control.authz.exceptions import (
    AccessControlConfigurationError,
    AccessControlException,
    AccessDeniedException,
    AuthorizationErrorCode,
    CacheBackendError,
    DenyReason,
    OrganizationLimitError,
    RoleStoreError,
    create_safe_error_response,
    get_error_category,
)
from access_control.authz.resolver import DecisionContext, ResourceIdentifierResolver, ResourceLocator
from access_control.authz.roles import (
    OrganizationRole,
    ProjectRole,
    Requirement,
    Scope,
    SystemRole,
    derive_project_role,
    sufficient,
)

__all__ = [
    'AccessControlConfigurationError',
    'AccessControlException',
    'AccessDeniedException',
    'AuthorizationErrorCode',
    'CacheBackendError',
    'DecisionContext',
    'DenyReason',
    'OrganizationLimitError',
    'OrganizationRole',
    'ProjectRole',
    'Requirement',
    'ResourceIdentifierResolver',
    'ResourceLocator',
    'RoleStoreError',
    'Scope',
    'SystemRole',
    'create_safe_error_response',
    'derive_project_role',
    'get_error_category',
    'sufficient',
]
