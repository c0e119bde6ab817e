"""
Authorization Decision Engine

Three decision procedures, one per scope, sharing a role store, a decision
cache, a resource resolver and an audit logger:

- ``authorize_organization``: resolve the organization, look up the
  subject's organization role (cache, then store) and compare it with the
  requirement.
- ``authorize_project``: resolve the project, look up its owning
  organization, try the direct project role, then fall back to the project
  role derived from the organization role.
- ``authorize_system``: an explicit system-admin grant satisfies any system
  requirement; an Admin role in any organization satisfies requirements up to
  ``OrganizationAdmin``.

Every procedure returns an ``AuthorizationDecision`` and never raises for
request-dependent conditions. Store failures and any other unexpected error
are logged and produce a deny. Only a requirement passed to the wrong
procedure raises, as a programmer error.

Cache layout:
- ``(Organization, subject, organization_id)`` holds the organization role name or None
- ``(Project, subject, project_id)`` holds the direct project role name or None
- ``(System, subject, "system-admin")`` holds the system-admin flag
- ``(System, subject, "organization-admin")`` holds the "Admin of any organization" flag

Denials are cached exactly like grants. The project owner lookup is not
cached because it does not depend on the subject.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog

from access_control.authz.exceptions import AccessControlConfigurationError, AuthorizationErrorCode, DenyReason
from access_control.authz.resolver import DecisionContext, ResourceIdentifierResolver
from access_control.authz.roles import (
    OrganizationRole,
    ProjectRole,
    Requirement,
    Scope,
    SystemRole,
    derive_project_role,
    sufficient,
)
from access_control.cache.base import DecisionCache, NullDecisionCache, ResourceId
from access_control.monitoring.logging import AuthorizationAuditLogger
from access_control.monitoring.metrics import observe_decision, observe_store_failure, time_decision
from access_control.store.base import RoleStore

logger = structlog.get_logger(__name__)

SYSTEM_ADMIN_RESOURCE = 'system-admin'
ORGANIZATION_ADMIN_RESOURCE = 'organization-admin'


@dataclass(frozen=True)
class AuthorizationDecision:
    """Outcome of one decision procedure; truthy when access is granted."""

    allowed: bool
    scope: Scope
    reason: Optional[DenyReason] = None
    resource_id: Optional[UUID] = None

    def __bool__(self) -> bool:
        return self.allowed


def _role_name(role: Optional[Any]) -> Optional[str]:
    return role.value if role is not None else None


class AuthorizationEngine:
    """
    Orchestrates resolution, role lookup and comparison per requirement scope.

    Args:
        role_store: Read side of the membership data
        cache: Decision cache; caching is disabled when omitted
        resolver: Resource identifier resolver; the default locators when omitted
        audit_logger: Decision audit logger
        cache_ttl: Entry lifetime passed to the cache; the cache default when None
    """

    def __init__(
        self,
        role_store: RoleStore,
        cache: Optional[DecisionCache] = None,
        resolver: Optional[ResourceIdentifierResolver] = None,
        audit_logger: Optional[AuthorizationAuditLogger] = None,
        cache_ttl: Optional[float] = None
    ):
        self.role_store = role_store
        self.cache = cache if cache is not None else NullDecisionCache()
        self.resolver = resolver or ResourceIdentifierResolver()
        self.audit_logger = audit_logger or AuthorizationAuditLogger()
        self.cache_ttl = cache_ttl

    # Dispatch

    async def authorize(
        self,
        requirement: Requirement,
        subject: Optional[str],
        context: Optional[DecisionContext] = None
    ) -> AuthorizationDecision:
        """Run the decision procedure matching ``requirement.scope``."""
        if requirement.scope is Scope.ORGANIZATION:
            return await self.authorize_organization(requirement, subject, context)
        if requirement.scope is Scope.PROJECT:
            return await self.authorize_project(requirement, subject, context)
        return await self.authorize_system(requirement, subject)

    # Decision procedures

    async def authorize_organization(
        self,
        requirement: Requirement,
        subject: Optional[str],
        context: Optional[DecisionContext] = None
    ) -> AuthorizationDecision:
        self._check_scope(requirement, Scope.ORGANIZATION)
        scope = Scope.ORGANIZATION

        with time_decision(scope.value):
            if not subject:
                return self._deny(requirement, subject, DenyReason.MISSING_SUBJECT)

            organization_id = self.resolver.resolve(scope, context)
            if organization_id is None:
                return self._deny(requirement, subject, DenyReason.MISSING_RESOURCE, context=context)

            try:
                role = await self._organization_role(organization_id, subject)
            except Exception as e:
                return self._store_failure(requirement, subject, organization_id, e)

            if sufficient(scope, role, requirement.minimum_role):
                return self._allow(requirement, subject, organization_id, held_role=_role_name(role))
            return self._deny(
                requirement,
                subject,
                DenyReason.INSUFFICIENT_ROLE,
                resource_id=organization_id,
                held_role=_role_name(role)
            )

    async def authorize_project(
        self,
        requirement: Requirement,
        subject: Optional[str],
        context: Optional[DecisionContext] = None
    ) -> AuthorizationDecision:
        self._check_scope(requirement, Scope.PROJECT)
        scope = Scope.PROJECT

        with time_decision(scope.value):
            if not subject:
                return self._deny(requirement, subject, DenyReason.MISSING_SUBJECT)

            project_id = self.resolver.resolve(scope, context)
            if project_id is None:
                return self._deny(requirement, subject, DenyReason.MISSING_RESOURCE, context=context)

            try:
                organization_id = await self.role_store.get_project_owning_organization(project_id)
                if organization_id is None:
                    return self._deny(requirement, subject, DenyReason.RESOURCE_NOT_FOUND, resource_id=project_id)

                direct_role = await self._project_role(project_id, subject)
                if sufficient(scope, direct_role, requirement.minimum_role):
                    return self._allow(
                        requirement,
                        subject,
                        project_id,
                        held_role=_role_name(direct_role),
                        via='direct'
                    )

                organization_role = await self._organization_role(organization_id, subject)
            except Exception as e:
                return self._store_failure(requirement, subject, project_id, e)

            derived_role = derive_project_role(organization_role)
            if sufficient(scope, derived_role, requirement.minimum_role):
                return self._allow(
                    requirement,
                    subject,
                    project_id,
                    held_role=_role_name(derived_role),
                    via='organization',
                    organization_id=str(organization_id),
                    organization_role=_role_name(organization_role)
                )

            return self._deny(
                requirement,
                subject,
                DenyReason.INSUFFICIENT_ROLE,
                resource_id=project_id,
                direct_role=_role_name(direct_role),
                derived_role=_role_name(derived_role),
                organization_id=str(organization_id),
                organization_role=_role_name(organization_role)
            )

    async def authorize_system(self, requirement: Requirement, subject: Optional[str]) -> AuthorizationDecision:
        self._check_scope(requirement, Scope.SYSTEM)
        scope = Scope.SYSTEM

        with time_decision(scope.value):
            if not subject:
                return self._deny(requirement, subject, DenyReason.MISSING_SUBJECT)

            minimum = requirement.minimum_role
            try:
                if minimum <= SystemRole.SYSTEM_ADMIN and await self._is_system_admin(subject):
                    return self._allow(requirement, subject, None, held_role=SystemRole.SYSTEM_ADMIN.value)

                if minimum <= SystemRole.ORGANIZATION_ADMIN and await self._is_any_organization_admin(subject):
                    return self._allow(
                        requirement,
                        subject,
                        None,
                        held_role=SystemRole.ORGANIZATION_ADMIN.value
                    )
            except Exception as e:
                return self._store_failure(requirement, subject, None, e)

            return self._deny(requirement, subject, DenyReason.INSUFFICIENT_ROLE)

    # Invalidation

    async def invalidate_membership(self, scope: Scope, resource_id: ResourceId, subject: str) -> None:
        """Drop one subject's cached role for one organization, project or system entry."""
        await self.cache.invalidate_exact(scope, subject, resource_id)
        logger.debug(
            "Membership cache entry invalidated",
            scope=scope.value,
            resource_id=str(resource_id),
            subject=subject
        )

    async def invalidate_resource(self, scope: Scope, resource_id: ResourceId) -> None:
        """Drop every subject's cached role for one resource."""
        await self.cache.invalidate_resource(scope, resource_id)
        logger.debug("Resource cache entries invalidated", scope=scope.value, resource_id=str(resource_id))

    async def invalidate_subject_global(self, subject: str) -> None:
        """Drop every cached role and flag of one subject."""
        await self.cache.invalidate_subject_global(subject)
        logger.debug("Subject cache entries invalidated", subject=subject)

    # Cached lookups

    async def _cached(
        self,
        scope: Scope,
        subject: str,
        resource_id: ResourceId,
        loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        cached = await self.cache.get(scope, subject, resource_id)
        if cached is not None:
            return cached.value

        stamp = await self.cache.stamp(scope, subject, resource_id)
        value = await loader()
        await self.cache.set(scope, subject, resource_id, value, ttl=self.cache_ttl, stamp=stamp)
        return value

    async def _organization_role(self, organization_id: UUID, subject: str) -> Optional[OrganizationRole]:
        async def load():
            return _role_name(await self.role_store.get_organization_role(organization_id, subject))

        return OrganizationRole.parse(await self._cached(Scope.ORGANIZATION, subject, organization_id, load))

    async def _project_role(self, project_id: UUID, subject: str) -> Optional[ProjectRole]:
        async def load():
            return _role_name(await self.role_store.get_project_role(project_id, subject))

        return ProjectRole.parse(await self._cached(Scope.PROJECT, subject, project_id, load))

    async def _is_system_admin(self, subject: str) -> bool:
        async def load():
            return bool(await self.role_store.is_system_admin(subject))

        return bool(await self._cached(Scope.SYSTEM, subject, SYSTEM_ADMIN_RESOURCE, load))

    async def _is_any_organization_admin(self, subject: str) -> bool:
        async def load():
            return bool(await self.role_store.has_any_organization_admin_role(subject))

        return bool(await self._cached(Scope.SYSTEM, subject, ORGANIZATION_ADMIN_RESOURCE, load))

    # Outcomes

    @staticmethod
    def _check_scope(requirement: Requirement, expected: Scope) -> None:
        if requirement.scope is not expected:
            raise AccessControlConfigurationError(
                f"{requirement} cannot be evaluated by the {expected.value} decision procedure",
                error_code=AuthorizationErrorCode.CFG_INVALID_REQUIREMENT
            )

    def _allow(
        self,
        requirement: Requirement,
        subject: str,
        resource_id: Optional[UUID],
        **details: Any
    ) -> AuthorizationDecision:
        scope = requirement.scope
        observe_decision(scope.value, True, None)
        self.audit_logger.log_decision(
            scope.value,
            subject,
            True,
            resource_id=str(resource_id) if resource_id else None,
            requirement=str(requirement),
            **details
        )
        return AuthorizationDecision(allowed=True, scope=scope, resource_id=resource_id)

    def _deny(
        self,
        requirement: Requirement,
        subject: Optional[str],
        reason: DenyReason,
        resource_id: Optional[UUID] = None,
        context: Optional[DecisionContext] = None,
        exc_info: Any = None,
        **details: Any
    ) -> AuthorizationDecision:
        scope = requirement.scope
        observe_decision(scope.value, False, reason.value)
        if context is not None:
            details['context'] = context.to_dict()
        self.audit_logger.log_decision(
            scope.value,
            subject,
            False,
            reason=reason,
            resource_id=str(resource_id) if resource_id else None,
            requirement=str(requirement),
            exc_info=exc_info,
            **details
        )
        return AuthorizationDecision(allowed=False, scope=scope, reason=reason, resource_id=resource_id)

    def _store_failure(
        self,
        requirement: Requirement,
        subject: str,
        resource_id: Optional[UUID],
        error: Exception
    ) -> AuthorizationDecision:
        observe_store_failure(requirement.scope.value)
        return self._deny(
            requirement,
            subject,
            DenyReason.STORE_FAILURE,
            resource_id=resource_id,
            exc_info=error,
            error_type=type(error).__name__
        )
