"""
Mutation-side cache invalidation.

``AuthorizationCacheInvalidator`` maps membership events onto the engine's
three invalidation operations. ``MembershipCommandService`` is the command
layer entry point: it performs a write through a ``MembershipWriter`` and,
only when the write succeeded, invalidates before returning, so the next
decision for the affected subject or resource observes the new state.
It also enforces the organization member and project limits before a member
is added or a project is created.
"""

from typing import Optional
from uuid import UUID

import structlog

from access_control.authz.engine import ORGANIZATION_ADMIN_RESOURCE, AuthorizationEngine
from access_control.authz.exceptions import AuthorizationErrorCode, OrganizationLimitError, get_error_category
from access_control.authz.roles import OrganizationRole, ProjectRole, Scope
from access_control.store.base import DEFAULT_MAX_MEMBERS, DEFAULT_MAX_PROJECTS, Membership, MembershipWriter

logger = structlog.get_logger(__name__)


class AuthorizationCacheInvalidator:
    """Translates membership changes into cache invalidations."""

    def __init__(self, engine: AuthorizationEngine):
        self.engine = engine

    async def organization_membership_changed(self, organization_id: UUID, subject: str) -> None:
        await self.engine.invalidate_membership(Scope.ORGANIZATION, organization_id, subject)
        # the subject may have gained or lost "Admin of any organization"
        await self.engine.invalidate_membership(Scope.SYSTEM, ORGANIZATION_ADMIN_RESOURCE, subject)

    async def project_membership_changed(self, project_id: UUID, subject: str) -> None:
        await self.engine.invalidate_membership(Scope.PROJECT, project_id, subject)

    async def organization_deleted(self, organization_id: UUID) -> None:
        await self.engine.invalidate_resource(Scope.ORGANIZATION, organization_id)
        await self.engine.invalidate_resource(Scope.SYSTEM, ORGANIZATION_ADMIN_RESOURCE)

    async def project_deleted(self, project_id: UUID) -> None:
        await self.engine.invalidate_resource(Scope.PROJECT, project_id)

    async def system_grants_changed(self, subject: str) -> None:
        await self.engine.invalidate_subject_global(subject)


class MembershipCommandService:
    """
    Membership commands with invalidation after a successful write.

    A write that raises propagates without invalidating; a write that
    reports no change (unknown member, missing resource) skips invalidation.
    """

    def __init__(self, writer: MembershipWriter, invalidator: AuthorizationCacheInvalidator):
        self.writer = writer
        self.invalidator = invalidator

    # Organizations

    async def create_organization(
        self,
        organization_id: UUID,
        name: str,
        created_by: str,
        max_members: int = DEFAULT_MAX_MEMBERS,
        max_projects: int = DEFAULT_MAX_PROJECTS
    ) -> Membership:
        """Create an organization with its creator as Admin."""
        await self.writer.create_organization(organization_id, name, max_members=max_members, max_projects=max_projects)
        membership = await self.writer.add_organization_member(organization_id, created_by, OrganizationRole.ADMIN)
        await self.invalidator.organization_membership_changed(organization_id, created_by)
        logger.info("Organization created", organization_id=str(organization_id), created_by=created_by)
        return membership

    async def delete_organization(self, organization_id: UUID) -> bool:
        deleted = await self.writer.delete_organization(organization_id)
        if deleted:
            await self.invalidator.organization_deleted(organization_id)
            logger.info("Organization deleted", organization_id=str(organization_id))
        return deleted

    async def add_organization_member(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Membership:
        await self._require_capacity(organization_id, AuthorizationErrorCode.CMD_MEMBER_LIMIT_REACHED)
        membership = await self.writer.add_organization_member(organization_id, subject, role)
        await self.invalidator.organization_membership_changed(organization_id, subject)
        logger.info(
            "Organization member added",
            organization_id=str(organization_id),
            subject=subject,
            role=role.value
        )
        return membership

    async def change_organization_member_role(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Optional[Membership]:
        membership = await self.writer.change_organization_member_role(organization_id, subject, role)
        if membership is not None:
            await self.invalidator.organization_membership_changed(organization_id, subject)
            logger.info(
                "Organization member role changed",
                organization_id=str(organization_id),
                subject=subject,
                role=role.value
            )
        return membership

    async def remove_organization_member(self, organization_id: UUID, subject: str) -> bool:
        removed = await self.writer.remove_organization_member(organization_id, subject)
        if removed:
            await self.invalidator.organization_membership_changed(organization_id, subject)
            logger.info("Organization member removed", organization_id=str(organization_id), subject=subject)
        return removed

    # Projects

    async def create_project(self, project_id: UUID, organization_id: UUID, name: str) -> None:
        await self._require_capacity(organization_id, AuthorizationErrorCode.CMD_PROJECT_LIMIT_REACHED)
        await self.writer.create_project(project_id, organization_id, name)
        logger.info("Project created", project_id=str(project_id), organization_id=str(organization_id))

    async def delete_project(self, project_id: UUID) -> bool:
        deleted = await self.writer.delete_project(project_id)
        if deleted:
            await self.invalidator.project_deleted(project_id)
            logger.info("Project deleted", project_id=str(project_id))
        return deleted

    async def add_project_member(self, project_id: UUID, subject: str, role: ProjectRole) -> Membership:
        membership = await self.writer.add_project_member(project_id, subject, role)
        await self.invalidator.project_membership_changed(project_id, subject)
        logger.info("Project member added", project_id=str(project_id), subject=subject, role=role.value)
        return membership

    async def change_project_member_role(
        self,
        project_id: UUID,
        subject: str,
        role: ProjectRole
    ) -> Optional[Membership]:
        membership = await self.writer.change_project_member_role(project_id, subject, role)
        if membership is not None:
            await self.invalidator.project_membership_changed(project_id, subject)
            logger.info("Project member role changed", project_id=str(project_id), subject=subject, role=role.value)
        return membership

    async def remove_project_member(self, project_id: UUID, subject: str) -> bool:
        removed = await self.writer.remove_project_member(project_id, subject)
        if removed:
            await self.invalidator.project_membership_changed(project_id, subject)
            logger.info("Project member removed", project_id=str(project_id), subject=subject)
        return removed

    # System

    async def grant_system_admin(self, subject: str, granted_by: Optional[str] = None) -> None:
        await self.writer.grant_system_admin(subject, granted_by=granted_by)
        await self.invalidator.system_grants_changed(subject)
        logger.info("System admin granted", subject=subject, granted_by=granted_by)

    async def revoke_system_admin(self, subject: str) -> bool:
        revoked = await self.writer.revoke_system_admin(subject)
        if revoked:
            await self.invalidator.system_grants_changed(subject)
            logger.info("System admin revoked", subject=subject)
        return revoked

    # Organization limits

    async def can_add_member(self, organization_id: UUID) -> bool:
        """Whether the organization exists and is below its member limit."""
        return await self._capacity(organization_id, AuthorizationErrorCode.CMD_MEMBER_LIMIT_REACHED) is None

    async def can_create_project(self, organization_id: UUID) -> bool:
        """Whether the organization exists and is below its project limit."""
        return await self._capacity(organization_id, AuthorizationErrorCode.CMD_PROJECT_LIMIT_REACHED) is None

    async def _capacity(
        self,
        organization_id: UUID,
        error_code: AuthorizationErrorCode
    ) -> Optional[OrganizationLimitError]:
        """Return the error describing why the organization is full, or None when it has room."""
        limits = await self.writer.get_organization_limits(organization_id)
        if limits is None:
            return OrganizationLimitError(
                f"Organization {organization_id} not found",
                AuthorizationErrorCode.CMD_ORGANIZATION_NOT_FOUND,
                organization_id=str(organization_id),
                user_message='Organization not found',
                http_status=404
            )

        if error_code is AuthorizationErrorCode.CMD_MEMBER_LIMIT_REACHED:
            kind, limit = 'member', limits.max_members
            current = await self.writer.count_organization_members(organization_id)
        else:
            kind, limit = 'project', limits.max_projects
            current = await self.writer.count_organization_projects(organization_id)

        if current < limit:
            return None
        return OrganizationLimitError(
            f"Organization {organization_id} has reached its {kind} limit {current}/{limit}",
            error_code,
            organization_id=str(organization_id),
            current=current,
            limit=limit
        )

    async def _require_capacity(self, organization_id: UUID, error_code: AuthorizationErrorCode) -> None:
        error = await self._capacity(organization_id, error_code)
        if error is None:
            return
        logger.warning(
            "Organization command rejected",
            organization_id=str(organization_id),
            error_code=error.error_code.value,
            error_category=get_error_category(error.error_code),
            current=error.current,
            limit=error.limit
        )
        raise error
