"""
Role store contracts.

``RoleStore`` is the read side consumed by the authorization engine.
``MembershipWriter`` is the write side used by the command layer; the
engine never writes. Removing a member deactivates the membership row
instead of deleting it, and only active memberships ever resolve to a role.
Organizations carry member and project limits, enforced by the command
layer against the active counts the writer reports.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from access_control.authz.roles import OrganizationRole, ProjectRole, Scope

DEFAULT_MAX_MEMBERS = 1000
DEFAULT_MAX_PROJECTS = 100


@dataclass
class Membership:
    """Ground-truth membership row for an organization or project."""

    scope: Scope
    resource_id: UUID
    subject: str
    role: Union[OrganizationRole, ProjectRole]
    is_active: bool = True
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class OrganizationLimits:
    max_members: int = DEFAULT_MAX_MEMBERS
    max_projects: int = DEFAULT_MAX_PROJECTS


class RoleStore(ABC):
    """Read-only role lookups. Implementations raise on backend failure."""

    @abstractmethod
    async def get_organization_role(self, organization_id: UUID, subject: str) -> Optional[OrganizationRole]:
        """Active organization role of ``subject``, or None."""

    @abstractmethod
    async def get_project_role(self, project_id: UUID, subject: str) -> Optional[ProjectRole]:
        """Active direct project role of ``subject``, or None."""

    @abstractmethod
    async def get_project_owning_organization(self, project_id: UUID) -> Optional[UUID]:
        """Organization owning the project, or None when the project does not exist."""

    @abstractmethod
    async def is_system_admin(self, subject: str) -> bool:
        """Whether ``subject`` holds an active system-admin grant."""

    @abstractmethod
    async def has_any_organization_admin_role(self, subject: str) -> bool:
        """Whether ``subject`` is an active Admin of at least one organization."""


class MembershipWriter(ABC):
    """
    Membership mutations used by the command layer.

    Adding a member that already has a row (active or removed) updates the
    role and reactivates it. Role changes and removals only apply to active
    memberships and return None/False otherwise.
    """

    @abstractmethod
    async def create_organization(
        self,
        organization_id: UUID,
        name: str,
        max_members: int = DEFAULT_MAX_MEMBERS,
        max_projects: int = DEFAULT_MAX_PROJECTS
    ) -> None:
        pass

    @abstractmethod
    async def get_organization_limits(self, organization_id: UUID) -> Optional[OrganizationLimits]:
        """Limits of the organization, or None when it does not exist."""

    @abstractmethod
    async def count_organization_members(self, organization_id: UUID) -> int:
        """Number of active members of the organization."""

    @abstractmethod
    async def count_organization_projects(self, organization_id: UUID) -> int:
        """Number of projects the organization owns."""

    @abstractmethod
    async def delete_organization(self, organization_id: UUID) -> bool:
        """Delete the organization, its projects, and deactivate its memberships."""

    @abstractmethod
    async def add_organization_member(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Membership:
        pass

    @abstractmethod
    async def change_organization_member_role(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Optional[Membership]:
        pass

    @abstractmethod
    async def remove_organization_member(self, organization_id: UUID, subject: str) -> bool:
        pass

    @abstractmethod
    async def create_project(self, project_id: UUID, organization_id: UUID, name: str) -> None:
        pass

    @abstractmethod
    async def delete_project(self, project_id: UUID) -> bool:
        pass

    @abstractmethod
    async def add_project_member(self, project_id: UUID, subject: str, role: ProjectRole) -> Membership:
        pass

    @abstractmethod
    async def change_project_member_role(
        self,
        project_id: UUID,
        subject: str,
        role: ProjectRole
    ) -> Optional[Membership]:
        pass

    @abstractmethod
    async def remove_project_member(self, project_id: UUID, subject: str) -> bool:
        pass

    @abstractmethod
    async def grant_system_admin(self, subject: str, granted_by: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def revoke_system_admin(self, subject: str) -> bool:
        pass
