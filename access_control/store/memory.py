"""
In-memory role store for development and tests.

Implements both ``RoleStore`` and ``MembershipWriter``. Rows are kept in
plain dictionaries guarded by a ``threading.Lock``; every method completes
without awaiting so the lock never spans a suspension point.
"""

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

import structlog

from access_control.authz.roles import OrganizationRole, ProjectRole, Scope
from access_control.store.base import (
    DEFAULT_MAX_MEMBERS,
    DEFAULT_MAX_PROJECTS,
    Membership,
    MembershipWriter,
    OrganizationLimits,
    RoleStore,
)

logger = structlog.get_logger(__name__)


class InMemoryRoleStore(RoleStore, MembershipWriter):
    """Dictionary-backed membership data."""

    def __init__(self):
        self._lock = Lock()
        self._organizations: Dict[UUID, Tuple[str, OrganizationLimits]] = {}
        self._projects: Dict[UUID, Tuple[UUID, str]] = {}
        self._organization_members: Dict[Tuple[UUID, str], Membership] = {}
        self._project_members: Dict[Tuple[UUID, str], Membership] = {}
        self._system_admins: Set[str] = set()

    # RoleStore

    async def get_organization_role(self, organization_id: UUID, subject: str) -> Optional[OrganizationRole]:
        with self._lock:
            membership = self._organization_members.get((organization_id, subject))
            return membership.role if membership and membership.is_active else None

    async def get_project_role(self, project_id: UUID, subject: str) -> Optional[ProjectRole]:
        with self._lock:
            membership = self._project_members.get((project_id, subject))
            return membership.role if membership and membership.is_active else None

    async def get_project_owning_organization(self, project_id: UUID) -> Optional[UUID]:
        with self._lock:
            project = self._projects.get(project_id)
            return project[0] if project else None

    async def is_system_admin(self, subject: str) -> bool:
        with self._lock:
            return subject in self._system_admins

    async def has_any_organization_admin_role(self, subject: str) -> bool:
        with self._lock:
            return any(
                membership.is_active
                and membership.subject == subject
                and membership.role is OrganizationRole.ADMIN
                for membership in self._organization_members.values()
            )

    # MembershipWriter

    async def create_organization(
        self,
        organization_id: UUID,
        name: str,
        max_members: int = DEFAULT_MAX_MEMBERS,
        max_projects: int = DEFAULT_MAX_PROJECTS
    ) -> None:
        with self._lock:
            self._organizations[organization_id] = (name, OrganizationLimits(max_members, max_projects))

    async def get_organization_limits(self, organization_id: UUID) -> Optional[OrganizationLimits]:
        with self._lock:
            organization = self._organizations.get(organization_id)
            return organization[1] if organization else None

    async def count_organization_members(self, organization_id: UUID) -> int:
        return len(self.memberships(Scope.ORGANIZATION, organization_id))

    async def count_organization_projects(self, organization_id: UUID) -> int:
        with self._lock:
            return sum(1 for owner, _ in self._projects.values() if owner == organization_id)

    async def delete_organization(self, organization_id: UUID) -> bool:
        with self._lock:
            if self._organizations.pop(organization_id, None) is None:
                return False
            project_ids = [
                project_id for project_id, (owner, _) in self._projects.items()
                if owner == organization_id
            ]
            for project_id in project_ids:
                self._delete_project_locked(project_id)
            for (org_id, _), membership in self._organization_members.items():
                if org_id == organization_id:
                    membership.is_active = False
        logger.debug("Organization deleted", organization_id=str(organization_id), projects=len(project_ids))
        return True

    async def add_organization_member(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Membership:
        return self._upsert(self._organization_members, Scope.ORGANIZATION, organization_id, subject, role)

    async def change_organization_member_role(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Optional[Membership]:
        return self._change_role(self._organization_members, organization_id, subject, role)

    async def remove_organization_member(self, organization_id: UUID, subject: str) -> bool:
        return self._deactivate(self._organization_members, organization_id, subject)

    async def create_project(self, project_id: UUID, organization_id: UUID, name: str) -> None:
        with self._lock:
            self._projects[project_id] = (organization_id, name)

    async def delete_project(self, project_id: UUID) -> bool:
        with self._lock:
            return self._delete_project_locked(project_id)

    async def add_project_member(self, project_id: UUID, subject: str, role: ProjectRole) -> Membership:
        return self._upsert(self._project_members, Scope.PROJECT, project_id, subject, role)

    async def change_project_member_role(
        self,
        project_id: UUID,
        subject: str,
        role: ProjectRole
    ) -> Optional[Membership]:
        return self._change_role(self._project_members, project_id, subject, role)

    async def remove_project_member(self, project_id: UUID, subject: str) -> bool:
        return self._deactivate(self._project_members, project_id, subject)

    async def grant_system_admin(self, subject: str, granted_by: Optional[str] = None) -> None:
        with self._lock:
            self._system_admins.add(subject)

    async def revoke_system_admin(self, subject: str) -> bool:
        with self._lock:
            if subject not in self._system_admins:
                return False
            self._system_admins.discard(subject)
            return True

    # Helpers

    def _delete_project_locked(self, project_id: UUID) -> bool:
        if self._projects.pop(project_id, None) is None:
            return False
        for (proj_id, _), membership in self._project_members.items():
            if proj_id == project_id:
                membership.is_active = False
        return True

    def _upsert(self, rows, scope, resource_id, subject, role) -> Membership:
        with self._lock:
            membership = rows.get((resource_id, subject))
            if membership is None:
                membership = Membership(scope=scope, resource_id=resource_id, subject=subject, role=role)
                rows[(resource_id, subject)] = membership
            else:
                membership.role = role
                membership.is_active = True
                membership.updated_at = datetime.now(timezone.utc)
            return membership

    def _change_role(self, rows, resource_id, subject, role) -> Optional[Membership]:
        with self._lock:
            membership = rows.get((resource_id, subject))
            if membership is None or not membership.is_active:
                return None
            membership.role = role
            membership.updated_at = datetime.now(timezone.utc)
            return membership

    def _deactivate(self, rows, resource_id, subject) -> bool:
        with self._lock:
            membership = rows.get((resource_id, subject))
            if membership is None or not membership.is_active:
                return False
            membership.is_active = False
            membership.updated_at = datetime.now(timezone.utc)
            return True

    def memberships(self, scope: Scope, resource_id: UUID) -> List[Membership]:
        """Active memberships of one organization or project."""
        rows = self._organization_members if scope is Scope.ORGANIZATION else self._project_members
        with self._lock:
            return [
                membership for (rid, _), membership in rows.items()
                if rid == resource_id and membership.is_active
            ]
