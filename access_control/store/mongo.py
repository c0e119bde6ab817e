"""
MongoDB role store using the Motor async driver.

Collections:
- ``organizations``: ``{_id, name, max_members, max_projects}``
- ``projects``: ``{_id, organization_id, name}``
- ``organization_members``: ``{organization_id, user_id, role, is_active, updated_at}``
- ``project_members``: ``{project_id, user_id, role, is_active, updated_at}``
- ``system_admins``: ``{user_id, is_active, granted_at, granted_by}``

Identifiers are stored as canonical UUID strings and roles by name. A stored
role that does not parse resolves to no role. Driver failures are wrapped in
``RoleStoreError``; the authorization engine turns them into a deny.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional
from uuid import UUID

import structlog
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from access_control.authz.exceptions import RoleStoreError
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

ORGANIZATIONS = 'organizations'
PROJECTS = 'projects'
ORGANIZATION_MEMBERS = 'organization_members'
PROJECT_MEMBERS = 'project_members'
SYSTEM_ADMINS = 'system_admins'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MongoRoleStore(RoleStore, MembershipWriter):
    """
    Role lookups and membership writes against MongoDB.

    Args:
        database: ``AsyncIOMotorDatabase`` holding the membership collections
    """

    def __init__(self, database: Any):
        self.database = database

    @classmethod
    def from_uri(cls, uri: str, database_name: str, **client_options: Any) -> 'MongoRoleStore':
        client = AsyncIOMotorClient(uri, **client_options)
        return cls(client[database_name])

    @asynccontextmanager
    async def _operation(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except PyMongoError as e:
            logger.error(
                "MongoDB role store operation failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__
            )
            raise RoleStoreError(f"Role store operation {operation} failed", operation=operation) from e

    def _collection(self, name: str) -> Any:
        return self.database[name]

    async def ensure_indexes(self) -> None:
        async with self._operation('ensure_indexes'):
            await self._collection(ORGANIZATION_MEMBERS).create_index(
                [('organization_id', ASCENDING), ('user_id', ASCENDING)], unique=True
            )
            await self._collection(ORGANIZATION_MEMBERS).create_index(
                [('user_id', ASCENDING), ('role', ASCENDING), ('is_active', ASCENDING)]
            )
            await self._collection(PROJECT_MEMBERS).create_index(
                [('project_id', ASCENDING), ('user_id', ASCENDING)], unique=True
            )
            await self._collection(PROJECTS).create_index([('organization_id', ASCENDING)])
            await self._collection(SYSTEM_ADMINS).create_index([('user_id', ASCENDING)], unique=True)

    # RoleStore

    async def get_organization_role(self, organization_id: UUID, subject: str) -> Optional[OrganizationRole]:
        async with self._operation('get_organization_role'):
            document = await self._collection(ORGANIZATION_MEMBERS).find_one(
                {'organization_id': str(organization_id), 'user_id': subject, 'is_active': True}
            )
        return OrganizationRole.parse(document.get('role')) if document else None

    async def get_project_role(self, project_id: UUID, subject: str) -> Optional[ProjectRole]:
        async with self._operation('get_project_role'):
            document = await self._collection(PROJECT_MEMBERS).find_one(
                {'project_id': str(project_id), 'user_id': subject, 'is_active': True}
            )
        return ProjectRole.parse(document.get('role')) if document else None

    async def get_project_owning_organization(self, project_id: UUID) -> Optional[UUID]:
        async with self._operation('get_project_owning_organization'):
            document = await self._collection(PROJECTS).find_one(
                {'_id': str(project_id)},
                projection={'organization_id': 1}
            )
        if not document or not document.get('organization_id'):
            return None
        try:
            return UUID(str(document['organization_id']))
        except ValueError:
            logger.warning("Project has malformed owning organization", project_id=str(project_id))
            return None

    async def is_system_admin(self, subject: str) -> bool:
        async with self._operation('is_system_admin'):
            document = await self._collection(SYSTEM_ADMINS).find_one(
                {'user_id': subject, 'is_active': True}
            )
        return document is not None

    async def has_any_organization_admin_role(self, subject: str) -> bool:
        # Roles are matched with the same parser as get_organization_role.
        async with self._operation('has_any_organization_admin_role'):
            async for document in self._collection(ORGANIZATION_MEMBERS).find(
                {'user_id': subject, 'is_active': True},
                projection={'role': 1}
            ):
                if OrganizationRole.parse(document.get('role')) is OrganizationRole.ADMIN:
                    return True
        return False

    # MembershipWriter

    async def create_organization(
        self,
        organization_id: UUID,
        name: str,
        max_members: int = DEFAULT_MAX_MEMBERS,
        max_projects: int = DEFAULT_MAX_PROJECTS
    ) -> None:
        async with self._operation('create_organization'):
            await self._collection(ORGANIZATIONS).update_one(
                {'_id': str(organization_id)},
                {'$set': {
                    'name': name,
                    'max_members': max_members,
                    'max_projects': max_projects,
                    'updated_at': _utcnow(),
                }},
                upsert=True
            )

    async def get_organization_limits(self, organization_id: UUID) -> Optional[OrganizationLimits]:
        async with self._operation('get_organization_limits'):
            document = await self._collection(ORGANIZATIONS).find_one(
                {'_id': str(organization_id)},
                projection={'max_members': 1, 'max_projects': 1}
            )
        if document is None:
            return None
        return OrganizationLimits(
            max_members=document.get('max_members', DEFAULT_MAX_MEMBERS),
            max_projects=document.get('max_projects', DEFAULT_MAX_PROJECTS)
        )

    async def count_organization_members(self, organization_id: UUID) -> int:
        async with self._operation('count_organization_members'):
            return await self._collection(ORGANIZATION_MEMBERS).count_documents(
                {'organization_id': str(organization_id), 'is_active': True}
            )

    async def count_organization_projects(self, organization_id: UUID) -> int:
        async with self._operation('count_organization_projects'):
            return await self._collection(PROJECTS).count_documents({'organization_id': str(organization_id)})

    async def delete_organization(self, organization_id: UUID) -> bool:
        org_id = str(organization_id)
        async with self._operation('delete_organization'):
            result = await self._collection(ORGANIZATIONS).delete_one({'_id': org_id})
            if result.deleted_count == 0:
                return False

            project_ids = [
                document['_id']
                async for document in self._collection(PROJECTS).find(
                    {'organization_id': org_id}, projection={'_id': 1}
                )
            ]
            if project_ids:
                await self._collection(PROJECTS).delete_many({'_id': {'$in': project_ids}})
                await self._collection(PROJECT_MEMBERS).update_many(
                    {'project_id': {'$in': project_ids}},
                    {'$set': {'is_active': False, 'updated_at': _utcnow()}}
                )
            await self._collection(ORGANIZATION_MEMBERS).update_many(
                {'organization_id': org_id},
                {'$set': {'is_active': False, 'updated_at': _utcnow()}}
            )

        logger.info("Organization deleted", organization_id=org_id, projects=len(project_ids))
        return True

    async def add_organization_member(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Membership:
        return await self._upsert_member(
            ORGANIZATION_MEMBERS, 'organization_id', Scope.ORGANIZATION, organization_id, subject, role
        )

    async def change_organization_member_role(
        self,
        organization_id: UUID,
        subject: str,
        role: OrganizationRole
    ) -> Optional[Membership]:
        return await self._change_member_role(
            ORGANIZATION_MEMBERS, 'organization_id', Scope.ORGANIZATION, organization_id, subject, role
        )

    async def remove_organization_member(self, organization_id: UUID, subject: str) -> bool:
        return await self._deactivate_member(ORGANIZATION_MEMBERS, 'organization_id', organization_id, subject)

    async def create_project(self, project_id: UUID, organization_id: UUID, name: str) -> None:
        async with self._operation('create_project'):
            await self._collection(PROJECTS).update_one(
                {'_id': str(project_id)},
                {'$set': {'organization_id': str(organization_id), 'name': name, 'updated_at': _utcnow()}},
                upsert=True
            )

    async def delete_project(self, project_id: UUID) -> bool:
        async with self._operation('delete_project'):
            result = await self._collection(PROJECTS).delete_one({'_id': str(project_id)})
            if result.deleted_count == 0:
                return False
            await self._collection(PROJECT_MEMBERS).update_many(
                {'project_id': str(project_id)},
                {'$set': {'is_active': False, 'updated_at': _utcnow()}}
            )
        return True

    async def add_project_member(self, project_id: UUID, subject: str, role: ProjectRole) -> Membership:
        return await self._upsert_member(
            PROJECT_MEMBERS, 'project_id', Scope.PROJECT, project_id, subject, role
        )

    async def change_project_member_role(
        self,
        project_id: UUID,
        subject: str,
        role: ProjectRole
    ) -> Optional[Membership]:
        return await self._change_member_role(
            PROJECT_MEMBERS, 'project_id', Scope.PROJECT, project_id, subject, role
        )

    async def remove_project_member(self, project_id: UUID, subject: str) -> bool:
        return await self._deactivate_member(PROJECT_MEMBERS, 'project_id', project_id, subject)

    async def grant_system_admin(self, subject: str, granted_by: Optional[str] = None) -> None:
        async with self._operation('grant_system_admin'):
            await self._collection(SYSTEM_ADMINS).update_one(
                {'user_id': subject},
                {'$set': {'is_active': True, 'granted_at': _utcnow(), 'granted_by': granted_by}},
                upsert=True
            )

    async def revoke_system_admin(self, subject: str) -> bool:
        async with self._operation('revoke_system_admin'):
            result = await self._collection(SYSTEM_ADMINS).update_one(
                {'user_id': subject, 'is_active': True},
                {'$set': {'is_active': False}}
            )
        return result.modified_count > 0

    # Helpers

    async def _upsert_member(
        self,
        collection: str,
        id_field: str,
        scope: Scope,
        resource_id: UUID,
        subject: str,
        role: Any
    ) -> Membership:
        now = _utcnow()
        async with self._operation(f'add_{scope.value.lower()}_member'):
            await self._collection(collection).update_one(
                {id_field: str(resource_id), 'user_id': subject},
                {'$set': {'role': role.value, 'is_active': True, 'updated_at': now}},
                upsert=True
            )
        return Membership(scope=scope, resource_id=resource_id, subject=subject, role=role, updated_at=now)

    async def _change_member_role(
        self,
        collection: str,
        id_field: str,
        scope: Scope,
        resource_id: UUID,
        subject: str,
        role: Any
    ) -> Optional[Membership]:
        now = _utcnow()
        async with self._operation(f'change_{scope.value.lower()}_member_role'):
            document = await self._collection(collection).find_one_and_update(
                {id_field: str(resource_id), 'user_id': subject, 'is_active': True},
                {'$set': {'role': role.value, 'updated_at': now}},
                return_document=ReturnDocument.AFTER
            )
        if document is None:
            return None
        return Membership(scope=scope, resource_id=resource_id, subject=subject, role=role, updated_at=now)

    async def _deactivate_member(
        self,
        collection: str,
        id_field: str,
        resource_id: UUID,
        subject: str
    ) -> bool:
        async with self._operation(f'remove_member:{collection}'):
            result = await self._collection(collection).update_one(
                {id_field: str(resource_id), 'user_id': subject, 'is_active': True},
                {'$set': {'is_active': False, 'updated_at': _utcnow()}}
            )
        return result.modified_count > 0

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.database.command('ping')
        except PyMongoError as e:
            return {'status': 'unhealthy', 'backend': 'mongodb', 'error': type(e).__name__}
        return {'status': 'healthy', 'backend': 'mongodb'}
