"""
Unit tests for membership commands and the cache invalidations they trigger.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from access_control.authz.engine import ORGANIZATION_ADMIN_RESOURCE
from access_control.authz.exceptions import (
    AuthorizationErrorCode,
    OrganizationLimitError,
    RoleStoreError,
    create_safe_error_response,
    get_error_category,
)
from access_control.authz.invalidation import AuthorizationCacheInvalidator, MembershipCommandService
from access_control.authz.resolver import DecisionContext
from access_control.authz.roles import OrganizationRole, ProjectRole, Requirement, Scope, SystemRole
from access_control.store.base import OrganizationLimits
from tests.fixtures import ORG_1, ORG_7, PROJECT_1


def org_context(organization_id=ORG_1):
    return DecisionContext(route_values={'organizationId': str(organization_id)})


def project_context(project_id=PROJECT_1):
    return DecisionContext(route_values={'projectId': str(project_id)})


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.invalidate_membership = AsyncMock()
    engine.invalidate_resource = AsyncMock()
    engine.invalidate_subject_global = AsyncMock()
    return engine


@pytest.fixture
def invalidator(mock_engine):
    return AuthorizationCacheInvalidator(mock_engine)


class TestInvalidatorMapping:
    """Each membership event maps onto the narrowest invalidation."""

    async def test_organization_membership_changed(self, invalidator, mock_engine):
        await invalidator.organization_membership_changed(ORG_1, 'alice')

        assert mock_engine.invalidate_membership.await_args_list == [
            call(Scope.ORGANIZATION, ORG_1, 'alice'),
            call(Scope.SYSTEM, ORGANIZATION_ADMIN_RESOURCE, 'alice'),
        ]

    async def test_project_membership_changed(self, invalidator, mock_engine):
        await invalidator.project_membership_changed(PROJECT_1, 'carol')
        mock_engine.invalidate_membership.assert_awaited_once_with(Scope.PROJECT, PROJECT_1, 'carol')

    async def test_organization_deleted(self, invalidator, mock_engine):
        await invalidator.organization_deleted(ORG_1)

        assert mock_engine.invalidate_resource.await_args_list == [
            call(Scope.ORGANIZATION, ORG_1),
            call(Scope.SYSTEM, ORGANIZATION_ADMIN_RESOURCE),
        ]

    async def test_project_deleted(self, invalidator, mock_engine):
        await invalidator.project_deleted(PROJECT_1)
        mock_engine.invalidate_resource.assert_awaited_once_with(Scope.PROJECT, PROJECT_1)

    async def test_system_grants_changed(self, invalidator, mock_engine):
        await invalidator.system_grants_changed('erin')
        mock_engine.invalidate_subject_global.assert_awaited_once_with('erin')


class TestCommandServiceInvalidation:
    """Invalidation follows successful writes only."""

    @pytest.fixture
    def writer(self):
        writer = AsyncMock()
        writer.get_organization_limits.return_value = OrganizationLimits()
        writer.count_organization_members.return_value = 0
        writer.count_organization_projects.return_value = 0
        return writer

    @pytest.fixture
    def service(self, writer, invalidator):
        return MembershipCommandService(writer, invalidator)

    async def test_failed_write_propagates_without_invalidation(self, service, writer, mock_engine):
        writer.add_organization_member.side_effect = RoleStoreError("write failed", operation='add_organization_member')

        with pytest.raises(RoleStoreError):
            await service.add_organization_member(ORG_1, 'alice', OrganizationRole.ADMIN)

        mock_engine.invalidate_membership.assert_not_awaited()

    async def test_change_of_unknown_member_skips_invalidation(self, service, writer, mock_engine):
        writer.change_organization_member_role.return_value = None

        result = await service.change_organization_member_role(ORG_1, 'nobody', OrganizationRole.ADMIN)

        assert result is None
        mock_engine.invalidate_membership.assert_not_awaited()

    @pytest.mark.parametrize('method, args', [
        ('remove_organization_member', (ORG_1, 'nobody')),
        ('remove_project_member', (PROJECT_1, 'nobody')),
        ('delete_organization', (uuid.uuid4(),)),
        ('delete_project', (uuid.uuid4(),)),
        ('revoke_system_admin', ('nobody',)),
    ])
    async def test_no_op_writes_skip_invalidation(self, service, writer, mock_engine, method, args):
        getattr(writer, method).return_value = False

        assert await getattr(service, method)(*args) is False

        mock_engine.invalidate_membership.assert_not_awaited()
        mock_engine.invalidate_resource.assert_not_awaited()
        mock_engine.invalidate_subject_global.assert_not_awaited()

    async def test_create_project_does_not_invalidate(self, service, writer, mock_engine):
        await service.create_project(PROJECT_1, ORG_1, 'Project One')

        writer.create_project.assert_awaited_once_with(PROJECT_1, ORG_1, 'Project One')
        mock_engine.invalidate_membership.assert_not_awaited()
        mock_engine.invalidate_resource.assert_not_awaited()

    async def test_grant_system_admin_passes_grantor(self, service, writer, mock_engine):
        await service.grant_system_admin('dave', granted_by='erin')

        writer.grant_system_admin.assert_awaited_once_with('dave', granted_by='erin')
        mock_engine.invalidate_subject_global.assert_awaited_once_with('dave')

    async def test_create_organization_adds_creator_as_admin(self, service, writer, mock_engine):
        organization_id = uuid.uuid4()

        await service.create_organization(organization_id, 'New Org', created_by='alice')

        writer.create_organization.assert_awaited_once_with(
            organization_id, 'New Org', max_members=1000, max_projects=100
        )
        writer.add_organization_member.assert_awaited_once_with(organization_id, 'alice', OrganizationRole.ADMIN)
        assert call(Scope.SYSTEM, ORGANIZATION_ADMIN_RESOURCE, 'alice') in mock_engine.invalidate_membership.await_args_list


class TestReadAfterWrite:
    """A decision made after a command returns observes the new state."""

    async def test_promotion_visible_immediately(self, engine, command_service):
        requirement = Requirement.organization(OrganizationRole.ADMIN)
        assert not await engine.authorize_organization(requirement, 'alice', org_context())

        await command_service.change_organization_member_role(ORG_1, 'alice', OrganizationRole.ADMIN)

        assert await engine.authorize_organization(requirement, 'alice', org_context())

    async def test_removal_visible_immediately(self, engine, command_service):
        requirement = Requirement.organization(OrganizationRole.VIEWER)
        assert await engine.authorize_organization(requirement, 'frank', org_context())

        await command_service.remove_organization_member(ORG_1, 'frank')

        assert not await engine.authorize_organization(requirement, 'frank', org_context())

    async def test_new_organization_admin_gains_system_organization_admin(self, engine, command_service):
        requirement = Requirement.system(SystemRole.ORGANIZATION_ADMIN)
        assert not await engine.authorize_system(requirement, 'carol')

        await command_service.add_organization_member(ORG_7, 'carol', OrganizationRole.ADMIN)

        assert await engine.authorize_system(requirement, 'carol')

    async def test_organization_deletion_revokes_admin_flag(self, engine, command_service):
        requirement = Requirement.system(SystemRole.ORGANIZATION_ADMIN)
        assert await engine.authorize_system(requirement, 'dave')

        assert await command_service.delete_organization(ORG_7) is True

        assert not await engine.authorize_system(requirement, 'dave')

    async def test_organization_deletion_revokes_derived_project_access(self, engine, command_service):
        requirement = Requirement.project(ProjectRole.VIEWER)
        assert await engine.authorize_project(requirement, 'alice', project_context())

        await command_service.delete_organization(ORG_1)

        assert not await engine.authorize_project(requirement, 'alice', project_context())

    async def test_project_role_change(self, engine, command_service):
        requirement = Requirement.project(ProjectRole.ADMIN)
        assert not await engine.authorize_project(requirement, 'carol', project_context())

        await command_service.change_project_member_role(PROJECT_1, 'carol', ProjectRole.ADMIN)

        assert await engine.authorize_project(requirement, 'carol', project_context())

    async def test_project_member_added(self, engine, command_service):
        requirement = Requirement.project(ProjectRole.MEMBER)
        assert not await engine.authorize_project(requirement, 'frank', project_context())

        await command_service.add_project_member(PROJECT_1, 'frank', ProjectRole.MEMBER)

        assert await engine.authorize_project(requirement, 'frank', project_context())

    async def test_system_admin_revoked(self, engine, command_service):
        requirement = Requirement.system(SystemRole.SYSTEM_ADMIN)
        assert await engine.authorize_system(requirement, 'erin')

        assert await command_service.revoke_system_admin('erin') is True

        assert not await engine.authorize_system(requirement, 'erin')

    async def test_other_subjects_keep_their_entries(self, engine, command_service, memory_cache):
        requirement = Requirement.organization(OrganizationRole.VIEWER)
        await engine.authorize_organization(requirement, 'bob', org_context())

        await command_service.remove_organization_member(ORG_1, 'frank')

        assert await memory_cache.get(Scope.ORGANIZATION, 'bob', ORG_1) is not None

    async def test_command_logged(self, command_service, log_output):
        await command_service.add_project_member(PROJECT_1, 'frank', ProjectRole.VIEWER)

        events = [entry['event'] for entry in log_output.entries if entry['log_level'] == 'info']
        assert events == ["Project member added"]


class TestOrganizationLimits:
    """Member and project limits are checked before the write."""

    @pytest.fixture
    async def small_org(self, command_service):
        organization_id = uuid.uuid4()
        await command_service.create_organization(
            organization_id, 'Small Org', created_by='owner', max_members=2, max_projects=1
        )
        return organization_id

    async def test_member_limit(self, command_service, role_store, small_org):
        assert await command_service.can_add_member(small_org)
        await command_service.add_organization_member(small_org, 'alice', OrganizationRole.MEMBER)
        assert not await command_service.can_add_member(small_org)

        with pytest.raises(OrganizationLimitError) as exc_info:
            await command_service.add_organization_member(small_org, 'bob', OrganizationRole.VIEWER)

        error = exc_info.value
        assert error.error_code is AuthorizationErrorCode.CMD_MEMBER_LIMIT_REACHED
        assert (error.current, error.limit) == (2, 2)
        assert error.http_status == 409
        assert await role_store.get_organization_role(small_org, 'bob') is None

    async def test_removed_members_free_a_slot(self, command_service, small_org):
        await command_service.add_organization_member(small_org, 'alice', OrganizationRole.MEMBER)
        await command_service.remove_organization_member(small_org, 'alice')

        await command_service.add_organization_member(small_org, 'bob', OrganizationRole.VIEWER)

        assert not await command_service.can_add_member(small_org)

    async def test_project_limit(self, command_service, role_store, small_org):
        first, second = uuid.uuid4(), uuid.uuid4()
        await command_service.create_project(first, small_org, 'First')

        with pytest.raises(OrganizationLimitError) as exc_info:
            await command_service.create_project(second, small_org, 'Second')

        assert exc_info.value.error_code is AuthorizationErrorCode.CMD_PROJECT_LIMIT_REACHED
        assert await role_store.get_project_owning_organization(second) is None

    async def test_deleted_project_frees_a_slot(self, command_service, small_org):
        project_id = uuid.uuid4()
        await command_service.create_project(project_id, small_org, 'First')
        await command_service.delete_project(project_id)

        assert await command_service.can_create_project(small_org)

    async def test_unknown_organization(self, command_service):
        unknown = uuid.uuid4()
        assert not await command_service.can_add_member(unknown)
        assert not await command_service.can_create_project(unknown)

        with pytest.raises(OrganizationLimitError) as exc_info:
            await command_service.add_organization_member(unknown, 'alice', OrganizationRole.MEMBER)

        assert exc_info.value.error_code is AuthorizationErrorCode.CMD_ORGANIZATION_NOT_FOUND
        assert exc_info.value.http_status == 404

    async def test_rejected_add_does_not_invalidate(self, mock_engine, invalidator):
        writer = AsyncMock()
        writer.get_organization_limits.return_value = OrganizationLimits(max_members=1, max_projects=1)
        writer.count_organization_members.return_value = 1
        service = MembershipCommandService(writer, invalidator)

        with pytest.raises(OrganizationLimitError):
            await service.add_organization_member(ORG_1, 'alice', OrganizationRole.MEMBER)

        writer.add_organization_member.assert_not_awaited()
        mock_engine.invalidate_membership.assert_not_awaited()

    async def test_rejection_logged_with_category(self, command_service, small_org, log_output):
        await command_service.create_project(uuid.uuid4(), small_org, 'First')

        with pytest.raises(OrganizationLimitError):
            await command_service.create_project(uuid.uuid4(), small_org, 'Second')

        entry = log_output.entries[-1]
        assert entry['event'] == "Organization command rejected"
        assert entry['error_code'] == 'CMD_4002'
        assert entry['error_category'] == 'command'

    async def test_safe_response_hides_counts(self, command_service, small_org):
        await command_service.add_organization_member(small_org, 'alice', OrganizationRole.MEMBER)

        with pytest.raises(OrganizationLimitError) as exc_info:
            await command_service.add_organization_member(small_org, 'bob', OrganizationRole.MEMBER)

        body = create_safe_error_response(exc_info.value)
        assert body['error'] == 'Organization limit reached'
        assert body['error_code'] == 'CMD_4001'
        assert 'limit' not in body and 'current' not in body


@pytest.mark.parametrize('error_code, category', [
    (AuthorizationErrorCode.AUTHZ_ROLE_INSUFFICIENT, 'authorization'),
    (AuthorizationErrorCode.EXT_ROLE_STORE_UNAVAILABLE, 'external_service'),
    (AuthorizationErrorCode.CMD_MEMBER_LIMIT_REACHED, 'command'),
    (AuthorizationErrorCode.CFG_INVALID_SETTING, 'configuration'),
])
def test_error_category(error_code, category):
    assert get_error_category(error_code) == category
