"""Role store adapters: contracts, in-memory store and MongoDB store."""

from access_control.store.base import Membership, MembershipWriter, OrganizationLimits, RoleStore
from access_control.store.memory import InMemoryRoleStore
from access_control.store.mongo import MongoRoleStore

__all__ = [
    'InMemoryRoleStore',
    'Membership',
    'MembershipWriter',
    'MongoRoleStore',
    'OrganizationLimits',
    'RoleStore',
]
