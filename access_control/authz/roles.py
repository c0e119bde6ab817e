"""
Role hierarchy and derivation rules.

Each scope owns a totally ordered role enumeration. Roles compare only with
roles of the same enumeration; comparing an organization role with a project
role is a programming error and raises ``TypeError``.

Pure functions only: no I/O, no logging.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from access_control.authz.exceptions import (
    AccessControlConfigurationError,
    AuthorizationErrorCode,
)


class OrderedRole(Enum):
    """
    Base for role enumerations ordered by declaration (least privileged first).
    """

    @property
    def ordinal(self) -> int:
        return type(self)._member_names_.index(self.name)

    def _comparable(self, other: Any) -> bool:
        return type(other) is type(self)

    def __ge__(self, other):
        if not self._comparable(other):
            return NotImplemented
        return self.ordinal >= other.ordinal

    def __gt__(self, other):
        if not self._comparable(other):
            return NotImplemented
        return self.ordinal > other.ordinal

    def __le__(self, other):
        if not self._comparable(other):
            return NotImplemented
        return self.ordinal <= other.ordinal

    def __lt__(self, other):
        if not self._comparable(other):
            return NotImplemented
        return self.ordinal < other.ordinal

    @classmethod
    def parse(cls, value: Union["OrderedRole", str, int, None]) -> Optional["OrderedRole"]:
        """
        Parse a stored role into a member of this enumeration.

        Accepts a member, its name or value in any case, or an integer
        ordinal as persisted by older schemas. Anything else yields ``None``
        so unknown roles never grant access.
        """
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
            return None
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls.parse(int(text))
            lowered = text.lower()
            for member in cls:
                if member.value.lower() == lowered or member.name.lower() == lowered:
                    return member
        return None


class OrganizationRole(OrderedRole):
    VIEWER = "Viewer"
    MEMBER = "Member"
    MANAGER = "Manager"
    ADMIN = "Admin"


class ProjectRole(OrderedRole):
    VIEWER = "Viewer"
    MEMBER = "Member"
    ADMIN = "Admin"


class SystemRole(OrderedRole):
    USER = "User"
    ORGANIZATION_ADMIN = "OrganizationAdmin"
    SYSTEM_ADMIN = "SystemAdmin"


class Scope(Enum):
    """Tier at which a role applies."""

    SYSTEM = "System"
    ORGANIZATION = "Organization"
    PROJECT = "Project"

    @property
    def role_type(self) -> Type[OrderedRole]:
        return _SCOPE_ROLE_TYPES[self]


_SCOPE_ROLE_TYPES: Dict[Scope, Type[OrderedRole]] = {
    Scope.SYSTEM: SystemRole,
    Scope.ORGANIZATION: OrganizationRole,
    Scope.PROJECT: ProjectRole,
}


@dataclass(frozen=True)
class Requirement:
    """
    Minimum role a caller must hold in a scope.

    Constructed once per protected operation. A role that does not belong to
    the scope is rejected at construction time.
    """

    scope: Scope
    minimum_role: OrderedRole

    def __post_init__(self) -> None:
        if not isinstance(self.scope, Scope):
            raise AccessControlConfigurationError(
                f"Requirement scope must be a Scope, got {self.scope!r}",
                error_code=AuthorizationErrorCode.CFG_INVALID_REQUIREMENT
            )
        if not isinstance(self.minimum_role, self.scope.role_type):
            raise AccessControlConfigurationError(
                f"Role {self.minimum_role!r} does not belong to scope {self.scope.value}",
                error_code=AuthorizationErrorCode.CFG_INVALID_REQUIREMENT
            )

    @classmethod
    def organization(cls, minimum_role: OrganizationRole) -> "Requirement":
        return cls(Scope.ORGANIZATION, minimum_role)

    @classmethod
    def project(cls, minimum_role: ProjectRole) -> "Requirement":
        return cls(Scope.PROJECT, minimum_role)

    @classmethod
    def system(cls, minimum_role: SystemRole) -> "Requirement":
        return cls(Scope.SYSTEM, minimum_role)

    def __str__(self) -> str:
        return f"{self.scope.value}:{self.minimum_role.value}"


def sufficient(scope: Scope, held: Optional[OrderedRole], required: OrderedRole) -> bool:
    """
    Return True when ``held`` meets or exceeds ``required`` within ``scope``.

    A missing role is never sufficient. Roles from another scope raise
    ``AccessControlConfigurationError``.
    """
    role_type = scope.role_type
    if not isinstance(required, role_type):
        raise AccessControlConfigurationError(
            f"Required role {required!r} does not belong to scope {scope.value}",
            error_code=AuthorizationErrorCode.CFG_INVALID_REQUIREMENT
        )
    if held is None:
        return False
    if not isinstance(held, role_type):
        raise AccessControlConfigurationError(
            f"Held role {held!r} does not belong to scope {scope.value}",
            error_code=AuthorizationErrorCode.CFG_INVALID_REQUIREMENT
        )
    return held.ordinal >= required.ordinal


_ORGANIZATION_TO_PROJECT_ROLE: Dict[OrganizationRole, ProjectRole] = {
    OrganizationRole.ADMIN: ProjectRole.ADMIN,
    OrganizationRole.MANAGER: ProjectRole.ADMIN,
    OrganizationRole.MEMBER: ProjectRole.MEMBER,
    OrganizationRole.VIEWER: ProjectRole.VIEWER,
}


def derive_project_role(organization_role: Optional[OrganizationRole]) -> Optional[ProjectRole]:
    """
    Map an organization role to the project role it implies.

    Organization admins and managers act as project admins, members as
    project members, viewers as project viewers. Anything else derives no
    access.
    """
    if not isinstance(organization_role, OrganizationRole):
        return None
    return _ORGANIZATION_TO_PROJECT_ROLE.get(organization_role)
