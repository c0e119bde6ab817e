"""
Resource identifier resolution.

Locates the organization or project a request targets. Candidates are tried
in a fixed order and the first well-formed identifier wins:

1. an identifier attached directly to the decision context
2. the scope-specific route parameter (``organizationId`` / ``projectId``)
3. the generic ``id`` route parameter, only when the controller hint names
   the scope's controller (case-insensitive)
4. the scope-specific query parameter
5. the scope-specific header (``X-Organization-Id`` / ``X-Project-Id``)

Malformed candidates are skipped, never raised. When nothing resolves the
resolver returns ``None`` and the caller denies.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

import structlog
from flask import request

from access_control.authz.exceptions import AccessControlConfigurationError
from access_control.authz.roles import Scope

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceLocator:
    """Where a scope's resource identifier may appear in a request."""

    scope: Scope
    route_parameter: str
    controller: str
    query_parameter: str
    header: str
    id_parameter: str = "id"


ORGANIZATION_LOCATOR = ResourceLocator(
    scope=Scope.ORGANIZATION,
    route_parameter="organizationId",
    controller="Organizations",
    query_parameter="organizationId",
    header="X-Organization-Id",
)

PROJECT_LOCATOR = ResourceLocator(
    scope=Scope.PROJECT,
    route_parameter="projectId",
    controller="Projects",
    query_parameter="projectId",
    header="X-Project-Id",
)


@dataclass
class DecisionContext:
    """
    Request-carried inputs for resource resolution.

    ``route_values``, ``query`` and ``headers`` are plain mappings so the
    context can be built from any transport; ``from_flask_request`` builds
    one from the active Flask request. Query values may be lists, in which
    case the first value is used.
    """

    resource: Optional[Union[uuid.UUID, str]] = None
    route_values: Mapping[str, Any] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, Any] = field(default_factory=dict)
    controller: Optional[str] = None

    @classmethod
    def from_flask_request(
        cls,
        resource: Optional[Union[uuid.UUID, str]] = None,
        controller: Optional[str] = None
    ) -> 'DecisionContext':
        """Build a context from the current Flask request; the blueprint name is the controller hint."""
        return cls(
            resource=resource,
            route_values=dict(request.view_args or {}),
            query=request.args,
            headers=request.headers,
            controller=controller if controller is not None else request.blueprint,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Summary for logging; header values are omitted."""
        return {
            'resource': str(self.resource) if self.resource is not None else None,
            'route_keys': sorted(map(str, self.route_values.keys())),
            'query_keys': sorted(map(str, self.query.keys())),
            'controller': self.controller,
        }


def parse_identifier(candidate: Any) -> Optional[uuid.UUID]:
    """Return the candidate as a UUID, or None when it is absent or malformed."""
    if candidate is None:
        return None
    if isinstance(candidate, uuid.UUID):
        return candidate
    text = str(candidate).strip()
    if not text:
        return None
    try:
        return uuid.UUID(text)
    except ValueError:
        return None


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _header_value(headers: Mapping[str, Any], name: str) -> Any:
    value = headers.get(name)
    if value is None:
        # plain dicts are case-sensitive; werkzeug Headers already are not
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    return _first(value)


class ResourceIdentifierResolver:
    """
    Resolves the target resource identifier for organization and project scopes.

    Args:
        locators: Per-scope locations; defaults to the standard organization
            and project locators.
    """

    def __init__(self, locators: Optional[Mapping[Scope, ResourceLocator]] = None):
        self.locators: Dict[Scope, ResourceLocator] = dict(locators) if locators else {
            Scope.ORGANIZATION: ORGANIZATION_LOCATOR,
            Scope.PROJECT: PROJECT_LOCATOR,
        }

    def locator_for(self, scope: Scope) -> ResourceLocator:
        try:
            return self.locators[scope]
        except KeyError:
            raise AccessControlConfigurationError(
                f"No resource locator configured for scope {scope.value}"
            ) from None

    def resolve(self, scope: Scope, context: Optional[DecisionContext]) -> Optional[uuid.UUID]:
        """Return the first well-formed identifier found for ``scope``, or None."""
        locator = self.locator_for(scope)
        if context is None:
            return None

        for source, candidate in self._candidates(locator, context):
            identifier = parse_identifier(candidate)
            if identifier is not None:
                logger.debug(
                    "Resource identifier resolved",
                    scope=scope.value,
                    source=source,
                    resource_id=str(identifier)
                )
                return identifier
            if candidate is not None:
                logger.debug(
                    "Skipping malformed resource identifier",
                    scope=scope.value,
                    source=source
                )
        return None

    def _candidates(
        self,
        locator: ResourceLocator,
        context: DecisionContext
    ) -> Iterator[Tuple[str, Any]]:
        yield 'resource', context.resource
        yield 'route', context.route_values.get(locator.route_parameter)

        controller = context.controller
        if controller and controller.lower() == locator.controller.lower():
            yield 'route_id', context.route_values.get(locator.id_parameter)

        yield 'query', _first(context.query.get(locator.query_parameter))
        yield 'header', _header_value(context.headers, locator.header)
