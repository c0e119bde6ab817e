"""
Flask integration for the authorization engine.

Provides the ``AccessControl`` extension and route decorators that evaluate a
role requirement before the view runs:

    access_control = AccessControl(app, engine=engine)

    @projects.route('/<uuid:projectId>/tickets', methods=['POST'])
    @login_required
    @require_project_role(ProjectRole.MEMBER)
    async def create_ticket(projectId):
        ...

The resource identifier is resolved from the current request (route
parameters, query string, headers) with the blueprint name as the controller
hint. A deny raises ``AccessDeniedException``, which the extension renders as
a generic 403 response; the deny reason only reaches the logs.
"""

import inspect
from functools import wraps
from typing import Any, Callable, Optional, TypeVar, Union
from uuid import UUID

import structlog
from flask import Flask, Response, current_app, g, jsonify, request
from flask_login import current_user

from access_control.authz.engine import AuthorizationDecision, AuthorizationEngine
from access_control.authz.exceptions import AccessDeniedException, create_safe_error_response
from access_control.authz.resolver import DecisionContext
from access_control.authz.roles import OrganizationRole, ProjectRole, Requirement, SystemRole
from access_control.config.settings import config_from_mapping, create_authorization_engine
from access_control.monitoring.logging import clear_correlation_id, set_correlation_id

logger = structlog.get_logger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

EXTENSION_KEY = 'access_control'
CORRELATION_HEADER = 'X-Correlation-ID'


def current_user_subject() -> Optional[str]:
    """Subject of the Flask-Login ``current_user``, or None when anonymous."""
    if not hasattr(current_app, 'login_manager'):
        return None
    user = current_user
    if user is None or not user.is_authenticated:
        return None
    subject = user.get_id()
    return str(subject) if subject else None


class AccessControl:
    """
    Flask extension holding the authorization engine for an application.

    Args:
        app: Flask application (or call ``init_app`` later)
        engine: Authorization engine; built from ``app.config`` layered over
            the environment configuration when omitted
        subject_loader: Callable returning the authenticated subject id;
            defaults to the Flask-Login current user
    """

    def __init__(
        self,
        app: Optional[Flask] = None,
        engine: Optional[AuthorizationEngine] = None,
        subject_loader: Optional[Callable[[], Optional[str]]] = None
    ):
        self.engine = engine
        self.subject_loader = subject_loader or current_user_subject

        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        if self.engine is None:
            self.engine = create_authorization_engine(config_from_mapping(app.config))

        app.extensions[EXTENSION_KEY] = self
        app.register_error_handler(AccessDeniedException, self._handle_access_denied)
        app.before_request(self._bind_correlation_id)
        app.teardown_request(self._clear_correlation_id)

        logger.info(
            "Access control extension initialized",
            app=app.name,
            cache_backend=self.engine.cache.backend_name
        )

    @staticmethod
    def _bind_correlation_id() -> None:
        g.correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))

    @staticmethod
    def _clear_correlation_id(exc: Optional[BaseException] = None) -> None:
        clear_correlation_id()

    @staticmethod
    def _handle_access_denied(error: AccessDeniedException) -> Response:
        response = jsonify(create_safe_error_response(error))
        response.status_code = error.http_status
        return response

    async def authorize(
        self,
        requirement: Requirement,
        resource: Optional[Union[UUID, str]] = None,
        controller: Optional[str] = None
    ) -> AuthorizationDecision:
        """Evaluate ``requirement`` for the current user against the current request."""
        subject = self.subject_loader()
        context = DecisionContext.from_flask_request(resource=resource, controller=controller)
        return await self.engine.authorize(requirement, subject, context)

    async def enforce(
        self,
        requirement: Requirement,
        resource: Optional[Union[UUID, str]] = None,
        controller: Optional[str] = None
    ) -> AuthorizationDecision:
        """Like ``authorize`` but raise ``AccessDeniedException`` on deny."""
        decision = await self.authorize(requirement, resource=resource, controller=controller)
        if not decision:
            raise AccessDeniedException(reason=decision.reason, scope=decision.scope.value)
        return decision


def get_access_control() -> AccessControl:
    try:
        return current_app.extensions[EXTENSION_KEY]
    except KeyError:
        raise RuntimeError("AccessControl extension is not initialized for this application") from None


def require_role(
    requirement: Requirement,
    resource_param: Optional[str] = None,
    controller: Optional[str] = None
) -> Callable[[F], F]:
    """
    Decorator enforcing ``requirement`` before the view runs.

    Args:
        requirement: Scope and minimum role
        resource_param: View argument holding the resource id, used before
            any other request location
        controller: Controller hint overriding the blueprint name
    """
    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            resource = kwargs.get(resource_param) if resource_param else None
            await get_access_control().enforce(requirement, resource=resource, controller=controller)

            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        return wrapper
    return decorator


def require_organization_role(
    minimum_role: OrganizationRole,
    resource_param: Optional[str] = None,
    controller: Optional[str] = None
) -> Callable[[F], F]:
    return require_role(Requirement.organization(minimum_role), resource_param, controller)


def require_project_role(
    minimum_role: ProjectRole,
    resource_param: Optional[str] = None,
    controller: Optional[str] = None
) -> Callable[[F], F]:
    return require_role(Requirement.project(minimum_role), resource_param, controller)


def require_system_role(minimum_role: SystemRole) -> Callable[[F], F]:
    return require_role(Requirement.system(minimum_role))
