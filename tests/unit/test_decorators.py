"""
Unit tests for the Flask extension and route decorators.

Views are async and run through Flask's async support; the test client is
synchronous, so the engine is built over a store seeded outside the test
event loop.
"""

import asyncio
import uuid

import pytest
from flask import Blueprint, Flask, g, jsonify
from flask_login import LoginManager, UserMixin

from access_control.authz.decorators import (
    AccessControl,
    current_user_subject,
    get_access_control,
    require_organization_role,
    require_project_role,
    require_system_role,
)
from access_control.authz.engine import AuthorizationEngine
from access_control.authz.exceptions import AuthorizationErrorCode
from access_control.authz.roles import OrganizationRole, ProjectRole, Requirement, SystemRole
from access_control.cache.memory import InMemoryDecisionCache
from access_control.store.memory import InMemoryRoleStore
from tests.fixtures import ORG_1, ORG_7, PROJECT_1, seed_role_store


class User(UserMixin):

    def __init__(self, user_id):
        self.id = user_id


@pytest.fixture
def seeded_engine():
    store = asyncio.run(seed_role_store(InMemoryRoleStore()))
    return AuthorizationEngine(store, cache=InMemoryDecisionCache())


def create_app(engine):
    app = Flask(__name__)
    app.config['TESTING'] = True

    login_manager = LoginManager(app)

    @login_manager.request_loader
    def load_user_from_request(req):
        user_id = req.headers.get('X-User')
        return User(user_id) if user_id else None

    organizations = Blueprint('Organizations', __name__, url_prefix='/organizations')
    projects = Blueprint('Projects', __name__, url_prefix='/projects')
    admin = Blueprint('Admin', __name__, url_prefix='/admin')

    @organizations.route('/<organizationId>/settings')
    @require_organization_role(OrganizationRole.ADMIN)
    async def organization_settings(organizationId):
        return jsonify({'organization': organizationId})

    @organizations.route('/<id>')
    @require_organization_role(OrganizationRole.VIEWER)
    def show_organization(id):
        return jsonify({'organization': id, 'correlation_id': g.correlation_id})

    @projects.route('/<projectId>/tickets', methods=['POST'])
    @require_project_role(ProjectRole.MEMBER)
    async def create_ticket(projectId):
        return jsonify({'created': True}), 201

    @projects.route('/<project>/board')
    @require_project_role(ProjectRole.VIEWER, resource_param='project')
    async def project_board(project):
        return jsonify({'project': project})

    @admin.route('/organizations')
    @require_system_role(SystemRole.ORGANIZATION_ADMIN)
    async def list_organizations():
        return jsonify({'organizations': []})

    app.register_blueprint(organizations)
    app.register_blueprint(projects)
    app.register_blueprint(admin)

    AccessControl(app, engine=engine)
    return app


@pytest.fixture
def client(seeded_engine):
    return create_app(seeded_engine).test_client()


class TestRouteDecorators:

    def test_allowed_request_reaches_view(self, client):
        response = client.get(f'/organizations/{ORG_1}/settings', headers={'X-User': 'bob'})

        assert response.status_code == 200
        assert response.get_json() == {'organization': str(ORG_1)}

    def test_denied_request_gets_generic_403(self, client):
        response = client.get(f'/organizations/{ORG_1}/settings', headers={'X-User': 'alice'})

        assert response.status_code == 403
        body = response.get_json()
        assert set(body) == {'error', 'error_code', 'error_id', 'timestamp'}
        assert body['error'] == 'Access denied'
        assert body['error_code'] == AuthorizationErrorCode.AUTHZ_ACCESS_DENIED.value

    def test_deny_reason_not_exposed(self, client):
        anonymous = client.get(f'/organizations/{ORG_1}/settings')
        insufficient = client.get(f'/organizations/{ORG_1}/settings', headers={'X-User': 'alice'})
        unknown = client.get(f'/organizations/{uuid.uuid4()}/settings', headers={'X-User': 'alice'})

        for response in (anonymous, insufficient, unknown):
            assert response.status_code == 403
            assert response.get_json()['error_code'] == AuthorizationErrorCode.AUTHZ_ACCESS_DENIED.value
            assert 'insufficient' not in response.get_data(as_text=True)

    def test_generic_id_resolved_through_blueprint_name(self, client):
        response = client.get(f'/organizations/{ORG_1}', headers={'X-User': 'frank'})
        assert response.status_code == 200

    def test_sync_view_is_wrapped(self, client):
        response = client.get(f'/organizations/{ORG_7}', headers={'X-User': 'frank'})
        assert response.status_code == 403

    def test_project_derivation_through_route(self, client):
        response = client.post(f'/projects/{PROJECT_1}/tickets', headers={'X-User': 'alice'})
        assert response.status_code == 201

    def test_project_denied_for_viewer(self, client):
        response = client.post(f'/projects/{PROJECT_1}/tickets', headers={'X-User': 'frank'})
        assert response.status_code == 403

    def test_resource_param(self, client):
        allowed = client.get(f'/projects/{PROJECT_1}/board', headers={'X-User': 'frank'})
        denied = client.get(f'/projects/{PROJECT_1}/board', headers={'X-User': 'dave'})

        assert allowed.status_code == 200
        assert denied.status_code == 403

    def test_malformed_route_value_denied(self, client):
        response = client.get('/projects/not-a-guid/board', headers={'X-User': 'frank'})
        assert response.status_code == 403

    def test_system_requirement(self, client):
        assert client.get('/admin/organizations', headers={'X-User': 'dave'}).status_code == 200
        assert client.get('/admin/organizations', headers={'X-User': 'erin'}).status_code == 200
        assert client.get('/admin/organizations', headers={'X-User': 'carol'}).status_code == 403


class TestCorrelation:

    def test_correlation_id_taken_from_header(self, client):
        response = client.get(
            f'/organizations/{ORG_1}',
            headers={'X-User': 'frank', 'X-Correlation-ID': 'req-123'}
        )
        assert response.get_json()['correlation_id'] == 'req-123'

    def test_correlation_id_generated_when_absent(self, client):
        response = client.get(f'/organizations/{ORG_1}', headers={'X-User': 'frank'})
        correlation_id = response.get_json()['correlation_id']
        assert uuid.UUID(correlation_id)


class TestExtension:

    def test_extension_registered(self, seeded_engine):
        app = create_app(seeded_engine)

        with app.app_context():
            access_control = get_access_control()

        assert access_control.engine is seeded_engine

    def test_missing_extension(self):
        app = Flask(__name__)
        with app.app_context():
            with pytest.raises(RuntimeError):
                get_access_control()

    def test_init_app_builds_engine_from_app_config(self, mocker):
        mongo_store = mocker.patch('access_control.config.settings.MongoRoleStore')
        app = Flask(__name__)
        app.config['AUTHZ_CACHE_BACKEND'] = 'none'
        app.config['MONGODB_DATABASE'] = 'tickets_ci'

        access_control = AccessControl()
        access_control.init_app(app)

        assert access_control.engine.cache.backend_name == 'none'
        assert mongo_store.from_uri.call_args.args[1] == 'tickets_ci'

    def test_custom_subject_loader(self, seeded_engine):
        app = Flask(__name__)
        access_control = AccessControl(app, engine=seeded_engine, subject_loader=lambda: 'erin')

        with app.test_request_context('/'):
            decision = asyncio.run(access_control.authorize(Requirement.system(SystemRole.SYSTEM_ADMIN)))

        assert decision.allowed

    def test_current_user_subject_without_login_manager(self):
        app = Flask(__name__)
        with app.test_request_context('/'):
            assert current_user_subject() is None

    def test_current_user_subject_anonymous(self, seeded_engine):
        app = create_app(seeded_engine)
        with app.test_request_context('/'):
            assert current_user_subject() is None

    def test_current_user_subject_authenticated(self, seeded_engine):
        app = create_app(seeded_engine)
        with app.test_request_context('/', headers={'X-User': 'carol'}):
            assert current_user_subject() == 'carol'
