"""
Access Control Configuration Classes

Environment-specific settings (Development, Testing, Production) for the
authorization engine, loaded from environment variables via python-dotenv.

Key Components:
- ``BaseConfig`` with decision cache, resolver, role store and logging settings
- ``DevelopmentConfig``, ``TestingConfig`` and ``ProductionConfig`` overrides
- ``get_config`` environment lookup (``ACCESS_CONTROL_ENV``, default ``development``)
- ``validate_configuration`` returning the list of configuration problems
- ``create_authorization_engine`` wiring cache, resolver, role store and
  audit logger from a configuration class

Settings are read from class attributes, so a Flask ``app.config`` can be
layered on top with ``config_from_mapping``.
"""

import dataclasses
import os
from typing import Any, Dict, List, Mapping, Optional, Type

import structlog
from dotenv import load_dotenv

from access_control.authz.engine import AuthorizationEngine
from access_control.authz.exceptions import AccessControlConfigurationError
from access_control.authz.resolver import ORGANIZATION_LOCATOR, PROJECT_LOCATOR, ResourceIdentifierResolver
from access_control.authz.roles import Scope
from access_control.cache import CACHE_BACKENDS, DecisionCache, create_decision_cache
from access_control.monitoring.logging import AuthorizationAuditLogger
from access_control.store.base import RoleStore
from access_control.store.mongo import MongoRoleStore

# Load environment variables early
load_dotenv()

logger = structlog.get_logger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes', 'on')


class BaseConfig:
    """
    Base configuration shared by every environment.
    """

    APP_NAME = os.getenv('APP_NAME', 'access-control')
    ENVIRONMENT = 'base'
    DEBUG = False
    TESTING = False

    # Decision cache
    AUTHZ_CACHE_BACKEND = os.getenv('AUTHZ_CACHE_BACKEND', 'memory')
    AUTHZ_CACHE_TTL_SECONDS = float(os.getenv('AUTHZ_CACHE_TTL_SECONDS', '120'))  # 2 minutes
    AUTHZ_CACHE_MAX_ENTRIES = int(os.getenv('AUTHZ_CACHE_MAX_ENTRIES', '10000'))
    AUTHZ_CACHE_KEY_PREFIX = os.getenv('AUTHZ_CACHE_KEY_PREFIX', 'authz')
    AUTHZ_REDIS_URL = os.getenv('AUTHZ_REDIS_URL')
    AUTHZ_CACHE_RETRY_INTERVAL_SECONDS = float(os.getenv('AUTHZ_CACHE_RETRY_INTERVAL_SECONDS', '300'))  # 5 minutes
    AUTHZ_CACHE_EPOCH_TTL_SECONDS = int(os.getenv('AUTHZ_CACHE_EPOCH_TTL_SECONDS', '86400'))  # 24 hours

    # Resource identifier resolution
    ORGANIZATIONS_CONTROLLER = os.getenv('ORGANIZATIONS_CONTROLLER', ORGANIZATION_LOCATOR.controller)
    PROJECTS_CONTROLLER = os.getenv('PROJECTS_CONTROLLER', PROJECT_LOCATOR.controller)
    ORGANIZATION_ID_HEADER = os.getenv('ORGANIZATION_ID_HEADER', ORGANIZATION_LOCATOR.header)
    PROJECT_ID_HEADER = os.getenv('PROJECT_ID_HEADER', PROJECT_LOCATOR.header)

    # Role store
    MONGODB_URI = os.getenv('MONGODB_URI', 'mongodb://localhost:27017')
    MONGODB_DATABASE = os.getenv('MONGODB_DATABASE', 'ticket_management')

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')
    PERMISSION_AUDIT_LOGGING = _env_bool('PERMISSION_AUDIT_LOGGING', 'true')


class DevelopmentConfig(BaseConfig):
    """Local development: console logs, debug level."""

    ENVIRONMENT = 'development'
    DEBUG = True
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'DEBUG')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'console')


class TestingConfig(BaseConfig):
    """
    Automated tests: in-memory cache, no external services.
    """

    ENVIRONMENT = 'testing'
    TESTING = True
    DEBUG = True
    AUTHZ_CACHE_BACKEND = 'memory'
    AUTHZ_REDIS_URL = None
    MONGODB_DATABASE = 'ticket_management_test'
    LOG_LEVEL = 'DEBUG'
    LOG_FORMAT = 'console'


class ProductionConfig(BaseConfig):
    """Production: shared Redis cache and JSON logs."""

    ENVIRONMENT = 'production'
    AUTHZ_CACHE_BACKEND = os.getenv('AUTHZ_CACHE_BACKEND', 'redis')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'WARNING')
    LOG_FORMAT = 'json'


config_map: Dict[str, Type[BaseConfig]] = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'dev': DevelopmentConfig,
    'test': TestingConfig,
    'prod': ProductionConfig,
}


def get_config(environment: Optional[str] = None) -> Type[BaseConfig]:
    """
    Get configuration class for the specified environment.

    Args:
        environment: Target environment name (defaults to ACCESS_CONTROL_ENV)

    Returns:
        Configuration class for the specified environment

    Raises:
        AccessControlConfigurationError: If environment is not supported
    """
    if environment is None:
        environment = os.getenv('ACCESS_CONTROL_ENV', 'development')

    environment = environment.lower()
    if environment not in config_map:
        raise AccessControlConfigurationError(
            f"Unsupported environment '{environment}'. "
            f"Supported environments: {sorted(set(config_map))}"
        )

    config_class = config_map[environment]
    logger.debug("Configuration class selected", environment=environment, config_class=config_class.__name__)
    return config_class


def config_from_mapping(mapping: Mapping[str, Any], base: Optional[Type[BaseConfig]] = None) -> Type[BaseConfig]:
    """
    Layer upper-case keys of ``mapping`` (e.g. a Flask ``app.config``) over a configuration class.
    """
    base = base or get_config()
    overrides = {key: value for key, value in mapping.items() if key.isupper()}
    return type(f'{base.__name__}FromMapping', (base,), overrides)


def validate_configuration(config: Any) -> List[str]:
    """
    Validate configuration settings and return list of issues.

    Args:
        config: Configuration class or instance to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    issues = []

    backend = str(config.AUTHZ_CACHE_BACKEND).lower()
    if backend not in CACHE_BACKENDS:
        issues.append(f"AUTHZ_CACHE_BACKEND must be one of {', '.join(CACHE_BACKENDS)}")

    if config.AUTHZ_CACHE_TTL_SECONDS <= 0:
        issues.append("AUTHZ_CACHE_TTL_SECONDS must be positive")

    if config.AUTHZ_CACHE_MAX_ENTRIES <= 0:
        issues.append("AUTHZ_CACHE_MAX_ENTRIES must be positive")

    if backend == 'redis':
        if not config.AUTHZ_REDIS_URL:
            issues.append("AUTHZ_REDIS_URL is required when AUTHZ_CACHE_BACKEND is redis")
        if config.AUTHZ_CACHE_EPOCH_TTL_SECONDS <= config.AUTHZ_CACHE_TTL_SECONDS:
            issues.append("AUTHZ_CACHE_EPOCH_TTL_SECONDS must exceed AUTHZ_CACHE_TTL_SECONDS")
        if not config.DEBUG and config.AUTHZ_CACHE_RETRY_INTERVAL_SECONDS < config.AUTHZ_CACHE_TTL_SECONDS:
            issues.append("AUTHZ_CACHE_RETRY_INTERVAL_SECONDS should not be shorter than the cache TTL")

    for key in ('ORGANIZATIONS_CONTROLLER', 'PROJECTS_CONTROLLER', 'ORGANIZATION_ID_HEADER', 'PROJECT_ID_HEADER'):
        if not getattr(config, key, None):
            issues.append(f"{key} must not be empty")

    if str(config.LOG_FORMAT).lower() not in ('json', 'console'):
        issues.append("LOG_FORMAT must be json or console")

    logger.debug("Configuration validation completed", issues_found=len(issues), issues=issues)
    return issues


def create_resolver(config: Any) -> ResourceIdentifierResolver:
    """Resolver with controller names and headers taken from configuration."""
    return ResourceIdentifierResolver({
        Scope.ORGANIZATION: dataclasses.replace(
            ORGANIZATION_LOCATOR,
            controller=config.ORGANIZATIONS_CONTROLLER,
            header=config.ORGANIZATION_ID_HEADER
        ),
        Scope.PROJECT: dataclasses.replace(
            PROJECT_LOCATOR,
            controller=config.PROJECTS_CONTROLLER,
            header=config.PROJECT_ID_HEADER
        ),
    })


def create_authorization_engine(
    config: Optional[Any] = None,
    role_store: Optional[RoleStore] = None,
    cache: Optional[DecisionCache] = None
) -> AuthorizationEngine:
    """
    Build an authorization engine from configuration.

    Args:
        config: Configuration class or instance (defaults to ``get_config()``)
        role_store: Role store; a MongoDB store from ``MONGODB_URI`` when omitted
        cache: Decision cache; built from the ``AUTHZ_CACHE_*`` settings when omitted

    Returns:
        Configured authorization engine

    Raises:
        AccessControlConfigurationError: If the configuration is invalid
    """
    config = config or get_config()

    issues = validate_configuration(config)
    if issues:
        raise AccessControlConfigurationError(f"Configuration validation failed: {'; '.join(issues)}")

    if role_store is None:
        role_store = MongoRoleStore.from_uri(config.MONGODB_URI, config.MONGODB_DATABASE)
    if cache is None:
        cache = create_decision_cache(config)

    engine = AuthorizationEngine(
        role_store=role_store,
        cache=cache,
        resolver=create_resolver(config),
        audit_logger=AuthorizationAuditLogger(enabled=config.PERMISSION_AUDIT_LOGGING),
        cache_ttl=config.AUTHZ_CACHE_TTL_SECONDS
    )
    logger.info(
        "Authorization engine created",
        cache_backend=cache.backend_name,
        role_store=type(role_store).__name__,
        cache_ttl=config.AUTHZ_CACHE_TTL_SECONDS
    )
    return engine


__all__ = [
    'BaseConfig',
    'DevelopmentConfig',
    'TestingConfig',
    'ProductionConfig',
    'config_map',
    'get_config',
    'config_from_mapping',
    'validate_configuration',
    'create_resolver',
    'create_authorization_engine',
]
