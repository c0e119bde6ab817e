"""Configuration for the access control package."""

from access_control.config.settings import (
    BaseConfig,
    DevelopmentConfig,
    ProductionConfig,
    TestingConfig,
    config_from_mapping,
    create_authorization_engine,
    create_resolver,
    get_config,
    validate_configuration,
)

__all__ = [
    'BaseConfig',
    'DevelopmentConfig',
    'ProductionConfig',
    'TestingConfig',
    'config_from_mapping',
    'create_authorization_engine',
    'create_resolver',
    'get_config',
    'validate_configuration',
]
