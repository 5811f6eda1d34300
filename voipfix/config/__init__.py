"""
Configuration package for the VoIP audio-recovery controller.

This package contains:
- loaders: YAML file loading and parsing
- defaults: Default value application and environment overrides
- models: Pydantic models, load_config and validate_config
"""

from voipfix.config.models import (
    AppConfig,
    LoggingConfig,
    MetricsConfig,
    RecoveryConfig,
    load_config,
    validate_config,
)

__all__ = [
    'AppConfig',
    'LoggingConfig',
    'MetricsConfig',
    'RecoveryConfig',
    'load_config',
    'validate_config',
]
