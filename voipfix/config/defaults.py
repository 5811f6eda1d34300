"""
Default value application for configuration.

This module handles:
- Service toggles (enabled, key injection) with environment overrides
- Poll interval override
- Metrics exposition defaults
"""

import os
from typing import Any, Dict

_TRUTHY = ('1', 'true', 'yes', 'on')
_FALSY = ('0', 'false', 'no', 'off')


def _env_bool(name: str):
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    return None


def apply_service_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply top-level service toggles.

    Environment variables:
    - VOIPFIX_ENABLED: master switch for the controller (default: true)
    - VOIPFIX_KEY_INJECTION: allow synthetic volume-key injection (default: false)

    Environment values win over YAML so the toggle can be flipped without
    editing the file.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    enabled = _env_bool('VOIPFIX_ENABLED')
    if enabled is not None:
        config_data['enabled'] = enabled
    else:
        config_data.setdefault('enabled', True)

    key_injection = _env_bool('VOIPFIX_KEY_INJECTION')
    if key_injection is not None:
        config_data['key_injection'] = key_injection
    else:
        config_data.setdefault('key_injection', False)


def apply_recovery_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply recovery timing overrides.

    Environment variables:
    - VOIPFIX_POLL_INTERVAL_MS: periodic poll tick interval (default: 500)

    Invalid integers are ignored and the YAML/default value is kept.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    recovery_cfg = config_data.get('recovery', {}) or {}

    poll_override = os.getenv('VOIPFIX_POLL_INTERVAL_MS', '').strip()
    if poll_override:
        try:
            recovery_cfg['poll_interval_ms'] = int(poll_override)
        except ValueError:
            pass

    config_data['recovery'] = recovery_cfg


def apply_metrics_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply Prometheus exposition defaults.

    Environment variables:
    - VOIPFIX_METRICS_ENABLED: start the HTTP exposition server (default: false)
    - VOIPFIX_METRICS_PORT: exposition port (default: 9464)
    - VOIPFIX_METRICS_HOST: bind address (default: 127.0.0.1)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    metrics_cfg = config_data.get('metrics', {}) or {}

    enabled = _env_bool('VOIPFIX_METRICS_ENABLED')
    if enabled is not None:
        metrics_cfg['enabled'] = enabled
    else:
        metrics_cfg.setdefault('enabled', False)

    try:
        port_default = metrics_cfg.get('port', 9464)
        metrics_cfg['port'] = int(os.getenv('VOIPFIX_METRICS_PORT', str(port_default)))
    except ValueError:
        metrics_cfg['port'] = 9464

    metrics_cfg.setdefault('host', os.getenv('VOIPFIX_METRICS_HOST', '127.0.0.1'))

    config_data['metrics'] = metrics_cfg


def apply_logging_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply logging defaults.

    Environment variables:
    - LOG_LEVEL: overrides logging.level (default: info)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    logging_cfg = config_data.get('logging', {}) or {}
    level = os.getenv('LOG_LEVEL', '').strip()
    if level:
        logging_cfg['level'] = level.lower()
    else:
        logging_cfg.setdefault('level', 'info')
    config_data['logging'] = logging_cfg
