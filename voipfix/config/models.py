"""
Configuration models for the VoIP audio-recovery controller.

Pydantic v2 models for validation and type safety. Every timing constant the
controller uses lives in RecoveryConfig so it can be tuned per device from
YAML without touching code.
"""

import os
from typing import List, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from voipfix.config.loaders import resolve_config_path, load_yaml_with_env_expansion
from voipfix.config.defaults import (
    apply_service_defaults,
    apply_recovery_defaults,
    apply_metrics_defaults,
    apply_logging_defaults,
)
from voipfix.logging_config import get_logger

logger = get_logger(__name__)


def _ascending_offsets(name: str, value: List[int]) -> List[int]:
    if any(v < 0 for v in value):
        raise ValueError(f"{name} must not contain negative offsets")
    if list(value) != sorted(value):
        raise ValueError(f"{name} must be in ascending order")
    return value


class RecoveryConfig(BaseModel):
    # Event bus
    poll_interval_ms: int = Field(default=500, gt=0)

    # Steady-state speaker fix
    speaker_debounce_ms: int = Field(default=300, ge=0)
    speaker_fix_offsets_ms: List[int] = Field(default_factory=lambda: [300, 600, 1000])
    volume_restore_delay_ms: int = Field(default=100, ge=0)

    # Call setup phase
    setup_window_ms: int = Field(default=5000, gt=0)
    setup_fix_offsets_ms: List[int] = Field(default_factory=lambda: [300, 600, 1000, 2000, 3000])
    mode_step_ms: int = Field(default=100, ge=0)
    aggressive_step_ms: int = Field(default=100, ge=0)
    speaker_toggle_count: int = Field(default=4, ge=2)
    speaker_toggle_interval_ms: int = Field(default=50, ge=0)

    # Volume-key simulation
    key_simulation_window_ms: int = Field(default=10000, gt=0)
    key_simulation_offsets_ms: List[int] = Field(default_factory=lambda: [300, 800, 1500, 3000, 6000])
    key_press_rounds: int = Field(default=3, ge=1)
    key_press_interval_ms: int = Field(default=150, ge=0)
    key_release_offset_ms: int = Field(default=75, ge=0)
    key_restore_delay_ms: int = Field(default=800, ge=0)
    key_injection_gap_ms: int = Field(default=50, ge=0)

    # Media routing
    media_fix_delay_ms: int = Field(default=300, ge=0)
    media_settle_ms: int = Field(default=100, ge=0)

    # Windows during which the controller ignores its own mode/speaker writes
    mode_settle_ms: int = Field(default=250, ge=0)
    route_settle_ms: int = Field(default=250, ge=0)

    @field_validator('speaker_fix_offsets_ms', 'setup_fix_offsets_ms', 'key_simulation_offsets_ms')
    @classmethod
    def _check_offsets(cls, value: List[int], info) -> List[int]:
        return _ascending_offsets(info.field_name, value)

    @field_validator('speaker_toggle_count')
    @classmethod
    def _even_toggles(cls, value: int) -> int:
        # An even count always ends on the original speaker state
        if value % 2:
            raise ValueError("speaker_toggle_count must be even")
        return value

    @model_validator(mode='after')
    def _release_inside_interval(self):
        if self.key_release_offset_ms > self.key_press_interval_ms:
            raise ValueError("key_release_offset_ms must not exceed key_press_interval_ms")
        return self

    @model_validator(mode='after')
    def _mode_settle_covers_forced_modes(self):
        # Forced NORMAL/IN_COMMUNICATION must stay invisible to audio-mode polling until the next forced write
        for name in ('mode_step_ms', 'media_settle_ms'):
            if self.mode_settle_ms <= getattr(self, name):
                raise ValueError(f"mode_settle_ms must exceed {name}")
        return self


class LoggingConfig(BaseModel):
    """Top-level logging configuration for the voipfix service."""
    level: str = Field(default="info")  # debug|info|warning|error|critical


class MetricsConfig(BaseModel):
    enabled: bool = Field(default=False)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=9464)


class AppConfig(BaseModel):
    enabled: bool = Field(default=True)
    key_injection: bool = Field(default=False)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str = "config/voipfix.yaml") -> AppConfig:
    """
    Load and validate configuration from YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root)

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If values are out of range
    """
    # Phase 1: Load YAML file with environment variable expansion
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)

    # Phase 2: Apply default values and environment overrides
    apply_service_defaults(config_data)
    apply_recovery_defaults(config_data)
    apply_metrics_defaults(config_data)
    apply_logging_defaults(config_data)

    # Phase 3: Validate and return
    return AppConfig(**config_data)


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Check cross-field consistency that the models cannot express alone.

    Returns:
        (errors, warnings): errors block startup, warnings are logged but non-blocking.
    """
    errors: List[str] = []
    warnings: List[str] = []
    rc = config.recovery

    if not rc.speaker_fix_offsets_ms:
        errors.append("recovery.speaker_fix_offsets_ms is empty; speaker changes would never be fixed by the burst")

    late_setup = [d for d in rc.setup_fix_offsets_ms if d >= rc.setup_window_ms]
    if late_setup:
        warnings.append(
            f"Setup fix offsets {late_setup} fall outside the {rc.setup_window_ms}ms setup window and will never fire"
        )

    if rc.speaker_fix_offsets_ms and rc.speaker_fix_offsets_ms[0] < rc.speaker_debounce_ms:
        warnings.append(
            f"First speaker fix attempt ({rc.speaker_fix_offsets_ms[0]}ms) fires before the "
            f"{rc.speaker_debounce_ms}ms debounce elapses"
        )

    if rc.poll_interval_ms > rc.setup_window_ms:
        warnings.append(
            f"Poll interval {rc.poll_interval_ms}ms exceeds the setup window; audio-mode call detection will lag"
        )

    if config.metrics.enabled and not (1024 <= config.metrics.port <= 65535):
        errors.append(f"Metrics port {config.metrics.port} out of valid range (1024-65535)")

    if config.metrics.enabled and config.metrics.host == '0.0.0.0':
        warnings.append("Metrics bound to 0.0.0.0; ensure firewall/segmentation is in place")

    if os.getenv('LOG_LEVEL', config.logging.level).lower() == 'debug':
        warnings.append("Debug logging enabled (every scheduled step is logged)")

    return errors, warnings
