"""Calibration settings loading and validation."""

from mirror_control.configs.loader import (
    CalibrationConfig,
    CameraConfig,
    ConfigError,
    LoggingConfig,
    RunnerSettings,
    default_mirror_config,
    load_config,
    load_mirror_config,
)

__all__ = [
    "CalibrationConfig",
    "CameraConfig",
    "ConfigError",
    "LoggingConfig",
    "RunnerSettings",
    "default_mirror_config",
    "load_config",
    "load_mirror_config",
]
