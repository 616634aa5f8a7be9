"""Configuration loader for mirror calibration.

Loads and validates ``calibration.yaml`` into typed, frozen dataclasses.
Every tunable of the runner (step-test size, retries, tolerances, staging
strategy), of blob aggregation and of the camera geometry comes from the
config.  All dataclasses have defaults equal to the shipped YAML so tests
and library callers can construct them directly.

Usage::

    from mirror_control.configs.loader import load_config
    cfg = load_config()                            # default path
    cfg = load_config("/custom/calibration.yaml")  # explicit path
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mirror_core.utils.fs import load_yaml
from mirror_core.utils.space import ARRAY_ROTATIONS, DEFAULT_CAMERA_ASPECT
from mirror_control.calibration.aggregation import DetectionThresholds
from mirror_control.calibration.blueprint import RobustTileSizeConfig
from mirror_control.calibration.bounds import MOTOR_MAX_POSITION_STEPS
from mirror_control.calibration.expected_position import Roi
from mirror_control.calibration.staging import StagingPosition
from mirror_control.calibration.types import (
    AxisAssignment,
    GridSize,
    MirrorConfig,
    Motor,
    TileAddress,
)

logger = logging.getLogger(__name__)

RUNNER_MODES = ("auto", "step")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunnerSettings:
    """Calibration runner behaviour.

    ``max_blob_distance_threshold`` and ``first_tile_tolerance`` are radii
    in viewport units around the expected blob position; the looser one
    applies until the first tile has been measured.
    """

    delta_steps: int = 1200
    grid_gap_normalized: float = 0.0
    sample_timeout_ms: int = 1500
    max_detection_retries: int = 5
    retry_delay_ms: int = 150
    max_blob_distance_threshold: float = 0.15
    first_tile_tolerance: float = 0.25
    mode: str = "auto"
    staging_position: StagingPosition = StagingPosition.NEAREST_CORNER
    robust_tile_size: RobustTileSizeConfig = field(default_factory=RobustTileSizeConfig)
    array_rotation: int = 0
    roi: Roi = field(default_factory=Roi)


@dataclass(frozen=True)
class CameraConfig:
    """Camera geometry."""

    aspect: float = DEFAULT_CAMERA_ASPECT
    rotation: int = 0
    roi: Roi = field(default_factory=Roi)


@dataclass(frozen=True)
class LoggingConfig:
    """Arguments forwarded to ``setup_logging``."""

    level: str = "INFO"
    file: str | None = None
    json: bool = False
    color: bool = True
    rotate: dict[str, Any] | None = None


@dataclass(frozen=True)
class CalibrationConfig:
    """Top-level calibration configuration."""

    runner: RunnerSettings = field(default_factory=RunnerSettings)
    detection: DetectionThresholds = field(default_factory=DetectionThresholds)
    camera: CameraConfig = field(default_factory=CameraConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def robust_tile_size(self) -> RobustTileSizeConfig:
        return self.runner.robust_tile_size


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_config(cfg: CalibrationConfig) -> None:
    """Validate ranges and cross-field consistency.

    Raises
    ------
    ConfigError
        On any invalid value or combination.
    """
    r = cfg.runner
    if r.mode not in RUNNER_MODES:
        raise ConfigError(f"runner.mode must be one of {RUNNER_MODES}, got '{r.mode}'")
    if r.delta_steps <= 0:
        raise ConfigError(f"runner.delta_steps must be positive, got {r.delta_steps}")
    if r.max_detection_retries < 1:
        raise ConfigError(
            f"runner.max_detection_retries must be >= 1, got {r.max_detection_retries}"
        )
    if r.sample_timeout_ms <= 0:
        raise ConfigError(
            f"runner.sample_timeout_ms must be positive, got {r.sample_timeout_ms}"
        )
    if r.retry_delay_ms < 0:
        raise ConfigError(f"runner.retry_delay_ms must be >= 0, got {r.retry_delay_ms}")
    if r.max_blob_distance_threshold <= 0 or r.first_tile_tolerance <= 0:
        raise ConfigError("Blob distance tolerances must be positive")
    if not 0.0 <= r.grid_gap_normalized <= 0.5:
        logger.warning(
            "runner.grid_gap_normalized=%.3f outside [0, 0.5]; it will be clamped",
            r.grid_gap_normalized,
        )
    if r.delta_steps > MOTOR_MAX_POSITION_STEPS:
        logger.warning(
            "runner.delta_steps=%d exceeds motor range; step tests will be clamped",
            r.delta_steps,
        )

    if cfg.camera.rotation not in ARRAY_ROTATIONS:
        raise ConfigError(
            f"camera.rotation must be one of {ARRAY_ROTATIONS}, got {cfg.camera.rotation}"
        )
    if cfg.camera.aspect <= 0:
        raise ConfigError(f"camera.aspect must be positive, got {cfg.camera.aspect}")

    d = cfg.detection
    if d.min_samples < 1:
        raise ConfigError(f"detection.min_samples must be >= 1, got {d.min_samples}")
    if d.capture_delay_ms < 0 or d.poll_interval_ms <= 0:
        raise ConfigError("detection delays must be non-negative (poll interval positive)")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _parse_roi(data: dict[str, Any] | None) -> Roi:
    if not data:
        return Roi()
    return Roi(
        x=float(data["x"]),
        y=float(data["y"]),
        width=float(data["width"]),
        height=float(data["height"]),
    )


def default_mirror_config(grid_size: GridSize) -> MirrorConfig:
    """Conventional wiring: one controller per row, axes ``2c`` / ``2c + 1``."""
    config: MirrorConfig = {}
    for address in grid_size.addresses():
        controller = f"node-{address.row}"
        config[address.key] = AxisAssignment(
            x=Motor(controller, address.col * 2),
            y=Motor(controller, address.col * 2 + 1),
        )
    return config


def _parse_motor(data: dict[str, Any] | None) -> Motor | None:
    if not data:
        return None
    return Motor(controller_id=str(data["controller"]), axis_index=int(data["axis"]))


def load_mirror_config(path: str | Path) -> MirrorConfig:
    """Load tile -> motor wiring from YAML.

    Expected layout::

        tiles:
          "0-0":
            x: {controller: node-0, axis: 0}
            y: {controller: node-0, axis: 1}

    A tile may omit an axis; it is then skipped by calibration.

    Raises
    ------
    ConfigError
        On malformed entries.
    FileNotFoundError
        If *path* does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Wiring file not found: {path}")
    data = load_yaml(path) or {}
    try:
        config: MirrorConfig = {}
        for key, entry in (data.get("tiles") or {}).items():
            TileAddress.from_key(str(key))
            entry = entry or {}
            config[str(key)] = AxisAssignment(
                x=_parse_motor(entry.get("x")),
                y=_parse_motor(entry.get("y")),
            )
    except KeyError as exc:
        raise ConfigError(f"Missing required wiring key: {exc}") from exc
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Invalid wiring entry in {path}: {exc}") from exc
    logger.info("Loaded wiring for %d tile(s) from %s", len(config), path)
    return config


def load_config(path: str | Path | None = None) -> CalibrationConfig:
    """Load and validate calibration configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``calibration.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    CalibrationConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    if path is None:
        path = Path(__file__).parent / "calibration.yaml"
    else:
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    data: dict[str, Any] = load_yaml(path)
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")

    try:
        # -- camera -----------------------------------------------------------
        cam = data.get("camera", {})
        camera = CameraConfig(
            aspect=float(cam.get("aspect", DEFAULT_CAMERA_ASPECT)),
            rotation=int(cam.get("rotation", 0)),
            roi=_parse_roi(cam.get("roi")),
        )

        # -- robust tile size -------------------------------------------------
        rts = data.get("robust_tile_size", {})
        robust = RobustTileSizeConfig(
            enabled=bool(rts.get("enabled", True)),
            mad_threshold=float(rts.get("mad_threshold", 3.0)),
        )

        # -- runner -----------------------------------------------------------
        rd = data["runner"]
        runner = RunnerSettings(
            delta_steps=int(rd["delta_steps"]),
            grid_gap_normalized=float(rd.get("grid_gap_normalized", 0.0)),
            sample_timeout_ms=int(rd["sample_timeout_ms"]),
            max_detection_retries=int(rd["max_detection_retries"]),
            retry_delay_ms=int(rd["retry_delay_ms"]),
            max_blob_distance_threshold=float(rd["max_blob_distance_threshold"]),
            first_tile_tolerance=float(rd["first_tile_tolerance"]),
            mode=str(rd.get("mode", "auto")),
            staging_position=StagingPosition(rd.get("staging_position", "nearest-corner")),
            robust_tile_size=robust,
            array_rotation=camera.rotation,
            roi=camera.roi,
        )

        # -- detection --------------------------------------------------------
        dd = data.get("detection", {})
        detection = DetectionThresholds(
            min_samples=int(dd.get("min_samples", 5)),
            max_median_deviation_pt=float(dd.get("max_median_deviation_pt", 0.005)),
            ignore_sample_above_deviation_pt=float(
                dd.get("ignore_sample_above_deviation_pt", 0.1)
            ),
            capture_delay_ms=int(dd.get("capture_delay_ms", 100)),
            poll_interval_ms=int(dd.get("poll_interval_ms", 50)),
        )

        # -- logging ----------------------------------------------------------
        ld = data.get("logging", {})
        log_cfg = LoggingConfig(
            level=str(ld.get("level", "INFO")),
            file=ld.get("file"),
            json=bool(ld.get("json", False)),
            color=bool(ld.get("color", True)),
            rotate=ld.get("rotate"),
        )

        cfg = CalibrationConfig(
            runner=runner,
            detection=detection,
            camera=camera,
            logging=log_cfg,
        )

    except KeyError as exc:
        raise ConfigError(f"Missing required configuration key: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration value: {exc}") from exc

    _validate_config(cfg)
    logger.info(
        "Configuration loaded: mode=%s delta=%d retries=%d staging=%s",
        cfg.runner.mode,
        cfg.runner.delta_steps,
        cfg.runner.max_detection_retries,
        cfg.runner.staging_position.value,
    )
    return cfg
