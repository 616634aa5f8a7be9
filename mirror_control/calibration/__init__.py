"""
Calibration module.

Pure calibration math and data: blob aggregation, grid blueprint
inference, per-tile summaries and bounds, staging poses, expected blob
positions, and profile building/persistence.  Nothing here talks to
hardware.
"""

from mirror_control.calibration.aggregation import (
    BlobSample,
    DetectionThresholds,
    aggregate_blob_samples,
)
from mirror_control.calibration.blueprint import (
    RobustTileSizeConfig,
    compute_grid_blueprint,
)
from mirror_control.calibration.profile import (
    build_calibration_profile,
    load_pattern,
    load_profile,
    save_profile,
)
from mirror_control.calibration.summary import compute_calibration_summary
from mirror_control.calibration.types import (
    AxisAssignment,
    CalibrationProfile,
    CalibrationRunSummary,
    GridSize,
    Motor,
    Pattern,
    PatternPoint,
    TileAddress,
    TileStatus,
)

__all__ = [
    "AxisAssignment",
    "BlobSample",
    "CalibrationProfile",
    "CalibrationRunSummary",
    "DetectionThresholds",
    "GridSize",
    "Motor",
    "Pattern",
    "PatternPoint",
    "RobustTileSizeConfig",
    "TileAddress",
    "TileStatus",
    "aggregate_blob_samples",
    "build_calibration_profile",
    "compute_calibration_summary",
    "compute_grid_blueprint",
    "load_pattern",
    "load_profile",
    "save_profile",
]
