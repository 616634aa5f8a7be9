"""Calibration profile building and persistence.

A profile is the durable result of a run: the blueprint, and per tile the
adjusted home, the motor steps that reach it, the measured slopes and the
combined bounds.  Profiles are stored as ``mirror_profile.v1`` YAML and
validated with the schemas in ``mirror_core.utils.validators`` on both
load and save.

Usage::

    profile = build_calibration_profile(summary, GridSize(2, 3), name="wall")
    save_profile(profile, "profiles/wall.yaml")
    profile = load_profile("profiles/wall.yaml")
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mirror_core.utils import fs, validators
from mirror_control.calibration.bounds import (
    MOTOR_MAX_POSITION_STEPS,
    MOTOR_MIN_POSITION_STEPS,
    compute_alignment_target_steps,
)
from mirror_control.calibration.types import (
    AXES,
    AdjustedHome,
    AxisBounds,
    BlobMeasurement,
    BlobPoint,
    BlobStats,
    BlobThresholds,
    Bounds,
    CalibrationProfile,
    CalibrationRunSummary,
    GridBlueprint,
    GridSize,
    Pattern,
    PatternPoint,
    ProfileMetrics,
    ProfileTile,
    Slope,
    StepRange,
    TileStatus,
    Vec2,
)

logger = logging.getLogger(__name__)


def default_step_range() -> dict[str, StepRange]:
    return {
        axis: StepRange(MOTOR_MIN_POSITION_STEPS, MOTOR_MAX_POSITION_STEPS)
        for axis in AXES
    }


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------


def _alignment_home(
    adjusted: AdjustedHome | None,
    offset: Vec2 | None,
    slope: Slope | None,
) -> AdjustedHome | None:
    """Attach the alignment steps that move the blob onto ``adjusted``."""
    if adjusted is None:
        return None
    steps_x = steps_y = None
    if offset is not None and slope is not None:
        steps_x = compute_alignment_target_steps(-offset.x, slope.x)
        steps_y = compute_alignment_target_steps(-offset.y, slope.y)
    return AdjustedHome(x=adjusted.x, y=adjusted.y, steps_x=steps_x, steps_y=steps_y)


def build_calibration_profile(
    summary: CalibrationRunSummary,
    grid_size: GridSize,
    name: str = "",
    rotation: int = 0,
    aspect: float | None = None,
    profile_id: str | None = None,
) -> CalibrationProfile:
    """Convert a run summary into a persistable profile.

    Parameters
    ----------
    summary : CalibrationRunSummary
        Output of ``compute_calibration_summary``.
    grid_size : GridSize
        Grid dimensions of the run.
    name : str
        Human-readable profile name.
    rotation : int
        Array rotation used during the run.
    aspect : float, optional
        Camera aspect; derived from the summary's camera when omitted.
    profile_id : str, optional
        Explicit id; a random hex id otherwise.

    Returns
    -------
    CalibrationProfile
        Profile with per-status metrics filled in.
    """
    if aspect is None and summary.camera is not None:
        aspect = summary.camera.source_width / summary.camera.source_height

    tiles: dict[str, ProfileTile] = {}
    counts = {status: 0 for status in TileStatus}
    for key, entry in summary.tiles.items():
        counts[entry.status] += 1
        home = entry.home_measurement
        tiles[key] = ProfileTile(
            key=key,
            row=entry.tile.row,
            col=entry.tile.col,
            status=entry.status,
            error=entry.error,
            warnings=list(entry.warnings),
            adjusted_home=_alignment_home(
                entry.adjusted_home, entry.home_offset, entry.step_to_displacement
            ),
            home_offset=entry.home_offset,
            home_measurement=home,
            step_to_displacement=entry.step_to_displacement,
            size_delta_at_step_test=entry.size_delta_at_step_test,
            blob_size=home.size if home is not None else None,
            combined_bounds=entry.combined_bounds,
            step_range=default_step_range(),
        )

    metrics = ProfileMetrics(
        total_tiles=len(tiles),
        completed_tiles=counts[TileStatus.COMPLETED],
        failed_tiles=counts[TileStatus.FAILED],
        skipped_tiles=counts[TileStatus.SKIPPED],
    )
    profile = CalibrationProfile(
        id=profile_id or uuid.uuid4().hex[:12],
        name=name,
        created_at=datetime.now(timezone.utc).isoformat(),
        grid_size=grid_size,
        array_rotation=rotation,
        camera_aspect=aspect,
        blueprint=summary.blueprint,
        delta_steps=summary.delta_steps,
        tiles=tiles,
        metrics=metrics,
    )
    logger.info(
        "Built profile %s: %d/%d tiles completed, %d failed",
        profile.id, metrics.completed_tiles, metrics.total_tiles, metrics.failed_tiles,
    )
    return profile


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _bounds_to_dict(bounds: Bounds | None) -> dict[str, Any] | None:
    if bounds is None:
        return None
    return {
        "x": {"min": bounds.x.min, "max": bounds.x.max},
        "y": {"min": bounds.y.min, "max": bounds.y.max},
    }


def _measurement_to_dict(m: BlobMeasurement | None) -> dict[str, Any] | None:
    if m is None:
        return None
    stats = None
    if m.stats is not None:
        stats = {
            "sample_count": m.stats.sample_count,
            "min_samples": m.stats.thresholds.min_samples,
            "max_median_deviation_pt": m.stats.thresholds.max_median_deviation_pt,
            "median": vars(m.stats.median).copy(),
            "mad": vars(m.stats.mad).copy(),
            "passed": m.stats.passed,
        }
    return {
        "x": m.x,
        "y": m.y,
        "size": m.size,
        "response": m.response,
        "captured_at": m.captured_at,
        "source_width": m.source_width,
        "source_height": m.source_height,
        "stats": stats,
    }


def _tile_to_dict(tile: ProfileTile) -> dict[str, Any]:
    return {
        "key": tile.key,
        "row": tile.row,
        "col": tile.col,
        "status": TileStatus(tile.status).value,
        "error": tile.error,
        "warnings": list(tile.warnings),
        "adjusted_home": vars(tile.adjusted_home).copy() if tile.adjusted_home else None,
        "home_offset": vars(tile.home_offset).copy() if tile.home_offset else None,
        "home_measurement": _measurement_to_dict(tile.home_measurement),
        "step_to_displacement": (
            vars(tile.step_to_displacement).copy() if tile.step_to_displacement else None
        ),
        "size_delta_at_step_test": tile.size_delta_at_step_test,
        "blob_size": tile.blob_size,
        "combined_bounds": _bounds_to_dict(tile.combined_bounds),
        "step_range": (
            {axis: vars(r).copy() for axis, r in tile.step_range.items()}
            if tile.step_range is not None else None
        ),
    }


def profile_to_dict(profile: CalibrationProfile) -> dict[str, Any]:
    """Plain-dict form matching the ``mirror_profile.v1`` schema."""
    return {
        "schema": validators.PROFILE_SCHEMA,
        "id": profile.id,
        "name": profile.name,
        "created_at": profile.created_at,
        "grid_size": {"rows": profile.grid_size.rows, "cols": profile.grid_size.cols},
        "array_rotation": profile.array_rotation,
        "camera_aspect": profile.camera_aspect,
        "blueprint": vars(profile.blueprint).copy() if profile.blueprint else None,
        "delta_steps": profile.delta_steps,
        "tiles": {key: _tile_to_dict(tile) for key, tile in profile.tiles.items()},
        "metrics": vars(profile.metrics).copy(),
    }


def _bounds_from_doc(doc: validators.BoundsV1 | None) -> Bounds | None:
    if doc is None:
        return None
    return Bounds(
        x=AxisBounds(doc.x.min, doc.x.max),
        y=AxisBounds(doc.y.min, doc.y.max),
    )


def _measurement_from_doc(doc: validators.MeasurementV1 | None) -> BlobMeasurement | None:
    if doc is None:
        return None
    stats = None
    if doc.stats is not None:
        stats = BlobStats(
            sample_count=doc.stats.sample_count,
            thresholds=BlobThresholds(
                min_samples=doc.stats.min_samples,
                max_median_deviation_pt=doc.stats.max_median_deviation_pt,
            ),
            median=BlobPoint(**doc.stats.median.model_dump()),
            mad=BlobPoint(**doc.stats.mad.model_dump()),
            passed=doc.stats.passed,
        )
    return BlobMeasurement(
        x=doc.x,
        y=doc.y,
        size=doc.size,
        response=doc.response,
        captured_at=doc.captured_at,
        source_width=doc.source_width,
        source_height=doc.source_height,
        stats=stats,
    )


def _tile_from_doc(doc: validators.ProfileTileV1) -> ProfileTile:
    return ProfileTile(
        key=doc.key,
        row=doc.row,
        col=doc.col,
        status=TileStatus(doc.status),
        error=doc.error,
        warnings=list(doc.warnings),
        adjusted_home=AdjustedHome(**doc.adjusted_home.model_dump()) if doc.adjusted_home else None,
        home_offset=Vec2(**doc.home_offset.model_dump()) if doc.home_offset else None,
        home_measurement=_measurement_from_doc(doc.home_measurement),
        step_to_displacement=(
            Slope(**doc.step_to_displacement.model_dump()) if doc.step_to_displacement else None
        ),
        size_delta_at_step_test=doc.size_delta_at_step_test,
        blob_size=doc.blob_size,
        combined_bounds=_bounds_from_doc(doc.combined_bounds),
        step_range=(
            {axis: StepRange(r.min_steps, r.max_steps) for axis, r in doc.step_range.items()}
            if doc.step_range is not None else None
        ),
    )


def profile_from_document(doc: validators.ProfileV1) -> CalibrationProfile:
    """Convert a validated profile document into the runtime dataclasses."""
    return CalibrationProfile(
        id=doc.id,
        name=doc.name,
        created_at=doc.created_at,
        grid_size=GridSize(doc.grid_size.rows, doc.grid_size.cols),
        array_rotation=doc.array_rotation,
        camera_aspect=doc.camera_aspect,
        blueprint=GridBlueprint(**doc.blueprint.model_dump()) if doc.blueprint else None,
        delta_steps=doc.delta_steps,
        tiles={key: _tile_from_doc(tile) for key, tile in doc.tiles.items()},
        metrics=ProfileMetrics(**doc.metrics.model_dump()),
    )


def profile_from_dict(data: dict[str, Any]) -> CalibrationProfile:
    """Validate and convert a plain-dict profile.

    Raises
    ------
    ValueError
        If the mapping does not match the schema.
    """
    return profile_from_document(validators.validate_profile_dict(data))


def pattern_from_document(doc: validators.PatternV1) -> Pattern:
    return Pattern(
        id=doc.id,
        name=doc.name,
        points=tuple(PatternPoint(p.id, p.x, p.y) for p in doc.points),
    )


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def save_profile(profile: CalibrationProfile, path: str | Path) -> Path:
    """Validate and write a profile atomically.

    Raises
    ------
    ValueError
        If the profile does not satisfy the schema (nothing is written).
    """
    path = Path(path)
    doc = validators.validate_profile_dict(profile_to_dict(profile), str(path))
    fs.atomic_yaml_dump(validators.dump_document(doc), path)
    logger.info("Saved profile %s to %s", profile.id, path)
    return path


def load_profile(path: str | Path) -> CalibrationProfile:
    """Load and validate a profile from YAML.

    Raises
    ------
    FileNotFoundError
        If path doesn't exist.
    ValueError
        If validation fails.
    """
    return profile_from_document(validators.load_profile_document(path))


def load_pattern(path: str | Path) -> Pattern:
    """Load and validate a pattern from YAML."""
    return pattern_from_document(validators.load_pattern_document(path))
