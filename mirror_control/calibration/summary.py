"""Calibration run summary.

Turns the per-tile results of a run into the summary the profile is
built from: grid blueprint, recentered home measurements, per-tile
adjusted homes and offsets, step scales and bounds.
"""

from __future__ import annotations

import dataclasses
from typing import Mapping

from mirror_control.calibration.blueprint import (
    MeasuredTile,
    RobustTileSizeConfig,
    compute_grid_blueprint,
)
from mirror_control.calibration.bounds import (
    DEFAULT_SOURCE_HEIGHT,
    DEFAULT_SOURCE_WIDTH,
    build_step_scale,
    compute_blueprint_footprint_bounds,
    compute_live_tile_bounds,
    merge_bounds_union,
)
from mirror_control.calibration.types import (
    AdjustedHome,
    BlobMeasurement,
    CalibrationRunSummary,
    CameraInfo,
    GridBlueprint,
    GridSize,
    TileRunState,
    TileStatus,
    TileSummary,
    Vec2,
)

_MEASURED_STATUSES = (TileStatus.COMPLETED, TileStatus.MEASURING)


def recenter_measurement(
    measurement: BlobMeasurement,
    blueprint: GridBlueprint,
) -> BlobMeasurement:
    """Shift a measurement (and its stats median) by the camera offset."""
    stats = measurement.stats
    if stats is not None:
        stats = dataclasses.replace(
            stats,
            median=dataclasses.replace(
                stats.median,
                x=stats.median.x - blueprint.camera_offset_x,
                y=stats.median.y - blueprint.camera_offset_y,
            ),
        )
    return dataclasses.replace(
        measurement,
        x=measurement.x - blueprint.camera_offset_x,
        y=measurement.y - blueprint.camera_offset_y,
        stats=stats,
    )


def compute_adjusted_center(blueprint: GridBlueprint, row: int, col: int) -> Vec2:
    """Ideal center of tile (row, col) on the blueprint grid."""
    spacing_x = blueprint.tile_width + blueprint.gap_x
    spacing_y = blueprint.tile_height + blueprint.gap_y
    return Vec2(
        x=blueprint.origin_x + col * spacing_x + blueprint.tile_width / 2.0,
        y=blueprint.origin_y + row * spacing_y + blueprint.tile_height / 2.0,
    )


def compute_calibration_summary(
    tile_results: Mapping[str, TileRunState],
    grid_size: GridSize,
    gap_normalized: float,
    delta_steps: int,
    robust: RobustTileSizeConfig | None = None,
) -> CalibrationRunSummary:
    """Build the run summary.

    Parameters
    ----------
    tile_results : Mapping[str, TileRunState]
        Run state keyed by tile key (iteration order is preserved in the
        output).
    grid_size : GridSize
        Grid dimensions.
    gap_normalized : float
        Gap setting passed to the blueprint.
    delta_steps : int
        Step-test size, recorded in the summary.
    robust : RobustTileSizeConfig, optional
        Tile-size outlier rejection settings.

    Returns
    -------
    CalibrationRunSummary
        ``blueprint`` is None when no tile produced a home measurement.
    """
    measured = [
        MeasuredTile(state.tile, state.metrics.home)
        for state in tile_results.values()
        if state.status in _MEASURED_STATUSES and state.metrics.home is not None
    ]
    blueprint, analysis = compute_grid_blueprint(
        measured, grid_size, gap_normalized, robust
    )

    camera = None
    if measured:
        first = measured[0].measurement
        camera = CameraInfo(
            source_width=first.source_width or DEFAULT_SOURCE_WIDTH,
            source_height=first.source_height or DEFAULT_SOURCE_HEIGHT,
        )

    tiles: dict[str, TileSummary] = {}
    for key, state in tile_results.items():
        metrics = state.metrics
        home = metrics.home
        if home is not None and blueprint is not None:
            home = recenter_measurement(home, blueprint)

        slope = metrics.step_to_displacement
        motor_reach = None
        if home is not None and slope is not None:
            motor_reach = compute_live_tile_bounds(Vec2(home.x, home.y), slope)

        footprint = None
        if blueprint is not None:
            footprint = compute_blueprint_footprint_bounds(
                blueprint, state.tile.row, state.tile.col
            )

        combined = motor_reach
        if footprint is not None:
            combined = merge_bounds_union(motor_reach, footprint)

        summary = TileSummary(
            tile=state.tile,
            status=state.status,
            error=state.error,
            warnings=list(state.warnings),
            home_measurement=home,
            step_to_displacement=slope,
            step_scale=build_step_scale(slope),
            size_delta_at_step_test=metrics.size_delta_at_step_test,
            motor_reach_bounds=motor_reach,
            footprint_bounds=footprint,
            combined_bounds=combined,
        )

        if state.status == TileStatus.COMPLETED and home is not None and blueprint is not None:
            center = compute_adjusted_center(blueprint, state.tile.row, state.tile.col)
            summary.adjusted_home = AdjustedHome(x=center.x, y=center.y)
            summary.home_offset = Vec2(x=home.x - center.x, y=home.y - center.y)

        tiles[key] = summary

    return CalibrationRunSummary(
        blueprint=blueprint,
        camera=camera,
        delta_steps=delta_steps,
        tiles=tiles,
        outlier_analysis=analysis,
    )
