"""Tests for the pure calibration math.

Validates bounds and step conversion, grid blueprint inference (including
robust tile sizing), the run summary, staging poses and expected blob
positions.
"""

from __future__ import annotations

import math

import pytest

from mirror_control.calibration.blueprint import (
    MeasuredTile,
    RobustTileSizeConfig,
    clamp_gap,
    compute_grid_blueprint,
)
from mirror_control.calibration.bounds import (
    MOTOR_MAX_POSITION_STEPS,
    MOTOR_MIN_POSITION_STEPS,
    STEP_EPSILON,
    build_step_scale,
    clamp_normalized,
    compute_alignment_target_steps,
    compute_axis_bounds,
    compute_blueprint_footprint_bounds,
    compute_live_tile_bounds,
    compute_step_scale,
    compute_tile_bounds,
    convert_delta_to_steps,
    merge_bounds_intersection,
    merge_bounds_union,
)
from mirror_control.calibration.expected_position import (
    Roi,
    TileMeasurement,
    compute_expected_blob_position,
    estimate_grid_from_measurements,
    transform_tile_to_camera,
)
from mirror_control.calibration.staging import (
    StagingPosition,
    clamp_steps,
    compute_distributed_axis_target,
    compute_pose_targets,
    round_steps,
)
from mirror_control.calibration.summary import compute_calibration_summary
from mirror_control.calibration.types import (
    AdjustedHome,
    AxisBounds,
    BlobMeasurement,
    Bounds,
    GridSize,
    Slope,
    TileAddress,
    TileMetrics,
    TileRunState,
    TileStatus,
    Vec2,
)


def _measured(row: int, col: int, x: float, y: float, size: float = 0.1) -> MeasuredTile:
    return MeasuredTile(
        TileAddress(row, col),
        BlobMeasurement(x=x, y=y, size=size, source_width=1920.0, source_height=1080.0),
    )


def _bounds(x0: float, x1: float, y0: float, y1: float) -> Bounds:
    return Bounds(AxisBounds(x0, x1), AxisBounds(y0, y1))


# ---------------------------------------------------------------------------
# Bounds and step conversion
# ---------------------------------------------------------------------------


class TestStepMath:
    def test_tiny_slope_yields_none(self) -> None:
        tiny = STEP_EPSILON / 2
        assert compute_axis_bounds(0.0, 0, tiny) is None
        assert compute_step_scale(tiny) is None
        assert convert_delta_to_steps(0.1, tiny) is None
        assert build_step_scale(Slope(tiny, -tiny)) is None

    def test_slope_just_above_epsilon(self) -> None:
        assert compute_step_scale(2 * STEP_EPSILON) == pytest.approx(5e8)

    def test_axis_bounds_clamped(self) -> None:
        bounds = compute_axis_bounds(0.5, 0, 0.001)
        assert bounds.min == pytest.approx(-0.7)
        assert bounds.max == 1.0

    def test_axis_bounds_negative_slope_ordered(self) -> None:
        bounds = compute_axis_bounds(0.0, 0, -2.5e-4)
        assert bounds.min == pytest.approx(-0.3)
        assert bounds.max == pytest.approx(0.3)

    def test_live_bounds_need_both_axes(self) -> None:
        assert compute_live_tile_bounds(Vec2(0, 0), Slope(x=2.5e-4, y=None)) is None
        live = compute_live_tile_bounds(Vec2(-0.2, 0.0), Slope(2.5e-4, 2.5e-4))
        assert live.x.min == pytest.approx(-0.5)
        assert live.x.max == pytest.approx(0.1)

    def test_tile_bounds_use_alignment_steps(self) -> None:
        home = AdjustedHome(x=0.1, y=0.0, steps_x=200, steps_y=0)
        bounds = compute_tile_bounds(home, Slope(5e-4, 1e-4))
        assert bounds.x.min == pytest.approx(-0.6)
        assert bounds.x.max == pytest.approx(0.6)
        assert bounds.y.min == pytest.approx(-0.12)
        assert bounds.y.max == pytest.approx(0.12)

        assert compute_tile_bounds(None, Slope(5e-4, 1e-4)) is None
        assert compute_tile_bounds(AdjustedHome(0.1, 0.0, 200, None), Slope(5e-4, 1e-4)) is None

    def test_convert_delta(self) -> None:
        assert convert_delta_to_steps(0.05, 2.5e-4) == pytest.approx(200.0)

    def test_alignment_steps(self) -> None:
        assert compute_alignment_target_steps(-0.01, 0.0001) == -100
        assert compute_alignment_target_steps(1.0, 1e-4) is None
        assert compute_alignment_target_steps(0.01, 5e-7) is None
        assert compute_alignment_target_steps(0.01, None) is None

    def test_clamp_normalized(self) -> None:
        assert clamp_normalized(math.inf) == 0.0
        assert clamp_normalized(-3.0) == -1.0

    def test_merge(self) -> None:
        a = _bounds(-0.5, 0.0, -0.5, 0.0)
        b = _bounds(-0.2, 0.3, -0.1, 0.4)
        assert merge_bounds_union(a, b) == _bounds(-0.5, 0.3, -0.5, 0.4)
        assert merge_bounds_intersection(a, b) == _bounds(-0.2, 0.0, -0.1, 0.0)
        assert merge_bounds_intersection(a, _bounds(0.5, 0.6, 0.5, 0.6)) is None
        assert merge_bounds_union(None, b) is b


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------


class TestBlueprint:
    def test_two_tiles_centered(self) -> None:
        measured = [_measured(0, 0, -0.2, 0.0), _measured(0, 1, 0.2, 0.0)]
        blueprint, _ = compute_grid_blueprint(measured, GridSize(1, 2))
        # isotropic pitch 0.4 * 1.28 = 0.512 -> width 0.4, height 0.512 / 0.72
        assert blueprint.tile_width == pytest.approx(0.4)
        assert blueprint.tile_height == pytest.approx(0.512 / 0.72)
        assert blueprint.origin_x == pytest.approx(-0.4)
        assert blueprint.origin_y == pytest.approx(-0.256 / 0.72)
        assert blueprint.camera_offset_x == pytest.approx(0.0)
        assert blueprint.camera_offset_y == pytest.approx(0.0)

    def test_offset_grid_is_recentered(self) -> None:
        measured = [_measured(0, 0, -0.1, 0.05), _measured(0, 1, 0.3, 0.05)]
        blueprint, _ = compute_grid_blueprint(measured, GridSize(1, 2))
        assert blueprint.camera_offset_x == pytest.approx(0.1)
        assert blueprint.camera_offset_y == pytest.approx(0.05)
        assert blueprint.origin_x == pytest.approx(-0.4)

    def test_gap_shrinks_tiles(self) -> None:
        measured = [_measured(0, 0, -0.2, 0.0), _measured(0, 1, 0.2, 0.0)]
        blueprint, _ = compute_grid_blueprint(measured, GridSize(1, 2), gap_normalized=0.05)
        assert blueprint.gap_x == pytest.approx(0.1)
        assert blueprint.tile_width == pytest.approx((0.512 - 0.1) / 1.28)

    def test_gap_wider_than_pitch_falls_back_to_blob_size(self) -> None:
        measured = [_measured(0, 0, -0.2, 0.0), _measured(0, 1, 0.2, 0.0)]
        # gap 0.6 exceeds the isotropic pitch 0.512
        blueprint, _ = compute_grid_blueprint(measured, GridSize(1, 2), gap_normalized=0.3)
        assert blueprint.gap_x == pytest.approx(0.6)
        assert blueprint.tile_width == pytest.approx(0.1)
        assert blueprint.tile_height == pytest.approx(0.1)
        for col in range(2):
            foot = compute_blueprint_footprint_bounds(blueprint, 0, col)
            assert foot.x.min < foot.x.max
            assert foot.y.min < foot.y.max

    def test_gap_clamped(self) -> None:
        assert clamp_gap(-1.0) == 0.0
        assert clamp_gap(2.0) == pytest.approx(1.0)

    def test_robust_tile_size_excludes_oversized_blob(self) -> None:
        sizes = [0.1, 0.12, 0.14, 0.16, 1.0]
        measured = [_measured(0, col, 0.0, 0.0, size) for col, size in enumerate(sizes)]
        # Identical positions -> zero pitch -> tile size from blob sizes
        blueprint, analysis = compute_grid_blueprint(measured, GridSize(1, 5))
        assert analysis.enabled
        assert analysis.outlier_tile_keys == ("0-4",)
        assert analysis.computed_tile_size == pytest.approx(0.16)
        assert blueprint.tile_width == pytest.approx(0.16)

    def test_robust_keeps_plausible_max(self) -> None:
        sizes = [0.1, 0.12, 0.14, 0.16, 0.18]
        measured = [_measured(0, col, 0.0, 0.0, size) for col, size in enumerate(sizes)]
        _, analysis = compute_grid_blueprint(measured, GridSize(1, 5))
        assert analysis.outlier_count == 0
        assert analysis.computed_tile_size == pytest.approx(0.18)

    def test_robust_disabled(self) -> None:
        sizes = [0.1, 0.12, 0.14, 0.16, 1.0]
        measured = [_measured(0, col, 0.0, 0.0, size) for col, size in enumerate(sizes)]
        _, analysis = compute_grid_blueprint(
            measured, GridSize(1, 5), robust=RobustTileSizeConfig(enabled=False)
        )
        assert not analysis.enabled
        assert analysis.computed_tile_size == pytest.approx(1.0)

    def test_no_measurements(self) -> None:
        blueprint, analysis = compute_grid_blueprint([], GridSize(2, 2))
        assert blueprint is None
        assert analysis.outlier_count == 0


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def _state(row, col, status, home=None, slope=None) -> TileRunState:
    return TileRunState(
        tile=TileAddress(row, col),
        status=status,
        metrics=TileMetrics(home=home, step_to_displacement=slope),
    )


class TestSummary:
    def _results(self):
        slope = Slope(2.5e-4, 2.5e-4)
        return {
            "0-0": _state(0, 0, TileStatus.COMPLETED,
                          BlobMeasurement(-0.15, 0.05, 0.1, source_width=1920, source_height=1080),
                          slope),
            "0-1": _state(0, 1, TileStatus.COMPLETED,
                          BlobMeasurement(0.25, 0.05, 0.1, source_width=1920, source_height=1080),
                          slope),
            "0-2": _state(0, 2, TileStatus.FAILED),
        }

    def test_adjusted_home_and_offset(self) -> None:
        summary = compute_calibration_summary(self._results(), GridSize(1, 3), 0.0, 1200)
        bp = summary.blueprint
        assert bp is not None
        assert summary.delta_steps == 1200
        assert summary.camera.source_width == 1920

        tile = summary.tiles["0-0"]
        # recentered home minus adjusted center
        assert tile.home_offset.x == pytest.approx(tile.home_measurement.x - tile.adjusted_home.x)
        assert tile.home_measurement.x == pytest.approx(-0.15 - bp.camera_offset_x)
        assert tile.step_scale.x == pytest.approx(4000.0)

    def test_combined_is_union_of_reach_and_footprint(self) -> None:
        summary = compute_calibration_summary(self._results(), GridSize(1, 3), 0.0, 1200)
        tile = summary.tiles["0-1"]
        reach, foot, combined = tile.motor_reach_bounds, tile.footprint_bounds, tile.combined_bounds
        assert combined.x.min == pytest.approx(min(reach.x.min, foot.x.min))
        assert combined.x.max == pytest.approx(max(reach.x.max, foot.x.max))
        assert combined.y.max == pytest.approx(max(reach.y.max, foot.y.max))

    def test_failed_tile_has_footprint_only(self) -> None:
        summary = compute_calibration_summary(self._results(), GridSize(1, 3), 0.0, 1200)
        failed = summary.tiles["0-2"]
        assert failed.status == TileStatus.FAILED
        assert failed.adjusted_home is None
        assert failed.motor_reach_bounds is None
        assert failed.combined_bounds == failed.footprint_bounds

    def test_nothing_measured(self) -> None:
        results = {"0-0": _state(0, 0, TileStatus.FAILED)}
        summary = compute_calibration_summary(results, GridSize(1, 1), 0.0, 1200)
        assert summary.blueprint is None
        assert summary.camera is None
        assert summary.tiles["0-0"].combined_bounds is None


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


class TestStaging:
    def test_home_pose(self) -> None:
        assert compute_pose_targets(TileAddress(1, 1), "home", GridSize(2, 2)) == (0.0, 0.0)

    def test_nearest_corner_by_quadrant(self) -> None:
        grid = GridSize(2, 2)
        top_left = compute_pose_targets(TileAddress(0, 0), "aside", grid)
        bottom_right = compute_pose_targets(TileAddress(1, 1), "aside", grid)
        assert top_left == (MOTOR_MAX_POSITION_STEPS, MOTOR_MAX_POSITION_STEPS)
        assert bottom_right == (MOTOR_MIN_POSITION_STEPS, MOTOR_MIN_POSITION_STEPS)

    def test_rotation_inverts_aside(self) -> None:
        grid = GridSize(2, 2)
        assert compute_pose_targets(TileAddress(0, 0), "aside", grid, rotation=180) == (
            MOTOR_MIN_POSITION_STEPS, MOTOR_MIN_POSITION_STEPS,
        )
        assert compute_pose_targets(
            TileAddress(0, 0), "aside", grid, 180, StagingPosition.CORNER
        ) == (MOTOR_MIN_POSITION_STEPS, MOTOR_MAX_POSITION_STEPS)

    def test_corner_bottom_left(self) -> None:
        grid = GridSize(1, 3)
        tile = TileAddress(0, 1)
        assert compute_pose_targets(tile, "aside", grid, 0, StagingPosition.CORNER) == (1200, -1200)
        assert compute_pose_targets(tile, "aside", grid, 0, "bottom") == (0.0, -1200)
        assert compute_pose_targets(TileAddress(0, 0), "aside", grid, 0, "left") == (1200, -1200.0)

    def test_distributed_target(self) -> None:
        assert compute_distributed_axis_target(0, 1) == 0.0
        assert compute_distributed_axis_target(2, 3) == 1200.0

    def test_round_and_clamp(self) -> None:
        assert round_steps(2.6) == 3
        assert round_steps(float("nan")) == 0
        assert clamp_steps(5000) == 1200
        assert clamp_steps(-5000) == -1200


# ---------------------------------------------------------------------------
# Expected position
# ---------------------------------------------------------------------------


class TestExpectedPosition:
    def test_first_tile_at_roi_left_edge(self) -> None:
        assert compute_expected_blob_position(0, 0, [], GridSize(2, 2)) == pytest.approx((0.15, 0.5))
        roi = Roi(x=0.1, y=0.2, width=0.8, height=0.4)
        assert compute_expected_blob_position(0, 0, [], GridSize(2, 2), roi=roi) == (
            pytest.approx(0.1), pytest.approx(0.4),
        )

    def test_single_measurement_uses_default_spacing(self) -> None:
        done = [TileMeasurement(0, 0, Vec2(-0.7, -0.3))]
        x, y = compute_expected_blob_position(0, 1, done, GridSize(2, 3))
        assert x == pytest.approx(0.30)
        assert y == pytest.approx(0.35)

    def test_spacing_from_neighbours(self) -> None:
        done = [
            TileMeasurement(0, 0, Vec2(-0.6, 0.0)),
            TileMeasurement(0, 1, Vec2(0.0, 0.0)),
        ]
        estimate = estimate_grid_from_measurements(done, GridSize(1, 3), 0)
        assert estimate.spacing_x == pytest.approx(0.3)
        x, _ = compute_expected_blob_position(0, 2, done, GridSize(1, 3))
        assert x == pytest.approx(0.8)

    def test_transform_rotations(self) -> None:
        grid = GridSize(2, 3)
        assert transform_tile_to_camera(0, 0, grid, 0) == (0, 0)
        assert transform_tile_to_camera(0, 2, grid, 90) == (2, 1)
        assert transform_tile_to_camera(0, 0, grid, 180) == (1, 2)
        assert transform_tile_to_camera(1, 0, grid, 270) == (2, 1)

    def test_estimate_requires_measurements(self) -> None:
        with pytest.raises(ValueError):
            estimate_grid_from_measurements([], GridSize(1, 1), 0)
