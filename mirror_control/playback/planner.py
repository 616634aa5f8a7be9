"""Profile playback planner.

Turns a calibration profile plus a pattern into absolute motor step
targets, one pattern point per tile:

    1. Transform pattern points into camera-centered space (profile aspect
       and array rotation).
    2. Collect the calibrated tiles; each gets an ideal grid position in
       [-1, 1]².
    3. A tile is a candidate for a point if the point lies inside the
       tile's combined bounds (no bounds -> candidate for every point).
    4. Assign most-constrained points first, each to its nearest free
       candidate by ideal position.
    5. Per assigned tile and axis, convert the centered delta from the
       adjusted home into steps and range-check the result.

The planner is pure: every validation problem is reported as a
``PlanError`` in the returned plan, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from mirror_core.utils.space import DEFAULT_CAMERA_ASPECT, pattern_to_centered
from mirror_control.calibration.bounds import (
    MOTOR_MAX_POSITION_STEPS,
    MOTOR_MIN_POSITION_STEPS,
    convert_delta_to_steps,
)
from mirror_control.calibration.types import (
    AXES,
    Axis,
    AxisAssignment,
    CalibrationProfile,
    GridSize,
    MirrorConfig,
    Motor,
    Pattern,
    PatternPoint,
    ProfileTile,
    StepRange,
    TileAddress,
    TileStatus,
    Vec2,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class PlanErrorCode(str, Enum):
    MISSING_PATTERN = "missing_pattern"
    MISSING_PROFILE = "missing_profile"
    PROFILE_MISSING_BLUEPRINT = "profile_missing_blueprint"
    PATTERN_EXCEEDS_MIRRORS = "pattern_exceeds_mirrors"
    INSUFFICIENT_CALIBRATED_TILES = "insufficient_calibrated_tiles"
    NO_VALID_TILE = "no_valid_tile"
    TILES_EXHAUSTED = "tiles_exhausted"
    TILE_NOT_CALIBRATED = "tile_not_calibrated"
    MISSING_MOTOR = "missing_motor"
    MISSING_AXIS_CALIBRATION = "missing_axis_calibration"
    TARGET_OUT_OF_BOUNDS = "target_out_of_bounds"
    STEPS_OUT_OF_RANGE = "steps_out_of_range"


@dataclass(frozen=True)
class PlanError:
    code: PlanErrorCode
    message: str
    tile: str | None = None
    axis: Axis | None = None
    point_id: str | None = None


@dataclass(frozen=True)
class AxisTarget:
    """Absolute step target for one motor."""

    key: str
    tile: str
    row: int
    col: int
    axis: Axis
    motor: Motor
    point_id: str
    normalized_target: float
    target_steps: int


@dataclass
class TilePlan:
    tile: str
    row: int
    col: int
    point_id: str | None = None
    target: Vec2 | None = None
    axis_targets: dict[str, AxisTarget] = field(default_factory=dict)
    errors: list[PlanError] = field(default_factory=list)


@dataclass
class PlaybackPlan:
    pattern_id: str | None
    tiles: list[TilePlan] = field(default_factory=list)
    playable_axis_targets: list[AxisTarget] = field(default_factory=list)
    errors: list[PlanError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_codes(self) -> list[str]:
        return [e.code.value for e in self.errors]


@dataclass(frozen=True)
class _AvailableTile:
    address: TileAddress
    calibration: ProfileTile
    assignment: AxisAssignment
    ideal: Vec2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_tile_calibrated(tile: ProfileTile | None) -> bool:
    """Completed, with alignment steps and both slopes."""
    if tile is None or tile.status != TileStatus.COMPLETED:
        return False
    home = tile.adjusted_home
    slope = tile.step_to_displacement
    return (
        home is not None
        and home.steps_x is not None
        and home.steps_y is not None
        and slope is not None
        and slope.x is not None
        and slope.y is not None
    )


def ideal_grid_position(address: TileAddress, grid_size: GridSize) -> Vec2:
    """Tile position spread evenly over [-1, 1] (0 for a single row/col)."""
    x = address.col / (grid_size.cols - 1) * 2.0 - 1.0 if grid_size.cols > 1 else 0.0
    y = address.row / (grid_size.rows - 1) * 2.0 - 1.0 if grid_size.rows > 1 else 0.0
    return Vec2(x, y)


def _is_candidate(tile: _AvailableTile, point: PatternPoint) -> bool:
    bounds = tile.calibration.combined_bounds
    if bounds is None:
        return True
    return bounds.contains(Vec2(point.x, point.y))


def _step_range(tile: ProfileTile, axis: Axis) -> StepRange:
    if tile.step_range and axis in tile.step_range:
        return tile.step_range[axis]
    return StepRange(MOTOR_MIN_POSITION_STEPS, MOTOR_MAX_POSITION_STEPS)


def _compute_axis_target(
    axis: Axis,
    address: TileAddress,
    tile: ProfileTile,
    assignment: AxisAssignment,
    point: PatternPoint,
) -> AxisTarget | PlanError:
    key = address.key

    def error(code: PlanErrorCode, message: str) -> PlanError:
        return PlanError(code, message, tile=key, axis=axis, point_id=point.id)

    motor = assignment.motor(axis)
    if motor is None:
        return error(
            PlanErrorCode.MISSING_MOTOR,
            f"Mirror {key} is missing a motor on axis {axis}.",
        )

    per_step = tile.step_to_displacement.axis(axis) if tile.step_to_displacement else None
    home = tile.adjusted_home
    home_coord = None if home is None else (home.x if axis == "x" else home.y)
    base_steps = None if home is None else (home.steps_x if axis == "x" else home.steps_y)
    if per_step is None or home_coord is None or base_steps is None:
        return error(
            PlanErrorCode.MISSING_AXIS_CALIBRATION,
            f"Tile {key} is missing step calibration on axis {axis}.",
        )

    target = point.x if axis == "x" else point.y
    if tile.combined_bounds is not None:
        bounds = tile.combined_bounds.axis(axis)
        if not bounds.contains(target):
            return error(
                PlanErrorCode.TARGET_OUT_OF_BOUNDS,
                f"Target {target:.3f} is outside calibrated {axis.upper()} bounds "
                f"[{bounds.min:.3f}, {bounds.max:.3f}].",
            )

    delta_steps = convert_delta_to_steps(target - home_coord, per_step)
    if delta_steps is None:
        return error(
            PlanErrorCode.MISSING_AXIS_CALIBRATION,
            f"Unable to convert normalized delta to steps for axis {axis}.",
        )

    raw_steps = base_steps + delta_steps
    step_range = _step_range(tile, axis)
    if not step_range.contains(raw_steps):
        return error(
            PlanErrorCode.STEPS_OUT_OF_RANGE,
            f"Target steps {raw_steps:.1f} exceed allowed range "
            f"[{step_range.min_steps}, {step_range.max_steps}] on axis {axis}.",
        )

    return AxisTarget(
        key=f"{key}:{axis}:{motor.controller_id}:{motor.axis_index}",
        tile=key,
        row=address.row,
        col=address.col,
        axis=axis,
        motor=motor,
        point_id=point.id,
        normalized_target=target,
        target_steps=int(round(raw_steps)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def plan_profile_playback(
    grid_size: GridSize,
    mirror_config: MirrorConfig,
    profile: CalibrationProfile | None,
    pattern: Pattern | None,
) -> PlaybackPlan:
    """Assign pattern points to calibrated tiles and compute step targets.

    Parameters
    ----------
    grid_size : GridSize
        Current array dimensions; may differ from the profile's grid as
        long as the profile covers the tiles in use.
    mirror_config : MirrorConfig
        Tile key -> motor assignment.
    profile : CalibrationProfile | None
        Calibration profile.
    pattern : Pattern | None
        Points in isotropic pattern space.

    Returns
    -------
    PlaybackPlan
        Every grid cell in row-major order, the flattened playable targets
        and all errors (global first, then per tile).
    """
    if pattern is None:
        return PlaybackPlan(
            pattern_id=None,
            errors=[PlanError(PlanErrorCode.MISSING_PATTERN, "Select a pattern to start playback.")],
        )
    if profile is None:
        return PlaybackPlan(
            pattern_id=pattern.id,
            errors=[PlanError(
                PlanErrorCode.MISSING_PROFILE, "Select a calibration profile to continue."
            )],
        )
    if profile.blueprint is None:
        return PlaybackPlan(
            pattern_id=pattern.id,
            errors=[PlanError(
                PlanErrorCode.PROFILE_MISSING_BLUEPRINT,
                "Selected profile is missing grid blueprint data. Run calibration again.",
            )],
        )

    global_errors: list[PlanError] = []
    aspect = profile.camera_aspect or DEFAULT_CAMERA_ASPECT
    points = []
    for p in pattern.points:
        x, y = pattern_to_centered((p.x, p.y), aspect, profile.array_rotation)
        points.append(PatternPoint(p.id, x, y))

    total = grid_size.tile_count
    if len(points) > total:
        global_errors.append(PlanError(
            PlanErrorCode.PATTERN_EXCEEDS_MIRRORS,
            f"Pattern has {len(points)} points, but the array only exposes {total} mirrors.",
        ))

    available: list[_AvailableTile] = []
    for address in grid_size.addresses():
        calibration = profile.tiles.get(address.key)
        assignment = mirror_config.get(address.key) or AxisAssignment()
        if is_tile_calibrated(calibration) and assignment.calibratable:
            available.append(_AvailableTile(
                address, calibration, assignment, ideal_grid_position(address, grid_size)
            ))

    if len(points) > len(available):
        global_errors.append(PlanError(
            PlanErrorCode.INSUFFICIENT_CALIBRATED_TILES,
            f"Pattern needs {len(points)} calibrated mirrors, "
            f"but only {len(available)} are available.",
        ))

    # Most-constrained points first; ties by point id.
    options = [(p, [t for t in available if _is_candidate(t, p)]) for p in points]
    options.sort(key=lambda item: (len(item[1]), item[0].id))

    taken: set[TileAddress] = set()
    by_tile: dict[TileAddress, PatternPoint] = {}
    unassigned: list[tuple[PatternPoint, bool]] = []
    for point, candidates in options:
        free = [t for t in candidates if t.address not in taken]
        if not free:
            unassigned.append((point, bool(candidates)))
            continue
        best = min(
            free,
            key=lambda t: (
                (point.x - t.ideal.x) ** 2 + (point.y - t.ideal.y) ** 2,
                t.address,
            ),
        )
        taken.add(best.address)
        by_tile[best.address] = point

    tiles: list[TilePlan] = []
    for address in grid_size.addresses():
        point = by_tile.get(address)
        plan = TilePlan(tile=address.key, row=address.row, col=address.col)
        tiles.append(plan)
        if point is None:
            continue
        plan.point_id = point.id
        plan.target = Vec2(point.x, point.y)
        calibration = profile.tiles.get(address.key)
        if not is_tile_calibrated(calibration):
            plan.errors.append(PlanError(
                PlanErrorCode.TILE_NOT_CALIBRATED,
                f"Tile {address.key} is not calibrated for playback.",
                tile=address.key,
                point_id=point.id,
            ))
            continue
        assignment = mirror_config.get(address.key) or AxisAssignment()
        for axis in AXES:
            result = _compute_axis_target(axis, address, calibration, assignment, point)
            if isinstance(result, PlanError):
                plan.errors.append(result)
            else:
                plan.axis_targets[axis] = result

    for point, had_candidates in unassigned:
        if had_candidates:
            global_errors.append(PlanError(
                PlanErrorCode.TILES_EXHAUSTED,
                f"Pattern point {point.id} has valid tiles, but all were claimed by other points.",
                point_id=point.id,
            ))
        else:
            global_errors.append(PlanError(
                PlanErrorCode.NO_VALID_TILE,
                f"Pattern point {point.id} lies outside the bounds of every calibrated tile.",
                point_id=point.id,
            ))

    playable = [
        plan.axis_targets[axis]
        for plan in tiles
        for axis in AXES
        if axis in plan.axis_targets
    ]
    errors = global_errors + [e for plan in tiles for e in plan.errors]
    logger.info(
        "Planned pattern %s: %d/%d point(s) assigned, %d axis target(s), %d error(s)",
        pattern.id, len(by_tile), len(points), len(playable), len(errors),
    )
    return PlaybackPlan(
        pattern_id=pattern.id,
        tiles=tiles,
        playable_axis_targets=playable,
        errors=errors,
    )
