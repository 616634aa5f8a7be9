"""Bounds and step arithmetic.

All bounds are axis-aligned boxes in camera-centered coordinates:

motor reach
    Where a tile's reflection can go within the motor's step range,
    projected through the measured step-to-displacement slope.
footprint
    The tile's cell in the grid blueprint.
combined
    Union of the two; this is what playback validates targets against.

Slopes whose magnitude is below ``STEP_EPSILON`` are treated as
"no response" and yield ``None`` rather than enormous step counts.
"""

from __future__ import annotations

import math

from mirror_control.calibration.types import (
    AdjustedHome,
    AxisBounds,
    Bounds,
    GridBlueprint,
    Slope,
    Vec2,
)

MOTOR_MIN_POSITION_STEPS = -1200
MOTOR_MAX_POSITION_STEPS = 1200
STEP_EPSILON = 1e-9

# Alignment moves use a looser slope floor than bounds projection.
ALIGNMENT_SLOPE_EPSILON = 1e-6

DEFAULT_SOURCE_WIDTH = 1920.0
DEFAULT_SOURCE_HEIGHT = 1080.0


def clamp_normalized(value: float) -> float:
    """Clamp to [-1, 1]; non-finite values become 0."""
    if not math.isfinite(value):
        return 0.0
    return max(-1.0, min(1.0, value))


# ---------------------------------------------------------------------------
# Motor reach
# ---------------------------------------------------------------------------


def compute_axis_bounds(
    center: float | None,
    center_steps: float | None,
    per_step: float | None,
) -> AxisBounds | None:
    """Reachable interval on one axis.

    Parameters
    ----------
    center : float | None
        Position (centered units) observed at ``center_steps``.
    center_steps : float | None
        Motor position at which ``center`` was observed.
    per_step : float | None
        Centered displacement per motor step.

    Returns
    -------
    AxisBounds | None
        Clamped interval, or None when any input is missing or the slope
        is below ``STEP_EPSILON``.
    """
    if center is None or center_steps is None or per_step is None:
        return None
    if abs(per_step) < STEP_EPSILON:
        return None
    delta_min = MOTOR_MIN_POSITION_STEPS - center_steps
    delta_max = MOTOR_MAX_POSITION_STEPS - center_steps
    a = clamp_normalized(center + delta_min * per_step)
    b = clamp_normalized(center + delta_max * per_step)
    return AxisBounds(min=min(a, b), max=max(a, b))


def compute_live_tile_bounds(home: Vec2, slope: Slope | None) -> Bounds | None:
    """Reach bounds around a home measurement taken at step 0."""
    if slope is None:
        return None
    bx = compute_axis_bounds(home.x, 0, slope.x)
    by = compute_axis_bounds(home.y, 0, slope.y)
    if bx is None or by is None:
        return None
    return Bounds(x=bx, y=by)


def compute_tile_bounds(
    adjusted_home: AdjustedHome | None,
    slope: Slope | None,
) -> Bounds | None:
    """Reach bounds around an adjusted home reached at ``steps_x/steps_y``."""
    if adjusted_home is None or slope is None:
        return None
    bx = compute_axis_bounds(adjusted_home.x, adjusted_home.steps_x, slope.x)
    by = compute_axis_bounds(adjusted_home.y, adjusted_home.steps_y, slope.y)
    if bx is None or by is None:
        return None
    return Bounds(x=bx, y=by)


# ---------------------------------------------------------------------------
# Step conversion
# ---------------------------------------------------------------------------


def compute_step_scale(per_step: float | None) -> float | None:
    """Steps per centered unit (``1 / per_step``)."""
    if per_step is None or abs(per_step) < STEP_EPSILON:
        return None
    return 1.0 / per_step


def build_step_scale(slope: Slope | None) -> Slope | None:
    """Per-axis step scale; None if neither axis has one."""
    if slope is None:
        return None
    x = compute_step_scale(slope.x)
    y = compute_step_scale(slope.y)
    if x is None and y is None:
        return None
    return Slope(x=x, y=y)


def convert_delta_to_steps(delta: float, per_step: float | None) -> float | None:
    """Unrounded step count that moves the reflection by ``delta``."""
    if per_step is None or abs(per_step) < STEP_EPSILON:
        return None
    steps = delta / per_step
    if not math.isfinite(steps):
        return None
    return steps


def compute_alignment_target_steps(
    displacement: float,
    per_step: float | None,
) -> int | None:
    """Rounded steps for an alignment move, or None if out of motor range.

    Examples
    --------
    >>> compute_alignment_target_steps(-0.01, 0.0001)
    -100
    """
    if per_step is None or abs(per_step) < ALIGNMENT_SLOPE_EPSILON:
        return None
    steps = displacement / per_step
    if not math.isfinite(steps) or abs(steps) > MOTOR_MAX_POSITION_STEPS:
        return None
    return int(round(steps))


# ---------------------------------------------------------------------------
# Footprint and merging
# ---------------------------------------------------------------------------


def compute_blueprint_footprint_bounds(
    blueprint: GridBlueprint,
    row: int,
    col: int,
) -> Bounds:
    """Cell occupied by tile (row, col) in the blueprint.

    Widths are rescaled by ``avg(W, H) / W`` (and ``/ H``) so the box is
    expressed in the same units as the recentered origin.
    """
    width = blueprint.source_width or DEFAULT_SOURCE_WIDTH
    height = blueprint.source_height or DEFAULT_SOURCE_HEIGHT
    avg = (width + height) / 2.0
    iso_x = avg / width
    iso_y = avg / height

    spacing_x = (blueprint.tile_width + blueprint.gap_x) * iso_x
    spacing_y = (blueprint.tile_height + blueprint.gap_y) * iso_y

    min_x = blueprint.origin_x + col * spacing_x
    min_y = blueprint.origin_y + row * spacing_y
    return Bounds(
        x=AxisBounds(min=min_x, max=min_x + blueprint.tile_width * iso_x),
        y=AxisBounds(min=min_y, max=min_y + blueprint.tile_height * iso_y),
    )


def merge_bounds_union(current: Bounds | None, candidate: Bounds) -> Bounds:
    """Outer envelope of two boxes."""
    if current is None:
        return candidate
    return Bounds(
        x=AxisBounds(
            min=min(current.x.min, candidate.x.min),
            max=max(current.x.max, candidate.x.max),
        ),
        y=AxisBounds(
            min=min(current.y.min, candidate.y.min),
            max=max(current.y.max, candidate.y.max),
        ),
    )


def merge_bounds_intersection(current: Bounds | None, candidate: Bounds) -> Bounds | None:
    """Overlap of two boxes, or None if they are disjoint."""
    if current is None:
        return candidate
    min_x = max(current.x.min, candidate.x.min)
    max_x = min(current.x.max, candidate.x.max)
    min_y = max(current.y.min, candidate.y.min)
    max_y = min(current.y.max, candidate.y.max)
    if min_x > max_x or min_y > max_y:
        return None
    return Bounds(x=AxisBounds(min_x, max_x), y=AxisBounds(min_y, max_y))
