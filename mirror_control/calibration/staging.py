"""Staging poses: where tiles park while another tile is measured.

Only the tile under test may reflect into the camera's view, so every
other tile is driven to an "aside" pose at the edge of its motor range.
Which edge depends on the array rotation (the camera sees the array
turned) and on the configured staging strategy:

nearest-corner
    Each tile parks toward the corner of its own grid quadrant.
corner
    All tiles park at the same corner.
bottom / left
    Tiles line up along one edge, spread over the motor range by column.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Literal

from mirror_control.calibration.bounds import (
    MOTOR_MAX_POSITION_STEPS,
    MOTOR_MIN_POSITION_STEPS,
)
from mirror_control.calibration.types import GridSize, TileAddress

Pose = Literal["home", "aside"]


class StagingPosition(str, Enum):
    """Aside-parking strategy."""

    NEAREST_CORNER = "nearest-corner"
    CORNER = "corner"
    BOTTOM = "bottom"
    LEFT = "left"


def clamp_steps(value: float) -> float:
    return min(MOTOR_MAX_POSITION_STEPS, max(MOTOR_MIN_POSITION_STEPS, value))


def round_steps(value: float) -> int:
    """Round to whole steps; non-finite values become 0."""
    if not math.isfinite(value):
        return 0
    return int(round(value))


def _is_upright(rotation: int) -> bool:
    return rotation in (0, 90)


def compute_distributed_axis_target(col: int, cols: int) -> float:
    """Spread columns evenly over the motor range (center for one column)."""
    cols = max(1, cols)
    if cols == 1:
        return clamp_steps((MOTOR_MAX_POSITION_STEPS + MOTOR_MIN_POSITION_STEPS) / 2)
    span = MOTOR_MAX_POSITION_STEPS - MOTOR_MIN_POSITION_STEPS
    return clamp_steps(MOTOR_MIN_POSITION_STEPS + col / (cols - 1) * span)


def compute_nearest_corner_target(
    tile: TileAddress,
    grid_size: GridSize,
    rotation: int,
) -> tuple[float, float]:
    """Aside target toward the corner of the tile's quadrant."""
    is_top = tile.row < (grid_size.rows - 1) / 2
    is_left = tile.col < (grid_size.cols - 1) / 2

    if _is_upright(rotation):
        left_x, right_x = MOTOR_MAX_POSITION_STEPS, MOTOR_MIN_POSITION_STEPS
        top_y, bottom_y = MOTOR_MAX_POSITION_STEPS, MOTOR_MIN_POSITION_STEPS
    else:
        left_x, right_x = MOTOR_MIN_POSITION_STEPS, MOTOR_MAX_POSITION_STEPS
        top_y, bottom_y = MOTOR_MIN_POSITION_STEPS, MOTOR_MAX_POSITION_STEPS

    return (
        left_x if is_left else right_x,
        top_y if is_top else bottom_y,
    )


def compute_pose_targets(
    tile: TileAddress,
    pose: Pose,
    grid_size: GridSize,
    rotation: int = 0,
    staging_position: StagingPosition = StagingPosition.NEAREST_CORNER,
) -> tuple[float, float]:
    """Motor targets (x, y) in steps for a tile pose.

    Parameters
    ----------
    tile : TileAddress
        Tile being posed.
    pose : "home" | "aside"
        ``home`` is (0, 0); ``aside`` parks the tile out of view.
    grid_size : GridSize
        Grid dimensions.
    rotation : int
        Array rotation in degrees.
    staging_position : StagingPosition
        Aside strategy.

    Returns
    -------
    (float, float)
        Unrounded step targets within the motor range.
    """
    if pose == "home":
        return (0.0, 0.0)

    staging_position = StagingPosition(staging_position)
    if staging_position == StagingPosition.NEAREST_CORNER:
        return compute_nearest_corner_target(tile, grid_size, rotation)

    if _is_upright(rotation):
        aside_x, aside_y = MOTOR_MAX_POSITION_STEPS, MOTOR_MIN_POSITION_STEPS
    else:
        aside_x, aside_y = MOTOR_MIN_POSITION_STEPS, MOTOR_MAX_POSITION_STEPS

    if staging_position == StagingPosition.CORNER:
        return (aside_x, aside_y)
    if staging_position == StagingPosition.BOTTOM:
        return (compute_distributed_axis_target(tile.col, grid_size.cols), aside_y)
    return (aside_x, compute_distributed_axis_target(tile.col, grid_size.cols))
