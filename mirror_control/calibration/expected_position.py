"""Where the next tile's blob should appear in the camera view.

The blob selector uses this to pick the right detection when stray
reflections are visible.  The first tile is searched for at the left edge
of the region of interest; every later tile is predicted from a grid
fitted to the tiles measured so far.

All positions here are in viewport [0, 1] coordinates (top-left origin).
Grid indices are first mapped into camera orientation, since a rotated
array shows its rows and columns turned in the image.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from mirror_core.utils.space import centered_to_viewport, validate_rotation
from mirror_control.calibration.types import GridSize, Vec2

DEFAULT_TILE_SPACING = 0.15


@dataclass(frozen=True)
class Roi:
    """Normalized region of interest (viewport units)."""

    x: float = 0.15
    y: float = 0.15
    width: float = 0.7
    height: float = 0.7


@dataclass(frozen=True)
class TileMeasurement:
    """A measured tile with its blob position in centered coordinates."""

    row: int
    col: int
    position: Vec2


@dataclass(frozen=True)
class GridEstimate:
    origin_x: float
    origin_y: float
    spacing_x: float
    spacing_y: float


def transform_tile_to_camera(
    row: int,
    col: int,
    grid_size: GridSize,
    rotation: int,
) -> tuple[int, int]:
    """Map array (row, col) to the (row, col) seen by the camera."""
    rotation = validate_rotation(rotation)
    if rotation == 90:
        return col, grid_size.rows - 1 - row
    if rotation == 180:
        return grid_size.rows - 1 - row, grid_size.cols - 1 - col
    if rotation == 270:
        return grid_size.cols - 1 - col, row
    return row, col


def estimate_grid_from_measurements(
    measurements: Sequence[TileMeasurement],
    grid_size: GridSize,
    rotation: int,
) -> GridEstimate:
    """Fit origin and spacing to measured tiles.

    Spacing is the mean distance between camera-adjacent pairs (default
    0.15 when no pair exists); the origin is the mean of the origins each
    tile implies.

    Raises
    ------
    ValueError
        If ``measurements`` is empty.
    """
    if not measurements:
        raise ValueError("At least one measurement is required")

    cam = []
    for m in measurements:
        cam_row, cam_col = transform_tile_to_camera(m.row, m.col, grid_size, rotation)
        cam.append((
            cam_row,
            cam_col,
            centered_to_viewport(m.position.x),
            centered_to_viewport(m.position.y),
        ))

    if len(cam) == 1:
        row, col, x, y = cam[0]
        return GridEstimate(
            origin_x=x - col * DEFAULT_TILE_SPACING,
            origin_y=y - row * DEFAULT_TILE_SPACING,
            spacing_x=DEFAULT_TILE_SPACING,
            spacing_y=DEFAULT_TILE_SPACING,
        )

    gaps_x: list[float] = []
    gaps_y: list[float] = []
    for i, (row_a, col_a, x_a, y_a) in enumerate(cam):
        for row_b, col_b, x_b, y_b in cam[i + 1:]:
            if row_a == row_b and abs(col_a - col_b) == 1:
                gaps_x.append(abs(x_a - x_b))
            if col_a == col_b and abs(row_a - row_b) == 1:
                gaps_y.append(abs(y_a - y_b))

    spacing_x = sum(gaps_x) / len(gaps_x) if gaps_x else DEFAULT_TILE_SPACING
    spacing_y = sum(gaps_y) / len(gaps_y) if gaps_y else DEFAULT_TILE_SPACING

    origin_x = sum(x - col * spacing_x for _, col, x, _ in cam) / len(cam)
    origin_y = sum(y - row * spacing_y for row, _, _, y in cam) / len(cam)
    return GridEstimate(origin_x, origin_y, spacing_x, spacing_y)


def compute_expected_blob_position(
    row: int,
    col: int,
    completed: Sequence[TileMeasurement],
    grid_size: GridSize,
    rotation: int = 0,
    roi: Roi | None = None,
) -> tuple[float, float]:
    """Predicted viewport position of tile (row, col)'s blob."""
    roi = roi or Roi()
    if not completed:
        return (roi.x, roi.y + roi.height / 2.0)

    estimate = estimate_grid_from_measurements(completed, grid_size, rotation)
    cam_row, cam_col = transform_tile_to_camera(row, col, grid_size, rotation)
    return (
        estimate.origin_x + cam_col * estimate.spacing_x,
        estimate.origin_y + cam_row * estimate.spacing_y,
    )
