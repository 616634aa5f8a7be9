"""Grid blueprint inference from home measurements.

Given the blob measured at each tile's home position, infer the ideal
regular grid those blobs should sit on:

    1. tile size   = robust max of blob sizes (fallback when no pitch)
    2. pitch       = median neighbour distance, measured isotropically
    3. tile extent = pitch - gap, converted back to anisotropic units
    4. origin      = median of the origins implied by each tile
    5. recenter    = shift the whole grid so it is centered on the camera

The isotropic step matters on wide sensors: a square grid appears
stretched in centered coordinates, and measuring pitch without undoing
that would give different X and Y pitches for the same physical spacing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from mirror_core.utils.robust_stats import (
    DEFAULT_OUTLIER_MAD_THRESHOLD,
    detect_outliers,
    median,
)
from mirror_control.calibration.bounds import (
    DEFAULT_SOURCE_HEIGHT,
    DEFAULT_SOURCE_WIDTH,
)
from mirror_control.calibration.types import (
    BlobMeasurement,
    GridBlueprint,
    GridSize,
    OutlierAnalysis,
    TileAddress,
)

logger = logging.getLogger(__name__)

GRID_GAP_MIN_NORMALIZED = 0.0
GRID_GAP_MAX_NORMALIZED = 0.5


@dataclass(frozen=True)
class RobustTileSizeConfig:
    """Outlier rejection for the tile-size estimate."""

    enabled: bool = True
    mad_threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD


@dataclass(frozen=True)
class MeasuredTile:
    tile: TileAddress
    measurement: BlobMeasurement


# ---------------------------------------------------------------------------
# Pieces
# ---------------------------------------------------------------------------


def compute_tile_size(
    measured: Sequence[MeasuredTile],
    robust: RobustTileSizeConfig,
) -> tuple[float, OutlierAnalysis]:
    """Largest blob size, ignoring high outliers when robust sizing is on."""
    if robust.enabled and len(measured) > 1:
        detection = detect_outliers(
            measured,
            lambda entry: entry.measurement.size,
            threshold=robust.mad_threshold,
            direction="high",
        )
        pool = detection.inliers or list(measured)
        size = max(entry.measurement.size for entry in pool)
        analysis = OutlierAnalysis(
            enabled=True,
            outlier_tile_keys=tuple(e.tile.key for e in detection.outliers),
            outlier_count=len(detection.outliers),
            median=detection.median,
            mad=detection.mad,
            nmad=detection.nmad,
            upper_threshold=detection.upper_threshold,
            computed_tile_size=size,
        )
        if detection.outliers:
            logger.info(
                "Excluded %d oversized blob(s) from tile sizing: %s",
                len(detection.outliers),
                ", ".join(analysis.outlier_tile_keys),
            )
        return size, analysis

    size = max((entry.measurement.size for entry in measured), default=0.0)
    return size, OutlierAnalysis(
        enabled=False,
        median=size,
        upper_threshold=size,
        computed_tile_size=size,
    )


def compute_isotropic_pitch(
    measured: Sequence[MeasuredTile],
    iso_x: float,
    iso_y: float,
) -> float:
    """Median neighbour distance in isotropic units; 0 when no neighbours."""
    by_key = {entry.tile.key: entry.measurement for entry in measured}
    deltas_x: list[float] = []
    deltas_y: list[float] = []
    for entry in measured:
        row, col = entry.tile.row, entry.tile.col
        right = by_key.get(f"{row}-{col + 1}")
        if right is not None:
            deltas_x.append(abs((right.x - entry.measurement.x) * iso_x))
        below = by_key.get(f"{row + 1}-{col}")
        if below is not None:
            deltas_y.append(abs((below.y - entry.measurement.y) * iso_y))

    pitch_x = median(deltas_x) if deltas_x else 0.0
    pitch_y = median(deltas_y) if deltas_y else 0.0
    if pitch_y <= 0 and pitch_x > 0:
        pitch_y = pitch_x

    if pitch_x > 0 and pitch_y > 0:
        return (pitch_x + pitch_y) / 2.0
    if pitch_x > 0:
        return pitch_x
    return pitch_y if pitch_y > 0 else 0.0


def clamp_gap(gap_normalized: float) -> float:
    """Clamp a [0, 0.5] gap setting and convert it to centered units."""
    clamped = max(GRID_GAP_MIN_NORMALIZED, min(GRID_GAP_MAX_NORMALIZED, gap_normalized))
    return clamped * 2.0


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------


def compute_grid_blueprint(
    measured: Sequence[MeasuredTile],
    grid_size: GridSize,
    gap_normalized: float = 0.0,
    robust: RobustTileSizeConfig | None = None,
) -> tuple[GridBlueprint | None, OutlierAnalysis]:
    """Infer the ideal grid from home measurements.

    Parameters
    ----------
    measured : Sequence[MeasuredTile]
        Tiles with a home measurement, in any order.
    grid_size : GridSize
        Full grid dimensions (unmeasured tiles still occupy space).
    gap_normalized : float
        Inter-tile gap setting, clamped to [0, 0.5].
    robust : RobustTileSizeConfig, optional
        Tile-size outlier rejection; enabled with threshold 3.0 by default.

    Returns
    -------
    (GridBlueprint | None, OutlierAnalysis)
        None blueprint when nothing was measured.
    """
    robust = robust or RobustTileSizeConfig()
    if not measured:
        return None, OutlierAnalysis(enabled=robust.enabled)

    first = measured[0].measurement
    source_width = first.source_width or DEFAULT_SOURCE_WIDTH
    source_height = first.source_height or DEFAULT_SOURCE_HEIGHT

    tile_size, analysis = compute_tile_size(measured, robust)

    avg = (source_width + source_height) / 2.0
    iso_x = source_width / avg
    iso_y = source_height / avg

    gap = clamp_gap(gap_normalized)
    pitch = compute_isotropic_pitch(measured, iso_x, iso_y)

    tile_width = tile_size
    tile_height = tile_size
    if pitch > gap:
        iso_tile = pitch - gap
        tile_width = iso_tile / iso_x
        tile_height = iso_tile / iso_y
    elif pitch > 0:
        logger.warning(
            "Gap %.4f leaves no room for tiles at pitch %.4f; using blob size %.4f",
            gap, pitch, tile_size,
        )

    spacing_x = tile_width + gap
    spacing_y = tile_height + gap
    half_x = tile_width / 2.0
    half_y = tile_height / 2.0

    implied_x = [
        e.measurement.x - (e.tile.col * spacing_x + half_x) for e in measured
    ]
    implied_y = [
        e.measurement.y - (e.tile.row * spacing_y + half_y) for e in measured
    ]
    origin_x = median(implied_x)
    origin_y = median(implied_y)

    total_width = grid_size.cols * spacing_x - gap
    total_height = grid_size.rows * spacing_y - gap
    offset_x = origin_x + total_width / 2.0
    offset_y = origin_y + total_height / 2.0

    blueprint = GridBlueprint(
        tile_width=tile_width,
        tile_height=tile_height,
        gap_x=gap,
        gap_y=gap,
        origin_x=origin_x - offset_x,
        origin_y=origin_y - offset_y,
        camera_offset_x=offset_x,
        camera_offset_y=offset_y,
        source_width=source_width,
        source_height=source_height,
    )
    logger.debug(
        "Blueprint: tile=%.4fx%.4f gap=%.4f pitch=%.4f offset=(%.4f, %.4f)",
        tile_width, tile_height, gap, pitch, offset_x, offset_y,
    )
    return blueprint, analysis
