"""Calibration data model.

Everything that flows between the runner, the calibration math, the
profile builder and the playback planner is defined here as plain
dataclasses.  Positions and sizes are in camera-centered space
([-1, 1] on both axes, anisotropic) unless a field says otherwise.

Tiles are identified by ``TileAddress``; its ``key`` (``"row-col"``) is
what profiles and summaries are keyed on, and ``index(cols)`` is the
row-major slot in the runner's dense per-tile list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Literal

Axis = Literal["x", "y"]
AXES: tuple[Axis, Axis] = ("x", "y")


# ---------------------------------------------------------------------------
# Addressing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GridSize:
    """Grid dimensions (rows x cols)."""

    rows: int
    cols: int

    def __post_init__(self) -> None:
        if self.rows < 1 or self.cols < 1:
            raise ValueError(
                f"Grid must have at least one row and column, got "
                f"{self.rows}x{self.cols}"
            )

    @property
    def tile_count(self) -> int:
        return self.rows * self.cols

    def addresses(self) -> list[TileAddress]:
        """All tile addresses in row-major order."""
        return [
            TileAddress(row, col)
            for row in range(self.rows)
            for col in range(self.cols)
        ]


@dataclass(frozen=True, order=True)
class TileAddress:
    """Grid position of one mirror tile."""

    row: int
    col: int

    @property
    def key(self) -> str:
        return f"{self.row}-{self.col}"

    def index(self, cols: int) -> int:
        """Row-major slot for a grid with ``cols`` columns."""
        return self.row * cols + self.col

    @classmethod
    def from_key(cls, key: str) -> TileAddress:
        """Parse ``"row-col"``.

        Raises
        ------
        ValueError
            If the key is not two dash-separated integers.
        """
        parts = key.split("-")
        if len(parts) != 2:
            raise ValueError(f"Invalid tile key: {key!r}")
        return cls(int(parts[0]), int(parts[1]))


@dataclass(frozen=True)
class Motor:
    """One stepper axis on one controller."""

    controller_id: str
    axis_index: int

    @property
    def key(self) -> str:
        return f"{self.controller_id}:{self.axis_index}"


@dataclass(frozen=True)
class AxisAssignment:
    """Motors driving a tile's two tilt axes."""

    x: Motor | None = None
    y: Motor | None = None

    @property
    def calibratable(self) -> bool:
        return self.x is not None and self.y is not None

    def motor(self, axis: Axis) -> Motor | None:
        return self.x if axis == "x" else self.y


# Tile key -> assignment; a missing key means "unassigned".
MirrorConfig = Dict[str, AxisAssignment]


# ---------------------------------------------------------------------------
# Measurements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Vec2:
    x: float
    y: float


@dataclass(frozen=True)
class BlobPoint:
    """Per-axis triple used for aggregation medians and MADs."""

    x: float
    y: float
    size: float


@dataclass(frozen=True)
class BlobThresholds:
    min_samples: int
    max_median_deviation_pt: float


@dataclass(frozen=True)
class BlobStats:
    """Diagnostics of the sample aggregation behind a measurement."""

    sample_count: int
    thresholds: BlobThresholds
    median: BlobPoint
    mad: BlobPoint
    passed: bool


@dataclass(frozen=True)
class BlobMeasurement:
    """Aggregated blob position and size in centered space."""

    x: float
    y: float
    size: float
    response: float = 0.0
    captured_at: float = 0.0
    source_width: float | None = None
    source_height: float | None = None
    stats: BlobStats | None = None


# ---------------------------------------------------------------------------
# Per-run tile state
# ---------------------------------------------------------------------------


class TileStatus(str, Enum):
    """Lifecycle of a tile within one calibration run."""

    PENDING = "pending"
    STAGED = "staged"
    MEASURING = "measuring"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Slope:
    """Centered displacement per motor step; None where the test failed."""

    x: float | None = None
    y: float | None = None

    def axis(self, axis: Axis) -> float | None:
        return self.x if axis == "x" else self.y


@dataclass
class TileMetrics:
    home: BlobMeasurement | None = None
    home_offset: Vec2 | None = None
    ideal_target: Vec2 | None = None
    step_to_displacement: Slope | None = None
    size_delta_at_step_test: float | None = None


@dataclass
class TileRunState:
    tile: TileAddress
    status: TileStatus = TileStatus.PENDING
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    metrics: TileMetrics = field(default_factory=TileMetrics)
    assignment: AxisAssignment = field(default_factory=AxisAssignment)


# ---------------------------------------------------------------------------
# Bounds and blueprint
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AxisBounds:
    min: float
    max: float

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


@dataclass(frozen=True)
class Bounds:
    x: AxisBounds
    y: AxisBounds

    def axis(self, axis: Axis) -> AxisBounds:
        return self.x if axis == "x" else self.y

    def contains(self, point: Vec2) -> bool:
        return self.x.contains(point.x) and self.y.contains(point.y)


@dataclass(frozen=True)
class GridBlueprint:
    """Idealized grid geometry inferred from home measurements.

    ``origin_*`` is the top-left corner of tile (0, 0) after recentering;
    ``camera_offset_*`` is what was subtracted to center the grid.
    """

    tile_width: float
    tile_height: float
    gap_x: float
    gap_y: float
    origin_x: float
    origin_y: float
    camera_offset_x: float
    camera_offset_y: float
    source_width: float
    source_height: float


@dataclass(frozen=True)
class OutlierAnalysis:
    """Record of the robust tile-size computation."""

    enabled: bool = False
    outlier_tile_keys: tuple[str, ...] = ()
    outlier_count: int = 0
    median: float = 0.0
    mad: float = 0.0
    nmad: float = 0.0
    upper_threshold: float = 0.0
    computed_tile_size: float = 0.0


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdjustedHome:
    """Ideal tile center plus the alignment steps that reach it."""

    x: float
    y: float
    steps_x: int | None = None
    steps_y: int | None = None


@dataclass(frozen=True)
class CameraInfo:
    source_width: float
    source_height: float


@dataclass
class TileSummary:
    tile: TileAddress
    status: TileStatus
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    home_measurement: BlobMeasurement | None = None
    home_offset: Vec2 | None = None
    adjusted_home: AdjustedHome | None = None
    step_to_displacement: Slope | None = None
    step_scale: Slope | None = None
    size_delta_at_step_test: float | None = None
    motor_reach_bounds: Bounds | None = None
    footprint_bounds: Bounds | None = None
    combined_bounds: Bounds | None = None


@dataclass
class CalibrationRunSummary:
    blueprint: GridBlueprint | None
    camera: CameraInfo | None
    delta_steps: int
    tiles: dict[str, TileSummary]
    outlier_analysis: OutlierAnalysis


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepRange:
    min_steps: int
    max_steps: int

    def contains(self, steps: float) -> bool:
        return self.min_steps <= steps <= self.max_steps


@dataclass
class ProfileTile:
    key: str
    row: int
    col: int
    status: TileStatus
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    adjusted_home: AdjustedHome | None = None
    home_offset: Vec2 | None = None
    home_measurement: BlobMeasurement | None = None
    step_to_displacement: Slope | None = None
    size_delta_at_step_test: float | None = None
    blob_size: float | None = None
    combined_bounds: Bounds | None = None
    step_range: dict[str, StepRange] | None = None


@dataclass(frozen=True)
class ProfileMetrics:
    total_tiles: int = 0
    completed_tiles: int = 0
    failed_tiles: int = 0
    skipped_tiles: int = 0


@dataclass
class CalibrationProfile:
    """Durable output of a calibration run."""

    id: str
    name: str
    created_at: str
    grid_size: GridSize
    array_rotation: int
    camera_aspect: float | None
    blueprint: GridBlueprint | None
    delta_steps: int
    tiles: dict[str, ProfileTile]
    metrics: ProfileMetrics = field(default_factory=ProfileMetrics)


# ---------------------------------------------------------------------------
# Pattern
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternPoint:
    """Point in isotropic pattern space."""

    id: str
    x: float
    y: float


@dataclass(frozen=True)
class Pattern:
    id: str
    points: tuple[PatternPoint, ...] = ()
    name: str = ""
