"""YAML schema validation for calibration profiles and playback patterns.

Provides pydantic models for the two documents that cross the process
boundary:
    - Profile schema (mirror_profile.v1): grid blueprint, per-tile adjusted
      homes, slopes, bounds and step ranges produced by a calibration run
    - Pattern schema (pattern.v1): isotropic [-1, 1]² points to reproduce

Loading goes through these validators so a hand-edited or truncated file
fails fast with the path and offending field in the message instead of
surfacing later as a planner error.

Units:
    - Positions, sizes, bounds: camera-centered [-1, 1] (profile)
      or isotropic pattern space (pattern)
    - Steps: integer motor steps
    - Slopes: centered units per step

Usage:
    from mirror_core.utils import validators

    doc = validators.load_profile_document("profiles/wall.yaml")
    pattern = validators.load_pattern_document("patterns/ring.yaml")
"""

import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PROFILE_SCHEMA = "mirror_profile.v1"
PATTERN_SCHEMA = "pattern.v1"

TILE_STATUSES = ("pending", "staged", "measuring", "completed", "failed", "skipped")


# ============================================================================
# PROFILE SCHEMA V1
# ============================================================================

class AxisBoundsV1(BaseModel):
    """Closed interval on one axis (centered units)."""
    min: float
    max: float

    @model_validator(mode='after')
    def validate_order(self) -> 'AxisBoundsV1':
        if self.min > self.max:
            raise ValueError(f"Axis bounds min={self.min} exceeds max={self.max}")
        return self


class BoundsV1(BaseModel):
    """Axis-aligned box in centered space."""
    x: AxisBoundsV1
    y: AxisBoundsV1


class GridSizeV1(BaseModel):
    rows: int = Field(..., ge=1, description="Number of tile rows")
    cols: int = Field(..., ge=1, description="Number of tile columns")


class BlueprintV1(BaseModel):
    """Grid blueprint (recentered on the camera)."""
    tile_width: float
    tile_height: float
    gap_x: float = Field(..., ge=0.0, le=1.0)
    gap_y: float = Field(..., ge=0.0, le=1.0)
    origin_x: float
    origin_y: float
    camera_offset_x: float = 0.0
    camera_offset_y: float = 0.0
    source_width: float = Field(1920.0, gt=0.0)
    source_height: float = Field(1080.0, gt=0.0)


class BlobStatsPointV1(BaseModel):
    x: float
    y: float
    size: float


class BlobStatsV1(BaseModel):
    """Aggregation diagnostics attached to a measurement."""
    sample_count: int = Field(..., ge=0)
    min_samples: int = Field(..., ge=1)
    max_median_deviation_pt: float = Field(..., ge=0.0)
    median: BlobStatsPointV1
    mad: BlobStatsPointV1
    passed: bool


class MeasurementV1(BaseModel):
    """Blob measurement in centered space."""
    x: float
    y: float
    size: float = Field(..., ge=0.0)
    response: float = 0.0
    captured_at: float = 0.0
    source_width: Optional[float] = None
    source_height: Optional[float] = None
    stats: Optional[BlobStatsV1] = None


class Vec2V1(BaseModel):
    x: float
    y: float


class AdjustedHomeV1(BaseModel):
    """Ideal home in centered space plus the alignment steps that reach it."""
    x: float
    y: float
    steps_x: Optional[int] = None
    steps_y: Optional[int] = None


class SlopeV1(BaseModel):
    """Centered units per motor step; None when the step test failed."""
    x: Optional[float] = None
    y: Optional[float] = None

    @field_validator('x', 'y')
    @classmethod
    def validate_finite(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not math.isfinite(v):
            raise ValueError(f"Slope must be finite, got {v}")
        return v


class StepRangeV1(BaseModel):
    min_steps: int
    max_steps: int

    @model_validator(mode='after')
    def validate_order(self) -> 'StepRangeV1':
        if self.min_steps >= self.max_steps:
            raise ValueError(
                f"Step range min_steps={self.min_steps} must be below "
                f"max_steps={self.max_steps}"
            )
        return self


class ProfileTileV1(BaseModel):
    """Per-tile calibration entry."""
    key: str
    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    status: str = "pending"
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    adjusted_home: Optional[AdjustedHomeV1] = None
    home_offset: Optional[Vec2V1] = None
    home_measurement: Optional[MeasurementV1] = None
    step_to_displacement: Optional[SlopeV1] = None
    size_delta_at_step_test: Optional[float] = None
    blob_size: Optional[float] = None
    combined_bounds: Optional[BoundsV1] = None
    step_range: Optional[Dict[str, StepRangeV1]] = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in TILE_STATUSES:
            raise ValueError(f"Unknown tile status '{v}', expected one of {TILE_STATUSES}")
        return v

    @field_validator('step_range')
    @classmethod
    def validate_step_range_axes(
        cls, v: Optional[Dict[str, StepRangeV1]]
    ) -> Optional[Dict[str, StepRangeV1]]:
        if v is not None:
            unknown = set(v) - {"x", "y"}
            if unknown:
                raise ValueError(f"step_range axes must be 'x'/'y', got {sorted(unknown)}")
        return v

    @model_validator(mode='after')
    def validate_key(self) -> 'ProfileTileV1':
        expected = f"{self.row}-{self.col}"
        if self.key != expected:
            raise ValueError(f"Tile key '{self.key}' does not match row/col ({expected})")
        return self


class ProfileMetricsV1(BaseModel):
    total_tiles: int = Field(0, ge=0)
    completed_tiles: int = Field(0, ge=0)
    failed_tiles: int = Field(0, ge=0)
    skipped_tiles: int = Field(0, ge=0)


class ProfileV1(BaseModel):
    """Calibration profile (mirror_profile.v1 schema)."""
    model_config = ConfigDict(populate_by_name=True)

    schema_version: str = Field(PROFILE_SCHEMA, alias="schema")
    id: str
    name: str = ""
    created_at: str = ""
    grid_size: GridSizeV1
    array_rotation: int = 0
    camera_aspect: Optional[float] = Field(None, gt=0.0)
    blueprint: Optional[BlueprintV1] = None
    delta_steps: int = Field(..., gt=0)
    tiles: Dict[str, ProfileTileV1] = Field(default_factory=dict)
    metrics: ProfileMetricsV1 = Field(default_factory=ProfileMetricsV1)

    @field_validator('schema_version')
    @classmethod
    def validate_schema(cls, v: str) -> str:
        if v != PROFILE_SCHEMA:
            raise ValueError(f"Expected schema '{PROFILE_SCHEMA}', got '{v}'")
        return v

    @field_validator('array_rotation')
    @classmethod
    def validate_rotation(cls, v: int) -> int:
        if v not in (0, 90, 180, 270):
            raise ValueError(f"array_rotation must be 0, 90, 180 or 270, got {v}")
        return v

    @model_validator(mode='after')
    def validate_tiles_in_grid(self) -> 'ProfileV1':
        rows, cols = self.grid_size.rows, self.grid_size.cols
        for key, tile in self.tiles.items():
            if key != tile.key:
                raise ValueError(f"Tile map key '{key}' differs from tile key '{tile.key}'")
            if tile.row >= rows or tile.col >= cols:
                raise ValueError(
                    f"Tile {key} lies outside the {rows}x{cols} grid"
                )
        return self


# ============================================================================
# PATTERN SCHEMA V1
# ============================================================================

class PatternPointV1(BaseModel):
    """Point in isotropic pattern space."""
    id: str
    x: float = Field(..., ge=-1.0, le=1.0)
    y: float = Field(..., ge=-1.0, le=1.0)


class PatternV1(BaseModel):
    """Playback pattern (pattern.v1 schema)."""
    model_config = ConfigDict(populate_by_name=True)

    schema_version: str = Field(PATTERN_SCHEMA, alias="schema")
    id: str
    name: str = ""
    points: List[PatternPointV1] = Field(default_factory=list)

    @field_validator('schema_version')
    @classmethod
    def validate_schema(cls, v: str) -> str:
        if v != PATTERN_SCHEMA:
            raise ValueError(f"Expected schema '{PATTERN_SCHEMA}', got '{v}'")
        return v

    @model_validator(mode='after')
    def validate_unique_ids(self) -> 'PatternV1':
        seen = set()
        for point in self.points:
            if point.id in seen:
                raise ValueError(f"Duplicate pattern point id '{point.id}'")
            seen.add(point.id)
        return self


# ============================================================================
# PUBLIC API
# ============================================================================

def validate_profile_dict(data: Dict[str, Any], source: str = "<dict>") -> ProfileV1:
    """Validate an already-parsed profile mapping.

    Raises
    ------
    ValueError
        If validation fails; the message names ``source``.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Profile validation failed at {source}: expected a mapping")
    try:
        return ProfileV1(**data)
    except Exception as e:
        raise ValueError(f"Profile validation failed at {source}: {e}") from e


def validate_pattern_dict(data: Dict[str, Any], source: str = "<dict>") -> PatternV1:
    """Validate an already-parsed pattern mapping.

    Raises
    ------
    ValueError
        If validation fails; the message names ``source``.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Pattern validation failed at {source}: expected a mapping")
    try:
        return PatternV1(**data)
    except Exception as e:
        raise ValueError(f"Pattern validation failed at {source}: {e}") from e


def load_profile_document(path: Union[str, Path]) -> ProfileV1:
    """Load and validate a calibration profile from YAML.

    Parameters
    ----------
    path : Union[str, Path]
        Path to a mirror_profile.v1 file

    Returns
    -------
    ProfileV1
        Validated profile document

    Raises
    ------
    FileNotFoundError
        If path doesn't exist
    ValueError
        If validation fails (with actionable error message)
    """
    from . import fs

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Profile not found: {path}")

    return validate_profile_dict(fs.load_yaml(path), str(path))


def load_pattern_document(path: Union[str, Path]) -> PatternV1:
    """Load and validate a playback pattern from YAML.

    Raises
    ------
    FileNotFoundError
        If path doesn't exist
    ValueError
        If validation fails
    """
    from . import fs

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pattern not found: {path}")

    return validate_pattern_dict(fs.load_yaml(path), str(path))


def dump_document(doc: BaseModel) -> Dict[str, Any]:
    """Serialize a validated document to plain YAML-safe types."""
    return doc.model_dump(by_alias=True, mode='json')
