"""Pattern ↔ camera coordinate conversion.

Two coordinate spaces meet at the playback boundary:

Pattern space (isotropic)
    [-1, 1]² square authored independently of the camera and of how the
    mirror array is mounted.  A circle is a circle.

Centered space (anisotropic)
    Camera-referenced [-1, 1] on both axes, so one unit of Y covers fewer
    pixels than one unit of X on a wide sensor.  Blob measurements, grid
    blueprints and calibrated bounds all live here.

Forward transform (pattern → centered):
    1. rotate clockwise by the array rotation (0/90/180/270 only)
    2. scale Y by the camera aspect (width / height)

The inverse unscales Y and rotates counter-clockwise; the round trip is exact
up to floating-point error for every supported rotation.

Viewport space ([0, 1], top-left origin) is what the blob selector works in;
``centered_to_viewport`` / ``viewport_to_centered`` bridge the two.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

Point = Tuple[float, float]

DEFAULT_CAMERA_ASPECT = 16.0 / 9.0
ARRAY_ROTATIONS = (0, 90, 180, 270)


@dataclass(frozen=True)
class SpaceParams:
    """Aspect ratio and array rotation used by the conversions."""

    aspect: float = DEFAULT_CAMERA_ASPECT
    rotation: int = 0

    @classmethod
    def from_optional(
        cls,
        aspect: Optional[float] = None,
        rotation: Optional[int] = None,
    ) -> "SpaceParams":
        """Build params, substituting defaults for missing values."""
        return cls(
            aspect=DEFAULT_CAMERA_ASPECT if aspect is None else float(aspect),
            rotation=0 if rotation is None else validate_rotation(rotation),
        )


def validate_rotation(rotation: int) -> int:
    """Return ``rotation`` if it is a supported quarter turn.

    Raises
    ------
    ValueError
        For any angle other than 0, 90, 180 or 270.
    """
    if rotation not in ARRAY_ROTATIONS:
        raise ValueError(
            f"Array rotation must be one of {ARRAY_ROTATIONS}, got {rotation}"
        )
    return int(rotation)


def rotate_vector(point: Point, rotation: int) -> Point:
    """Rotate ``point`` clockwise by ``rotation`` degrees.

    Examples
    --------
    >>> rotate_vector((1.0, 0.0), 90)
    (0.0, -1.0)
    """
    x, y = point
    rotation = validate_rotation(rotation)
    if rotation == 90:
        return (y, -x)
    if rotation == 180:
        return (-x, -y)
    if rotation == 270:
        return (-y, x)
    return (x, y)


def inverse_rotate_vector(point: Point, rotation: int) -> Point:
    """Undo :func:`rotate_vector` (counter-clockwise by ``rotation``)."""
    rotation = validate_rotation(rotation)
    inverse = {0: 0, 90: 270, 180: 180, 270: 90}[rotation]
    return rotate_vector(point, inverse)


def pattern_to_centered(
    point: Point,
    aspect: float = DEFAULT_CAMERA_ASPECT,
    rotation: int = 0,
) -> Point:
    """Map an isotropic pattern point into camera-centered space.

    Parameters
    ----------
    point : (float, float)
        Pattern-space coordinate.
    aspect : float
        Camera width / height.
    rotation : int
        Clockwise array rotation in degrees.

    Returns
    -------
    (float, float)
        Centered-space coordinate.  Pattern Y = 1 lands at centered
        Y = aspect, which may be outside the frame.
    """
    x, y = rotate_vector(point, rotation)
    return (x, y * aspect)


def centered_to_pattern(
    point: Point,
    aspect: float = DEFAULT_CAMERA_ASPECT,
    rotation: int = 0,
) -> Point:
    """Exact inverse of :func:`pattern_to_centered`."""
    x, y = point
    return inverse_rotate_vector((x, y / aspect), rotation)


def centered_bounds_to_pattern(
    bounds: Tuple[Point, Point],
    aspect: float = DEFAULT_CAMERA_ASPECT,
    rotation: int = 0,
) -> Tuple[Point, Point]:
    """Convert a centered-space box to its pattern-space bounding box.

    Parameters
    ----------
    bounds : ((x_min, x_max), (y_min, y_max))
        Axis-aligned box in centered space.

    Returns
    -------
    ((x_min, x_max), (y_min, y_max))
        Axis-aligned box enclosing all four transformed corners.
    """
    (x_min, x_max), (y_min, y_max) = bounds
    corners = [
        centered_to_pattern((cx, cy), aspect, rotation)
        for cx in (x_min, x_max)
        for cy in (y_min, y_max)
    ]
    xs = [c[0] for c in corners]
    ys = [c[1] for c in corners]
    return (min(xs), max(xs)), (min(ys), max(ys))


def centered_to_viewport(value: float) -> float:
    """Centered [-1, 1] → viewport [0, 1] (single axis)."""
    return (value + 1.0) / 2.0


def viewport_to_centered(value: float) -> float:
    """Viewport [0, 1] → centered [-1, 1] (single axis)."""
    return value * 2.0 - 1.0
