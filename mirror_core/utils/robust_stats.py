"""Robust statistics: median, MAD and outlier detection.

Provides:
    - median(): standard median (mean of the two middle values for even counts)
    - median_absolute_deviation(): raw MAD around the median
    - detect_outliers(): MAD-based classification with threshold and direction
    - robust_max() / robust_min(): extremes with outliers excluded

Used by:
    - Grid blueprint: tile footprint = robust max of blob sizes
    - Blob aggregation: per-axis medians and MADs of raw detector samples
    - Blueprint pitch / origin: median of neighbour deltas and implied origins

The MAD is scaled by 1.4826 (normalized MAD) so that the threshold reads as
"standard deviations" for normally distributed data.

All functions are pure. Classification never reorders entries: inliers and
outliers come back in input order.
"""

from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

import numpy as np

T = TypeVar("T")

NORMALIZED_MAD_FACTOR = 1.4826
DEFAULT_OUTLIER_MAD_THRESHOLD = 3.0

_DIRECTIONS = ("both", "high", "low")


@dataclass
class OutlierDetection(Generic[T]):
    """Result of MAD-based outlier detection.

    Attributes
    ----------
    inliers, outliers : list
        Entries in input order.
    outlier_indices : list[int]
        Input positions of the outliers.
    median, mad, nmad : float
        Center, raw MAD and normalized MAD of the values.
    upper_threshold, lower_threshold : float
        Band edges; values strictly beyond them (in the requested direction)
        are outliers.
    """

    inliers: List[T] = field(default_factory=list)
    outliers: List[T] = field(default_factory=list)
    outlier_indices: List[int] = field(default_factory=list)
    median: float = 0.0
    mad: float = 0.0
    nmad: float = 0.0
    upper_threshold: float = float("inf")
    lower_threshold: float = float("-inf")


def median(values: Sequence[float]) -> float:
    """Median of ``values``; 0.0 for an empty sequence."""
    if len(values) == 0:
        return 0.0
    return float(np.median(np.asarray(values, dtype=np.float64)))


def median_absolute_deviation(
    values: Sequence[float],
    center: Optional[float] = None,
) -> float:
    """Raw median absolute deviation.

    Parameters
    ----------
    values : Sequence[float]
        Sample values.
    center : float, optional
        Reference point; defaults to the median of ``values``.

    Returns
    -------
    float
        ``median(|v - center|)``, or 0.0 for an empty sequence.
    """
    if len(values) == 0:
        return 0.0
    arr = np.asarray(values, dtype=np.float64)
    if center is None:
        center = float(np.median(arr))
    return float(np.median(np.abs(arr - center)))


def detect_outliers(
    entries: Sequence[T],
    value_of: Callable[[T], float],
    threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
    direction: str = "both",
) -> OutlierDetection[T]:
    """Classify entries as inliers or outliers by normalized MAD.

    Parameters
    ----------
    entries : Sequence[T]
        Items to classify (kept intact in the result).
    value_of : Callable[[T], float]
        Extracts the scalar that is tested.
    threshold : float
        Band half-width in normalized MADs, default 3.0.
    direction : str
        ``"high"`` flags only values above the band, ``"low"`` only values
        below it, ``"both"`` either side.

    Returns
    -------
    OutlierDetection
        Inliers, outliers and the thresholds used.

    Raises
    ------
    ValueError
        If ``direction`` is not one of "both", "high", "low".

    Notes
    -----
    Degenerate inputs:
        - empty → empty result with infinite thresholds
        - single entry → it is an inlier
        - MAD == 0 (all values identical, or a majority identical) → every
          entry is an inlier and both thresholds equal the median
    """
    if direction not in _DIRECTIONS:
        raise ValueError(
            f"direction must be one of {_DIRECTIONS}, got {direction!r}"
        )

    items = list(entries)
    if not items:
        return OutlierDetection()

    values = np.asarray([value_of(item) for item in items], dtype=np.float64)
    center = float(np.median(values))

    if len(items) == 1:
        return OutlierDetection(
            inliers=items,
            median=center,
            upper_threshold=center,
            lower_threshold=center,
        )

    mad = float(np.median(np.abs(values - center)))
    nmad = mad * NORMALIZED_MAD_FACTOR

    if mad == 0.0:
        return OutlierDetection(
            inliers=items,
            median=center,
            upper_threshold=center,
            lower_threshold=center,
        )

    deviation = threshold * nmad
    upper = center + deviation
    lower = center - deviation

    result: OutlierDetection[T] = OutlierDetection(
        median=center,
        mad=mad,
        nmad=nmad,
        upper_threshold=upper,
        lower_threshold=lower,
    )
    for idx, (item, value) in enumerate(zip(items, values)):
        is_high = value > upper
        is_low = value < lower
        if direction == "high":
            flagged = is_high
        elif direction == "low":
            flagged = is_low
        else:
            flagged = is_high or is_low

        if flagged:
            result.outliers.append(item)
            result.outlier_indices.append(idx)
        else:
            result.inliers.append(item)
    return result


def robust_max(
    values: Sequence[float],
    threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
) -> float:
    """Maximum of ``values`` ignoring high-side outliers.

    Examples
    --------
    >>> robust_max([0.1, 0.12, 0.14, 0.16, 1.0])
    0.16
    """
    if len(values) == 0:
        return 0.0
    detection = detect_outliers(values, float, threshold, direction="high")
    if not detection.inliers:
        return float(max(values))
    return float(max(detection.inliers))


def robust_min(
    values: Sequence[float],
    threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
) -> float:
    """Minimum of ``values`` ignoring low-side outliers."""
    if len(values) == 0:
        return 0.0
    detection = detect_outliers(values, float, threshold, direction="low")
    if not detection.inliers:
        return float(min(values))
    return float(min(detection.inliers))
