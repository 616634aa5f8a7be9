"""Blob sample aggregation.

A single detector frame is too noisy to calibrate against.  A capture
therefore collects ``min_samples`` raw samples and reduces them to
per-axis medians; the result is only accepted if every sample and every
per-axis MAD lies within ``max_median_deviation_pt`` of the median.

Samples that disagree wildly with the ones already accepted (a stray
reflection, a frame caught mid-move) are dropped before aggregation
rather than failing the capture.

The polling loop that feeds these helpers lives in
``mirror_control.hardware.capture``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from mirror_core.utils.robust_stats import median
from mirror_core.utils.space import centered_to_viewport
from mirror_control.calibration.types import (
    BlobMeasurement,
    BlobPoint,
    BlobStats,
    BlobThresholds,
)


@dataclass(frozen=True)
class DetectionThresholds:
    """Sample-aggregation settings."""

    min_samples: int = 5
    max_median_deviation_pt: float = 0.005
    ignore_sample_above_deviation_pt: float = 0.1
    capture_delay_ms: int = 100
    poll_interval_ms: int = 50


@dataclass(frozen=True)
class BlobSample:
    """One raw detection in centered coordinates."""

    x: float
    y: float
    size: float
    response: float = 0.0
    captured_at: float = 0.0
    source_width: float | None = None
    source_height: float | None = None


@dataclass(frozen=True)
class AggregatedBlob:
    """Aggregated measurement plus the per-sample diagnostics behind it."""

    measurement: BlobMeasurement
    stats: BlobStats
    max_mad: float
    deviation_x: tuple[float, ...]
    deviation_y: tuple[float, ...]
    deviation_size: tuple[float, ...]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def aggregate_blob_samples(
    samples: Sequence[BlobSample],
    thresholds: DetectionThresholds | None = None,
) -> AggregatedBlob:
    """Reduce samples to a median measurement with stability stats.

    Raises
    ------
    ValueError
        If ``samples`` is empty.
    """
    if not samples:
        raise ValueError("Cannot aggregate an empty sample list")
    thresholds = thresholds or DetectionThresholds()

    xs = [s.x for s in samples]
    ys = [s.y for s in samples]
    sizes = [s.size for s in samples]
    med_x, med_y, med_size = median(xs), median(ys), median(sizes)
    med_response = median([s.response for s in samples])

    dev_x = tuple(abs(v - med_x) for v in xs)
    dev_y = tuple(abs(v - med_y) for v in ys)
    dev_size = tuple(abs(v - med_size) for v in sizes)
    mad = BlobPoint(x=median(dev_x), y=median(dev_y), size=median(dev_size))

    limit = thresholds.max_median_deviation_pt
    max_deviation = max(dev_x + dev_y + dev_size)
    max_mad = max(mad.x, mad.y, mad.size)
    passed = max_deviation <= limit and max_mad <= limit

    stats = BlobStats(
        sample_count=len(samples),
        thresholds=BlobThresholds(
            min_samples=thresholds.min_samples,
            max_median_deviation_pt=limit,
        ),
        median=BlobPoint(x=med_x, y=med_y, size=med_size),
        mad=mad,
        passed=passed,
    )
    last = samples[-1]
    measurement = BlobMeasurement(
        x=med_x,
        y=med_y,
        size=med_size,
        response=med_response,
        captured_at=last.captured_at,
        source_width=last.source_width,
        source_height=last.source_height,
        stats=stats,
    )
    return AggregatedBlob(measurement, stats, max_mad, dev_x, dev_y, dev_size)


def is_sample_within_ignore_threshold(
    sample: BlobSample,
    accepted: Sequence[BlobSample],
    thresholds: DetectionThresholds | None = None,
) -> bool:
    """True if ``sample`` is close enough to the accepted medians to keep."""
    if not accepted:
        return True
    limit = (thresholds or DetectionThresholds()).ignore_sample_above_deviation_pt
    return (
        abs(sample.x - median([s.x for s in accepted])) <= limit
        and abs(sample.y - median([s.y for s in accepted])) <= limit
        and abs(sample.size - median([s.size for s in accepted])) <= limit
    )


def _format_samples(samples: Sequence[BlobSample]) -> str:
    return " | ".join(
        f"#{i}:x={s.x:.4f},y={s.y:.4f},size={s.size:.4f}"
        for i, s in enumerate(samples)
    )


def build_unstable_error_message(
    aggregated: AggregatedBlob,
    samples: Sequence[BlobSample],
    thresholds: DetectionThresholds | None = None,
) -> str:
    """Describe the worst axis of a failed aggregation."""
    limit = (thresholds or DetectionThresholds()).max_median_deviation_pt
    mad = aggregated.stats.mad
    axes = [
        ("x", max(aggregated.deviation_x), mad.x),
        ("y", max(aggregated.deviation_y), mad.y),
        ("size", max(aggregated.deviation_size), mad.size),
    ]
    median_exceeded = aggregated.max_mad > limit
    if median_exceeded:
        axis, _, value = max(axes, key=lambda a: a[2])
        descriptor = "median deviation"
    else:
        axis, value, _ = max(axes, key=lambda a: a[1])
        descriptor = "sample deviation"
    return (
        f"Blob measurement unstable: {descriptor} ({axis}) {value:.4f} "
        f"exceeds {limit:.4f} (samples={_format_samples(samples)})"
    )


def viewport_distance(sample: BlobSample, expected: tuple[float, float]) -> float:
    """Distance between a centered-space sample and a viewport position."""
    return math.hypot(
        centered_to_viewport(sample.x) - expected[0],
        centered_to_viewport(sample.y) - expected[1],
    )

