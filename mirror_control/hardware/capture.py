"""Stable blob capture on top of a raw detector sample source.

Implements the ``BlobCapture`` protocol: wait for the mirror to settle,
then poll the detector until ``min_samples`` consistent samples near the
expected position have been collected, and aggregate them.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from mirror_control.calibration.aggregation import (
    BlobSample,
    DetectionThresholds,
    aggregate_blob_samples,
    build_unstable_error_message,
    is_sample_within_ignore_threshold,
    viewport_distance,
)
from mirror_control.calibration.types import BlobMeasurement
from mirror_control.hardware.interfaces import (
    CaptureRequest,
    UnstableMeasurementError,
)

logger = logging.getLogger(__name__)


class StableBlobCapture:
    """Blob capture collaborator built on a raw sample source.

    Parameters
    ----------
    read_sample : Callable[[], BlobSample | None]
        Returns the latest detection, or None when no new frame is ready.
    thresholds : DetectionThresholds, optional
        Aggregation settings.
    clock : Callable[[], float]
        Monotonic time source in seconds.
    """

    def __init__(
        self,
        read_sample: Callable[[], BlobSample | None],
        thresholds: DetectionThresholds | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._read_sample = read_sample
        self._thresholds = thresholds or DetectionThresholds()
        self._clock = clock

    def capture(self, request: CaptureRequest) -> BlobMeasurement | None:
        """Collect samples until stable, unstable or timed out.

        Returns
        -------
        BlobMeasurement | None
            Aggregated measurement, or None if ``min_samples`` usable
            samples did not arrive within ``request.timeout_ms``.

        Raises
        ------
        UnstableMeasurementError
            If enough samples arrived but they disagree.
        RunnerAbortedError
            If the request's token is cancelled.
        """
        th = self._thresholds
        token = request.token
        if th.capture_delay_ms > 0:
            token.wait(th.capture_delay_ms / 1000.0)

        start = self._clock()
        samples: list[BlobSample] = []
        while self._clock() - start < request.timeout_ms / 1000.0:
            token.raise_if_cancelled()
            sample = self._read_sample()
            if sample is not None and self._accept(sample, samples, request):
                samples.append(sample)
                if len(samples) >= th.min_samples:
                    aggregated = aggregate_blob_samples(samples, th)
                    if not aggregated.stats.passed:
                        raise UnstableMeasurementError(
                            build_unstable_error_message(aggregated, samples, th)
                        )
                    return aggregated.measurement
            token.wait(th.poll_interval_ms / 1000.0)

        logger.debug(
            "Capture timed out after %d ms with %d sample(s)",
            request.timeout_ms, len(samples),
        )
        return None

    def _accept(
        self,
        sample: BlobSample,
        accepted: Sequence[BlobSample],
        request: CaptureRequest,
    ) -> bool:
        if request.expected_position is not None and request.max_distance is not None:
            if viewport_distance(sample, request.expected_position) > request.max_distance:
                return False
        return is_sample_within_ignore_threshold(sample, accepted, self._thresholds)
