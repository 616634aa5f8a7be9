"""Collaborator interfaces, cancellation and the calibration error hierarchy.

The runner talks to the outside world through two narrow protocols:

MotorApi
    Home controllers and move one axis to an absolute step position.
    Calls block until the move is acknowledged.

BlobCapture
    Return one aggregated blob measurement near an expected position,
    ``None`` when nothing stable was seen before the timeout.

Both are plain ``typing.Protocol`` classes so fakes in tests and the
simulated array satisfy them structurally.

Cancellation is cooperative.  A single ``CancellationToken`` is shared by
the runner and everything it calls; ``token.wait()`` replaces
``time.sleep()`` in any loop that should stop promptly on abort.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable, Protocol, runtime_checkable

from mirror_control.calibration.types import BlobMeasurement


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CalibrationError(Exception):
    """Base class for calibration failures."""

    pass


class RunnerAbortedError(CalibrationError):
    """Raised inside the run when ``abort()`` has been requested."""

    pass


class RunnerAlreadyStartedError(CalibrationError):
    """Raised when ``start()`` is called on a runner that has run."""

    pass


class NoCalibratableTilesError(CalibrationError):
    """Raised when no tile has both axes assigned."""

    pass


class MeasurementError(CalibrationError):
    """Blob capture failed in a way worth retrying."""

    pass


class UnstableMeasurementError(MeasurementError):
    """Enough samples were collected but they disagree."""

    pass


class MotorCommandError(CalibrationError):
    """A motor command was rejected or failed."""

    pass


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Thread-safe abort flag with an interruptible wait."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise ``RunnerAbortedError`` if cancellation was requested."""
        if self._event.is_set():
            raise RunnerAbortedError("Calibration aborted")

    def wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises
        ------
        RunnerAbortedError
            If the token is (or becomes) cancelled.
        """
        if self._event.wait(max(0.0, seconds)):
            raise RunnerAbortedError("Calibration aborted")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CaptureRequest:
    """Arguments for one blob capture.

    ``expected_position`` is in viewport [0, 1] coordinates; ``max_distance``
    is the accepted radius around it in the same units.  Without an
    expected position every detection is accepted.
    """

    timeout_ms: int
    token: CancellationToken
    expected_position: tuple[float, float] | None = None
    max_distance: float | None = None


@runtime_checkable
class MotorApi(Protocol):
    """Motor transport used by the runner."""

    def home_all(self, controller_ids: Iterable[str]) -> None:
        """Home every axis on the given controllers (blocking)."""

    def move_motor(self, controller_id: str, axis_index: int, target_steps: int) -> None:
        """Move one axis to an absolute step position (blocking)."""


@runtime_checkable
class BlobCapture(Protocol):
    """Source of aggregated blob measurements."""

    def capture(self, request: CaptureRequest) -> BlobMeasurement | None:
        """Return a stable measurement, or None if none arrived in time.

        May raise ``MeasurementError`` (retryable) or ``RunnerAbortedError``.
        """
