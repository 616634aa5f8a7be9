"""
Hardware orchestration module.

Provides the motor/capture collaborator protocols, stable blob capture on
top of a raw detector, the threaded calibration runner and a simulated
mirror array.
"""

from mirror_control.hardware.capture import StableBlobCapture
from mirror_control.hardware.interfaces import (
    BlobCapture,
    CalibrationError,
    CancellationToken,
    MotorApi,
)
from mirror_control.hardware.runner import CalibrationRunner, RunnerPhase
from mirror_control.hardware.simulated import SimulatedMirrorArray

__all__ = [
    "BlobCapture",
    "CalibrationError",
    "CalibrationRunner",
    "CancellationToken",
    "MotorApi",
    "RunnerPhase",
    "SimulatedMirrorArray",
    "StableBlobCapture",
]
