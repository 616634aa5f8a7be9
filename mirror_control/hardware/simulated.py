"""Simulated mirror array for dry runs and tests.

Each tile reflects a blob at ``home + slope * steps`` (centered units).
The reflection stays in the camera's field while the tile's tilt,
measured as the step-space radius ``hypot(steps_x, steps_y)``, is below
``visible_radius_steps``; parking a tile at a corner of its motor range
takes it out of view, a single-axis step test does not.

The array implements ``MotorApi`` and doubles as a detector: use
``read_sample`` as the sample source of ``StableBlobCapture``, or pass the
array itself as the ``BlobCapture`` for noiseless, instant captures.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from mirror_control.calibration.aggregation import BlobSample
from mirror_control.calibration.bounds import (
    DEFAULT_SOURCE_HEIGHT,
    DEFAULT_SOURCE_WIDTH,
    MOTOR_MAX_POSITION_STEPS,
    MOTOR_MIN_POSITION_STEPS,
)
from mirror_control.calibration.types import (
    AxisAssignment,
    BlobMeasurement,
    GridSize,
    MirrorConfig,
    TileAddress,
    Vec2,
)
from mirror_control.configs.loader import default_mirror_config
from mirror_control.hardware.interfaces import CaptureRequest, MotorCommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulatedTile:
    """Ground truth for one simulated tile."""

    address: TileAddress
    home: Vec2
    slope_x: float
    slope_y: float
    size: float


class SimulatedMirrorArray:
    """Motor API and blob source for a virtual mirror grid.

    Parameters
    ----------
    grid_size : GridSize
        Grid dimensions.  Row ``r`` is driven by controller ``node-r``,
        column ``c`` by axes ``2c`` (X) and ``2c + 1`` (Y).
    pitch : float
        Centered distance between neighbouring tile homes.
    origin : (float, float)
        Centered home of tile (0, 0).
    slope : float
        Nominal centered displacement per step.
    jitter : float
        Relative spread of per-tile homes and slopes.
    noise : float
        Standard deviation of per-sample position noise.
    failing_tiles : Iterable[str]
        Tile keys whose reflection never reaches the camera.
    visible_radius_steps : float
        Tilt radius beyond which a reflection leaves the field of view.
    move_delay_s : float
        Simulated motion time per move.
    seed : int | None
        RNG seed for reproducible layouts.
    """

    def __init__(
        self,
        grid_size: GridSize,
        pitch: float = 0.3,
        origin: tuple[float, float] = (-0.7, -0.3),
        slope: float = 2.5e-4,
        jitter: float = 0.02,
        noise: float = 0.0005,
        blob_size: float = 0.05,
        failing_tiles: Iterable[str] = (),
        visible_radius_steps: float = 1500.0,
        move_delay_s: float = 0.0,
        seed: int | None = 0,
    ) -> None:
        self.grid_size = grid_size
        self._rng = np.random.default_rng(seed)
        self._noise = noise
        self._failing = set(failing_tiles)
        self._visible_radius = visible_radius_steps
        self._move_delay_s = move_delay_s
        self._lock = threading.Lock()

        self.tiles: dict[str, SimulatedTile] = {}
        for address in grid_size.addresses():
            offset = self._rng.uniform(-jitter, jitter, size=2) * pitch
            scale = 1.0 + self._rng.uniform(-jitter, jitter, size=2)
            self.tiles[address.key] = SimulatedTile(
                address=address,
                home=Vec2(
                    origin[0] + address.col * pitch + float(offset[0]),
                    origin[1] + address.row * pitch + float(offset[1]),
                ),
                slope_x=slope * float(scale[0]),
                slope_y=slope * float(scale[1]),
                size=blob_size,
            )

        self._wiring = default_mirror_config(grid_size)
        self.positions: dict[str, int] = {}
        self.homed: set[str] = set()
        self.move_count = 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def motors_for(self, address: TileAddress) -> AxisAssignment:
        return self._wiring[address.key]

    @property
    def mirror_config(self) -> MirrorConfig:
        return dict(self._wiring)

    # ------------------------------------------------------------------
    # MotorApi
    # ------------------------------------------------------------------

    def home_all(self, controller_ids: Iterable[str]) -> None:
        ids = set(controller_ids)
        with self._lock:
            for address in self.grid_size.addresses():
                assignment = self.motors_for(address)
                if assignment.x.controller_id in ids:
                    self.positions[assignment.x.key] = 0
                    self.positions[assignment.y.key] = 0
            self.homed |= ids
        logger.debug("Homed controllers %s", sorted(ids))

    def move_motor(self, controller_id: str, axis_index: int, target_steps: int) -> None:
        if not MOTOR_MIN_POSITION_STEPS <= target_steps <= MOTOR_MAX_POSITION_STEPS:
            raise MotorCommandError(
                f"Target {target_steps} outside motor range on {controller_id}:{axis_index}"
            )
        if controller_id not in self.homed:
            raise MotorCommandError(f"Controller {controller_id} has not been homed")
        if self._move_delay_s > 0:
            time.sleep(self._move_delay_s)
        with self._lock:
            self.positions[f"{controller_id}:{axis_index}"] = int(target_steps)
            self.move_count += 1

    # ------------------------------------------------------------------
    # Optics
    # ------------------------------------------------------------------

    def steps_of(self, key: str) -> tuple[int, int]:
        assignment = self.motors_for(TileAddress.from_key(key))
        with self._lock:
            return (
                self.positions.get(assignment.x.key, 0),
                self.positions.get(assignment.y.key, 0),
            )

    def reflection_of(self, key: str) -> Vec2 | None:
        """Centered blob position of one tile, or None if out of view."""
        if key in self._failing:
            return None
        tile = self.tiles[key]
        sx, sy = self.steps_of(key)
        if float(np.hypot(sx, sy)) >= self._visible_radius:
            return None
        x = tile.home.x + tile.slope_x * sx
        y = tile.home.y + tile.slope_y * sy
        if abs(x) > 1.0 or abs(y) > 1.0:
            return None
        return Vec2(x, y)

    def visible_tiles(self) -> list[str]:
        return [key for key in self.tiles if self.reflection_of(key) is not None]

    def read_sample(self) -> BlobSample | None:
        """Noisy detection of the first visible reflection (row-major)."""
        for key in self.tiles:
            position = self.reflection_of(key)
            if position is None:
                continue
            dx, dy, ds = self._rng.normal(0.0, self._noise, size=3)
            return BlobSample(
                x=position.x + float(dx),
                y=position.y + float(dy),
                size=self.tiles[key].size + float(ds),
                response=1.0,
                captured_at=time.time(),
                source_width=DEFAULT_SOURCE_WIDTH,
                source_height=DEFAULT_SOURCE_HEIGHT,
            )
        return None

    def capture(self, request: CaptureRequest) -> BlobMeasurement | None:
        """Noiseless ``BlobCapture``: the visible reflection, if any."""
        request.token.raise_if_cancelled()
        for key in self.tiles:
            position = self.reflection_of(key)
            if position is None:
                continue
            return BlobMeasurement(
                x=position.x,
                y=position.y,
                size=self.tiles[key].size,
                response=1.0,
                captured_at=time.time(),
                source_width=DEFAULT_SOURCE_WIDTH,
                source_height=DEFAULT_SOURCE_HEIGHT,
            )
        return None
