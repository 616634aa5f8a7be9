"""Calibration runner -- drives the mirror array through a calibration run.

Sequence (one worker thread, motor moves fanned out on a thread pool):

Homing
    Home every controller that drives a calibratable tile.
Staging
    Park all calibratable tiles aside so none reflects into the camera.
Measuring
    One tile at a time: bring it home, capture its blob, then run an X and
    a Y step test (move by ``delta_steps``, capture, move back) to learn
    centered displacement per step.  The tile is parked aside again.
Aligning
    Compute the grid blueprint and move every completed tile by the steps
    that put its blob on the ideal grid.

Control is cooperative and safe at unit-of-work boundaries:
    - Pause: flag checked before each unit; the phase reads ``paused``
      until resumed.
    - Abort: cancels the shared token, which interrupts any wait inside
      capture or retry delays; the run unwinds to ``aborted``.
    - Step mode: after each unit the runner publishes a waiting
      ``StepState`` and blocks until ``advance()``.

A tile whose home blob cannot be found is marked ``failed`` and the run
continues with the next tile.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Sequence

from mirror_core.utils.logging_config import pop_context, push_context
from mirror_core.utils.space import centered_to_viewport
from mirror_control.calibration.bounds import compute_alignment_target_steps
from mirror_control.calibration.expected_position import (
    TileMeasurement,
    compute_expected_blob_position,
)
from mirror_control.calibration.staging import (
    Pose,
    clamp_steps,
    compute_pose_targets,
    round_steps,
)
from mirror_control.calibration.summary import compute_calibration_summary
from mirror_control.calibration.types import (
    Axis,
    AxisAssignment,
    BlobMeasurement,
    CalibrationRunSummary,
    GridSize,
    MirrorConfig,
    Motor,
    Slope,
    TileAddress,
    TileRunState,
    TileStatus,
    Vec2,
)
from mirror_control.configs.loader import RunnerSettings
from mirror_control.hardware.interfaces import (
    BlobCapture,
    CancellationToken,
    CaptureRequest,
    MeasurementError,
    MotorApi,
    MotorCommandError,
    NoCalibratableTilesError,
    RunnerAbortedError,
    RunnerAlreadyStartedError,
)

logger = logging.getLogger(__name__)

_POLL_S = 0.05


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class RunnerPhase(Enum):
    """Current calibration-runner phase."""

    IDLE = "idle"
    HOMING = "homing"
    STAGING = "staging"
    MEASURING = "measuring"
    ALIGNING = "aligning"
    PAUSED = "paused"
    ABORTED = "aborted"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_PHASES = (RunnerPhase.ABORTED, RunnerPhase.COMPLETED, RunnerPhase.ERROR)


@dataclass
class RunnerProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class StepState:
    """Step-mode gate: what just finished and whether it awaits ``advance()``."""

    kind: str
    label: str
    tile: str | None = None
    status: str = "waiting"


@dataclass(frozen=True)
class CommandLogEntry:
    """One motor command or capture issued by the runner."""

    sequence: int
    hint: str
    phase: str
    tile: str | None
    group: str
    timestamp: float


@dataclass
class RunnerState:
    """Snapshot published to observers (deep copy, safe to keep)."""

    phase: RunnerPhase
    tiles: dict[str, TileRunState]
    progress: RunnerProgress
    active_tile: TileAddress | None = None
    summary: CalibrationRunSummary | None = None
    error: str | None = None
    step: StepState | None = None
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class CalibrationRunner:
    """Run a full calibration over a mirror grid.

    Parameters
    ----------
    grid_size : GridSize
        Grid dimensions.
    mirror_config : MirrorConfig
        Tile key -> motor assignment; tiles without both axes are skipped.
    motor_api : MotorApi
        Motor transport.
    capture : BlobCapture
        Blob measurement source.
    settings : RunnerSettings, optional
        Runner behaviour; defaults match the shipped ``calibration.yaml``.
    mode : str, optional
        ``"auto"`` or ``"step"``; overrides ``settings.mode``.
    max_workers : int
        Thread-pool size for parallel motor moves.
    """

    def __init__(
        self,
        grid_size: GridSize,
        mirror_config: MirrorConfig,
        motor_api: MotorApi,
        capture: BlobCapture,
        settings: RunnerSettings | None = None,
        mode: str | None = None,
        max_workers: int = 8,
    ) -> None:
        self._grid = grid_size
        self._motor_api = motor_api
        self._capture = capture
        self._settings = settings or RunnerSettings()
        self._mode = mode or self._settings.mode
        if self._mode not in ("auto", "step"):
            raise ValueError(f"Runner mode must be 'auto' or 'step', got {self._mode!r}")
        self._max_workers = max(1, max_workers)

        self._tiles: list[TileRunState] = []
        for address in grid_size.addresses():
            assignment = mirror_config.get(address.key) or AxisAssignment()
            state = TileRunState(tile=address, assignment=assignment)
            if not assignment.calibratable:
                state.status = TileStatus.SKIPPED
                state.error = "Tile is missing X/Y motor assignments"
            self._tiles.append(state)
        self._calibratable = [t for t in self._tiles if t.assignment.calibratable]

        self._positions: dict[str, int] = {}
        self._phase = RunnerPhase.IDLE
        self._previous_phase: RunnerPhase | None = None
        self._progress = RunnerProgress(
            total=len(self._calibratable),
            skipped=len(self._tiles) - len(self._calibratable),
        )
        self._active_tile: TileAddress | None = None
        self._summary: CalibrationRunSummary | None = None
        self._error: str | None = None
        self._step: StepState | None = None

        self._token = CancellationToken()
        self._pause_flag = threading.Event()
        self._advance_flag = threading.Event()
        self._lock = threading.RLock()
        self._sequence = itertools.count(1)
        self._pool: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self._started = False
        self._run_id = uuid.uuid4().hex[:8]

        self._state_cb: Callable[[RunnerState], None] | None = None
        self._log_cb: Callable[[CommandLogEntry], None] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self._run_id

    def get_state(self) -> RunnerState:
        """Return a deep-copied snapshot of the run."""
        with self._lock:
            return copy.deepcopy(RunnerState(
                phase=self._phase,
                tiles={t.tile.key: t for t in self._tiles},
                progress=self._progress,
                active_tile=self._active_tile,
                summary=self._summary,
                error=self._error,
                step=self._step,
                warnings=[
                    f"{t.tile.key}: {message}" for t in self._tiles for message in t.warnings
                ],
            ))

    def set_state_callback(self, fn: Callable[[RunnerState], None]) -> None:
        """Register a callback invoked with a snapshot after every change."""
        self._state_cb = fn

    def set_log_callback(self, fn: Callable[[CommandLogEntry], None]) -> None:
        """Register a callback invoked for every motor command and capture."""
        self._log_cb = fn

    def start(self) -> None:
        """Start the run on a background thread.

        Raises
        ------
        RunnerAlreadyStartedError
            If this runner has already been started.
        NoCalibratableTilesError
            If no tile has both axes assigned (nothing is started).
        """
        self._begin()
        self._thread = threading.Thread(
            target=self._execute,
            name=f"calibration-{self._run_id}",
            daemon=True,
        )
        self._thread.start()

    def run(self) -> RunnerState:
        """Run to completion on the calling thread and return the final state."""
        self._begin()
        self._execute()
        return self.get_state()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the background run; True if it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def pause(self) -> None:
        """Pause at the next unit-of-work boundary."""
        if self._token.cancelled:
            return
        self._pause_flag.set()
        logger.info("Calibration pause requested")

    def resume(self) -> None:
        self._pause_flag.clear()
        logger.info("Calibration resume requested")

    def abort(self) -> None:
        """Cancel the run; waits inside capture and retries are interrupted."""
        if self._token.cancelled:
            return
        self._token.cancel()
        self._pause_flag.clear()
        self._advance_flag.set()
        logger.info("Calibration abort requested")

    def advance(self) -> None:
        """Release the current step-mode gate."""
        self._advance_flag.set()

    def dispose(self, timeout: float | None = 5.0) -> None:
        """Abort and wait for the worker thread to exit."""
        self.abort()
        self.join(timeout)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        with self._lock:
            if self._started:
                raise RunnerAlreadyStartedError("Calibration runner already started")
            if not self._calibratable:
                raise NoCalibratableTilesError(
                    "No tiles with both X/Y motors assigned. "
                    "Configure the grid before running calibration."
                )
            self._started = True

    def _execute(self) -> None:
        push_context(run=self._run_id)
        self._pool = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="mirror-move"
        )
        logger.info(
            "Calibration started: %d calibratable tile(s), %d skipped, mode=%s",
            self._progress.total, self._progress.skipped, self._mode,
        )
        try:
            self._run_internal()
        except RunnerAbortedError:
            with self._lock:
                for state in self._tiles:
                    if state.status == TileStatus.MEASURING:
                        state.status = TileStatus.STAGED
                self._phase = RunnerPhase.ABORTED
                self._active_tile = None
                self._error = None
            logger.info("Calibration aborted")
            self._notify()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Calibration failed: %s", exc)
            with self._lock:
                self._phase = RunnerPhase.ERROR
                self._active_tile = None
                self._error = str(exc)
            self._notify()
        finally:
            self._pool.shutdown(wait=True)
            self._pool = None
            pop_context(keys=["run"])

    def _run_internal(self) -> None:
        self._set_phase(RunnerPhase.HOMING)
        self._home_all_motors()
        self._check_continue()
        self._step_gate("homing", "Homed all controllers")

        self._set_phase(RunnerPhase.STAGING)
        self._stage_all_tiles()
        self._check_continue()
        self._step_gate("staging", "Staged all tiles aside")

        self._set_phase(RunnerPhase.MEASURING)
        for state in self._calibratable:
            self._check_continue()
            self._measure_tile(state)

        summary = self._compute_summary()
        self._apply_summary_metrics(summary)
        with self._lock:
            self._summary = summary
            self._active_tile = None
        if summary.blueprint is not None:
            self._set_phase(RunnerPhase.ALIGNING)
            self._align_tiles(summary)
            self._step_gate("aligning", "Aligned tiles to the ideal grid")

        self._set_phase(RunnerPhase.COMPLETED)
        logger.info(
            "Calibration complete: %d completed, %d failed, %d skipped",
            self._progress.completed, self._progress.failed, self._progress.skipped,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _home_all_motors(self) -> None:
        controllers = sorted({
            motor.controller_id
            for state in self._calibratable
            for motor in (state.assignment.x, state.assignment.y)
            if motor is not None
        })
        logger.info("Homing %d controller(s)", len(controllers))
        self._run_parallel([
            (lambda cid=cid: self._home_controller(cid)) for cid in controllers
        ])
        with self._lock:
            self._positions.clear()
            for state in self._calibratable:
                for motor in (state.assignment.x, state.assignment.y):
                    self._positions[motor.key] = 0

    def _home_controller(self, controller_id: str) -> None:
        self._log_command(f"home {controller_id}", group="homing")
        self._motor_api.home_all([controller_id])

    def _stage_all_tiles(self) -> None:
        self._move_tiles(self._calibratable, "aside", group="staging")
        with self._lock:
            for state in self._calibratable:
                state.status = TileStatus.STAGED
        self._notify()

    def _measure_tile(self, state: TileRunState) -> None:
        key = state.tile.key
        with self._lock:
            state.status = TileStatus.MEASURING
            self._active_tile = state.tile
        self._notify()
        logger.info("Measuring tile %s", key)

        self._move_tiles([state], "home", group=f"tile-{key}")
        home, error = self._capture_with_retries(
            state, self._expected_home_position(state), "home"
        )
        if home is None:
            message = "Unable to detect blob at home position"
            if error:
                message = f"{message}: {error}"
            logger.warning("Tile %s failed: %s", key, message)
            with self._lock:
                state.status = TileStatus.FAILED
                state.error = message
                self._progress.failed += 1
            self._publish_summary_snapshot()
            self._step_gate("home-measurement", f"Home measurement failed for tile {key}", key)
            self._move_tiles([state], "aside", group=f"tile-{key}")
            return

        with self._lock:
            state.metrics.home = home
        self._notify()
        self._step_gate("home-measurement", f"Measured home of tile {key}", key)

        slope_x, size_x = self._run_step_test(state, "x", home)
        self._step_gate("step-test-x", f"X step test of tile {key}", key)
        slope_y, size_y = self._run_step_test(state, "y", home)
        self._step_gate("step-test-y", f"Y step test of tile {key}", key)

        sizes = [s for s in (size_x, size_y) if s is not None]
        with self._lock:
            state.metrics.step_to_displacement = Slope(x=slope_x, y=slope_y)
            state.metrics.size_delta_at_step_test = (
                sum(sizes) / len(sizes) if sizes else None
            )
            state.status = TileStatus.COMPLETED
            state.error = None
            self._progress.completed += 1
        self._publish_summary_snapshot()
        logger.info(
            "Tile %s completed: per_step=(%s, %s)", key, slope_x, slope_y,
        )
        self._move_tiles([state], "aside", group=f"tile-{key}")

    def _run_step_test(
        self,
        state: TileRunState,
        axis: Axis,
        home: BlobMeasurement,
    ) -> tuple[float | None, float | None]:
        """Move one axis by ``delta_steps`` and measure the displacement."""
        motor = state.assignment.motor(axis)
        delta = int(clamp_steps(round_steps(self._settings.delta_steps)))
        label = axis.upper()
        if motor is None or delta == 0:
            self._add_warning(state, f"{label} step test failed: no step delta configured")
            return None, None

        group = f"tile-{state.tile.key}"
        self._move_axis(motor, delta, f"step-test {axis}", group, state.tile)
        measurement, error = self._capture_with_retries(
            state, self._expected_step_position(axis, home, delta), f"step-{axis}"
        )
        self._move_axis(motor, 0, f"step-test {axis} return", group, state.tile)

        if measurement is None:
            self._add_warning(
                state, f"{label} step test failed: {error or 'no blob detected'}"
            )
            return None, None

        displacement = measurement.x - home.x if axis == "x" else measurement.y - home.y
        return displacement / delta, measurement.size - home.size

    def _apply_summary_metrics(self, summary: CalibrationRunSummary) -> None:
        with self._lock:
            for state in self._tiles:
                entry = summary.tiles.get(state.tile.key)
                if entry is None or state.status != TileStatus.COMPLETED:
                    continue
                offset = entry.home_offset
                state.metrics.home_offset = offset
                home = state.metrics.home
                if home is not None and offset is not None:
                    state.metrics.ideal_target = Vec2(home.x - offset.x, home.y - offset.y)

    def _align_tiles(self, summary: CalibrationRunSummary) -> None:
        self._check_continue()
        moves: list[tuple[Motor, int, TileAddress]] = []
        for state in self._calibratable:
            entry = summary.tiles.get(state.tile.key)
            if entry is None or entry.status != TileStatus.COMPLETED or entry.home_offset is None:
                continue
            slope = entry.step_to_displacement or Slope()
            target_x = compute_alignment_target_steps(-entry.home_offset.x, slope.x)
            target_y = compute_alignment_target_steps(-entry.home_offset.y, slope.y)
            if target_x is not None:
                moves.append((state.assignment.x, target_x, state.tile))
            if target_y is not None:
                moves.append((state.assignment.y, target_y, state.tile))
        logger.info("Aligning %d axis/axes to the ideal grid", len(moves))
        self._run_parallel([
            (lambda m=m, t=t, a=a: self._move_axis(m, t, "align", "aligning", a))
            for m, t, a in moves
        ])

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def _completed_measurements(self) -> list[TileMeasurement]:
        with self._lock:
            return [
                TileMeasurement(s.tile.row, s.tile.col, Vec2(s.metrics.home.x, s.metrics.home.y))
                for s in self._tiles
                if s.status == TileStatus.COMPLETED and s.metrics.home is not None
            ]

    def _expected_home_position(self, state: TileRunState) -> tuple[float, float]:
        return compute_expected_blob_position(
            state.tile.row,
            state.tile.col,
            self._completed_measurements(),
            self._grid,
            self._settings.array_rotation,
            self._settings.roi,
        )

    def _expected_step_position(
        self,
        axis: Axis,
        home: BlobMeasurement,
        delta: int,
    ) -> tuple[float, float] | None:
        """Home shifted by the mean slope seen so far; None before any slope."""
        with self._lock:
            slopes = [
                s.metrics.step_to_displacement.axis(axis)
                for s in self._tiles
                if s.status == TileStatus.COMPLETED
                and s.metrics.step_to_displacement is not None
                and s.metrics.step_to_displacement.axis(axis) is not None
            ]
        if not slopes:
            return None
        shift = delta * sum(slopes) / len(slopes)
        x = home.x + shift if axis == "x" else home.x
        y = home.y + shift if axis == "y" else home.y
        return (centered_to_viewport(x), centered_to_viewport(y))

    def _capture_with_retries(
        self,
        state: TileRunState,
        expected: tuple[float, float] | None,
        label: str,
    ) -> tuple[BlobMeasurement | None, str | None]:
        """Capture up to ``max_detection_retries`` times.

        Returns the measurement (or None) and the last retryable error.
        ``RunnerAbortedError`` and non-measurement errors propagate.
        """
        s = self._settings
        has_completed = self._progress.completed > 0
        tolerance = s.max_blob_distance_threshold if has_completed else s.first_tile_tolerance
        last_error: str | None = None
        for attempt in range(1, s.max_detection_retries + 1):
            self._check_continue()
            self._log_command(
                f"capture {label} (attempt {attempt})", f"tile-{state.tile.key}", state.tile
            )
            request = CaptureRequest(
                timeout_ms=s.sample_timeout_ms,
                token=self._token,
                expected_position=expected,
                max_distance=tolerance if expected is not None else None,
            )
            try:
                measurement = self._capture.capture(request)
            except MeasurementError as exc:
                last_error = str(exc)
                logger.warning(
                    "Tile %s %s capture attempt %d failed: %s",
                    state.tile.key, label, attempt, exc,
                )
                measurement = None
            if measurement is not None:
                return measurement, None
            if attempt < s.max_detection_retries:
                self._token.wait(s.retry_delay_ms / 1000.0)
        return None, last_error

    # ------------------------------------------------------------------
    # Motion
    # ------------------------------------------------------------------

    def _move_tiles(
        self,
        states: Sequence[TileRunState],
        pose: Pose,
        group: str,
    ) -> None:
        """Move every axis of ``states`` to ``pose`` in parallel."""
        tasks = []
        for state in states:
            tx, ty = compute_pose_targets(
                state.tile,
                pose,
                self._grid,
                self._settings.array_rotation,
                self._settings.staging_position,
            )
            for motor, target in ((state.assignment.x, tx), (state.assignment.y, ty)):
                if motor is None:
                    continue
                tasks.append(
                    lambda m=motor, t=target, tile=state.tile:
                        self._move_axis(m, t, f"{pose} {tile.key}", group, tile)
                )
        self._run_parallel(tasks)

    def _move_axis(
        self,
        motor: Motor,
        target: float,
        hint: str,
        group: str,
        tile: TileAddress | None = None,
    ) -> None:
        """Round, clamp and move one axis; no-op if already there."""
        target_steps = int(clamp_steps(round_steps(target)))
        with self._lock:
            if self._positions.get(motor.key) == target_steps:
                return
        self._token.raise_if_cancelled()
        self._log_command(f"{hint}: {motor.key} -> {target_steps}", group, tile)
        try:
            self._motor_api.move_motor(motor.controller_id, motor.axis_index, target_steps)
        except (RunnerAbortedError, MotorCommandError):
            raise
        except Exception as exc:
            raise MotorCommandError(
                f"Move of {motor.key} to {target_steps} failed: {exc}"
            ) from exc
        with self._lock:
            self._positions[motor.key] = target_steps

    def _run_parallel(self, tasks: Sequence[Callable[[], None]]) -> None:
        """Run tasks on the pool and re-raise the first failure."""
        if not tasks:
            return
        if self._pool is None:
            for task in tasks:
                task()
            return
        futures = [self._pool.submit(task) for task in tasks]
        first_error: BaseException | None = None
        for future in futures:
            exc = future.exception()
            if exc is not None and first_error is None:
                first_error = exc
        if first_error is not None:
            raise first_error

    # ------------------------------------------------------------------
    # Control gates
    # ------------------------------------------------------------------

    def _check_continue(self) -> None:
        """Raise on abort; block while paused."""
        self._token.raise_if_cancelled()
        if not self._pause_flag.is_set():
            return
        with self._lock:
            if self._phase != RunnerPhase.PAUSED:
                self._previous_phase = self._phase
                self._phase = RunnerPhase.PAUSED
        self._notify()
        logger.info("Calibration paused")
        while self._pause_flag.is_set():
            self._token.wait(_POLL_S)
        self._token.raise_if_cancelled()
        with self._lock:
            if self._previous_phase is not None:
                self._phase = self._previous_phase
                self._previous_phase = None
        self._notify()
        logger.info("Calibration resumed")

    def _step_gate(self, kind: str, label: str, tile: str | None = None) -> None:
        """In step mode, publish a waiting step and block until ``advance()``."""
        if self._mode != "step":
            return
        self._advance_flag.clear()
        with self._lock:
            self._step = StepState(kind=kind, label=label, tile=tile, status="waiting")
        self._notify()
        while not self._advance_flag.is_set():
            self._token.wait(_POLL_S)
        self._advance_flag.clear()
        self._token.raise_if_cancelled()
        with self._lock:
            self._step = replace(self._step, status="completed")
        self._notify()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _compute_summary(self) -> CalibrationRunSummary:
        with self._lock:
            results = {t.tile.key: copy.deepcopy(t) for t in self._tiles}
        return compute_calibration_summary(
            results,
            self._grid,
            self._settings.grid_gap_normalized,
            self._settings.delta_steps,
            self._settings.robust_tile_size,
        )

    def _publish_summary_snapshot(self) -> None:
        summary = self._compute_summary()
        with self._lock:
            self._summary = summary
        self._notify()

    def _add_warning(self, state: TileRunState, message: str) -> None:
        logger.warning("Tile %s: %s", state.tile.key, message)
        with self._lock:
            state.warnings.append(message)
        self._notify()

    def _set_phase(self, phase: RunnerPhase) -> None:
        with self._lock:
            self._phase = phase
            if phase in (RunnerPhase.COMPLETED, RunnerPhase.ALIGNING):
                self._active_tile = None
        logger.info("Phase -> %s", phase.value)
        self._notify()

    def _log_command(self, hint: str, group: str, tile: TileAddress | None = None) -> None:
        entry = CommandLogEntry(
            sequence=next(self._sequence),
            hint=hint,
            phase=self._phase.value,
            tile=tile.key if tile is not None else None,
            group=group,
            timestamp=time.time(),
        )
        logger.debug("[%d] %s", entry.sequence, hint)
        if self._log_cb is not None:
            try:
                self._log_cb(entry)
            except Exception as exc:  # noqa: BLE001
                logger.error("Command log callback error: %s", exc)

    def _notify(self) -> None:
        """Fire the state callback with a fresh snapshot."""
        if self._state_cb is None:
            return
        snapshot = self.get_state()
        try:
            self._state_cb(snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.error("State callback error: %s", exc)
