"""Tests for the calibration runner.

Runs full calibrations against ``SimulatedMirrorArray``, which serves as
both the motor API and a noiseless blob capture.  Covers the happy path,
failed and skipped tiles, retry handling, abort, pause/resume, step mode,
the command log and callback error isolation.
"""

from __future__ import annotations

import logging
import time

import pytest

from mirror_control.calibration.types import AxisAssignment, GridSize, TileStatus
from mirror_control.configs.loader import RunnerSettings
from mirror_control.hardware.interfaces import (
    NoCalibratableTilesError,
    RunnerAlreadyStartedError,
    UnstableMeasurementError,
)
from mirror_control.hardware.runner import (
    TERMINAL_PHASES,
    CalibrationRunner,
    RunnerPhase,
)
from mirror_control.hardware.simulated import SimulatedMirrorArray

FAST = RunnerSettings(retry_delay_ms=1)


def _runner(sim: SimulatedMirrorArray, config=None, **kwargs) -> CalibrationRunner:
    kwargs.setdefault("settings", FAST)
    return CalibrationRunner(
        sim.grid_size,
        sim.mirror_config if config is None else config,
        sim,
        sim,
        **kwargs,
    )


def _wait_for(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.005)
    raise AssertionError("Condition not reached before timeout")


def _advance_through(runner: CalibrationRunner, timeout: float = 10.0) -> list[str]:
    """Start a step-mode run and advance each waiting step; return step kinds."""
    runner.start()
    seen: list[str] = []
    last_label = None
    deadline = time.monotonic() + timeout
    while not runner.join(0.0):
        assert time.monotonic() < deadline, "step-mode run stalled"
        step = runner.get_state().step
        if step is not None and step.status == "waiting" and step.label != last_label:
            seen.append(step.kind)
            last_label = step.label
            runner.advance()
        time.sleep(0.005)
    return seen


class FlakyCapture:
    """Raises ``UnstableMeasurementError`` for the first ``failures`` calls."""

    def __init__(self, inner: SimulatedMirrorArray, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def capture(self, request):
        self.calls += 1
        if self.calls <= self.failures:
            raise UnstableMeasurementError("Blob measurement unstable: median deviation (x)")
        return self.inner.capture(request)


class BrokenMotors(SimulatedMirrorArray):
    def move_motor(self, controller_id: str, axis_index: int, target_steps: int) -> None:
        raise RuntimeError("bus fault")


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


class TestFullRun:
    def test_all_tiles_complete(self) -> None:
        sim = SimulatedMirrorArray(GridSize(2, 2))
        state = _runner(sim).run()

        assert state.phase == RunnerPhase.COMPLETED
        assert state.progress.completed == 4
        assert state.progress.failed == 0
        assert state.error is None
        assert sim.homed == {"node-0", "node-1"}

        for key, tile in state.tiles.items():
            assert tile.status == TileStatus.COMPLETED
            truth = sim.tiles[key]
            assert tile.metrics.home.x == pytest.approx(truth.home.x)
            assert tile.metrics.step_to_displacement.x == pytest.approx(truth.slope_x)
            assert tile.metrics.step_to_displacement.y == pytest.approx(truth.slope_y)
            assert tile.metrics.ideal_target is not None

    def test_summary_and_alignment(self) -> None:
        sim = SimulatedMirrorArray(GridSize(2, 3), seed=3)
        state = _runner(sim).run()

        assert state.summary is not None
        assert state.summary.blueprint is not None
        assert state.summary.delta_steps == 1200
        # every tile was brought back into view on the ideal grid
        assert sorted(sim.visible_tiles()) == sorted(sim.tiles)
        for key, entry in state.summary.tiles.items():
            assert entry.combined_bounds is not None, key
            assert entry.adjusted_home is not None, key

    def test_failing_tile_does_not_stop_run(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 3), failing_tiles=["0-1"])
        state = _runner(sim).run()

        assert state.phase == RunnerPhase.COMPLETED
        failed = state.tiles["0-1"]
        assert failed.status == TileStatus.FAILED
        assert failed.error == "Unable to detect blob at home position"
        assert state.progress.completed == 2
        assert state.progress.failed == 1
        assert state.summary.tiles["0-1"].footprint_bounds is not None
        assert state.summary.tiles["0-1"].adjusted_home is None

    def test_unassigned_tiles_are_skipped(self) -> None:
        grid = GridSize(2, 2)
        # Unwired mirrors are physically covered in this rig
        sim = SimulatedMirrorArray(grid, failing_tiles=["0-1", "1-0"])
        config = sim.mirror_config
        del config["0-1"]
        config["1-0"] = AxisAssignment(x=config["1-0"].x)

        runner = _runner(sim, config)
        initial = runner.get_state()
        assert initial.phase == RunnerPhase.IDLE
        assert initial.progress.total == 2
        assert initial.progress.skipped == 2

        state = runner.run()
        assert state.phase == RunnerPhase.COMPLETED
        for key in ("0-1", "1-0"):
            assert state.tiles[key].status == TileStatus.SKIPPED
            assert state.tiles[key].error == "Tile is missing X/Y motor assignments"
        assert state.tiles["0-0"].status == TileStatus.COMPLETED
        assert state.tiles["1-1"].status == TileStatus.COMPLETED

    def test_step_tests_out_of_view_become_warnings(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1), visible_radius_steps=1000)
        state = _runner(sim).run()

        tile = state.tiles["0-0"]
        assert tile.status == TileStatus.COMPLETED
        assert tile.metrics.step_to_displacement.x is None
        assert tile.metrics.step_to_displacement.y is None
        assert tile.warnings == [
            "X step test failed: no blob detected",
            "Y step test failed: no blob detected",
        ]
        assert "0-0: X step test failed: no blob detected" in state.warnings

    def test_motor_failure_ends_in_error(self) -> None:
        sim = BrokenMotors(GridSize(1, 2))
        state = _runner(sim).run()
        assert state.phase == RunnerPhase.ERROR
        assert "bus fault" in state.error


# ---------------------------------------------------------------------------
# Capture retries
# ---------------------------------------------------------------------------


class TestRetries:
    def test_unstable_capture_is_retried(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        flaky = FlakyCapture(sim, failures=2)
        runner = CalibrationRunner(sim.grid_size, sim.mirror_config, sim, flaky, settings=FAST)
        state = runner.run()

        assert state.tiles["0-0"].status == TileStatus.COMPLETED
        # two failed home attempts, then home + X + Y
        assert flaky.calls == 5

    def test_exhausted_retries_fail_tile_with_last_error(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        flaky = FlakyCapture(sim, failures=100)
        settings = RunnerSettings(retry_delay_ms=1, max_detection_retries=3)
        runner = CalibrationRunner(sim.grid_size, sim.mirror_config, sim, flaky, settings=settings)
        state = runner.run()

        tile = state.tiles["0-0"]
        assert tile.status == TileStatus.FAILED
        assert tile.error.startswith("Unable to detect blob at home position: ")
        assert "unstable" in tile.error
        assert flaky.calls == 3


# ---------------------------------------------------------------------------
# Lifecycle and control
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_no_calibratable_tiles(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 2))
        runner = _runner(sim, config={})
        with pytest.raises(NoCalibratableTilesError):
            runner.start()
        assert runner.get_state().phase == RunnerPhase.IDLE

    def test_runner_cannot_start_twice(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        runner = _runner(sim)
        runner.run()
        with pytest.raises(RunnerAlreadyStartedError):
            runner.run()

    def test_invalid_mode(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        with pytest.raises(ValueError, match="mode"):
            _runner(sim, mode="turbo")

    def test_state_snapshot_is_a_copy(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        runner = _runner(sim)
        snapshot = runner.get_state()
        snapshot.tiles["0-0"].status = TileStatus.FAILED
        assert runner.get_state().tiles["0-0"].status == TileStatus.PENDING

    def test_phase_sequence(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 2))
        runner = _runner(sim)
        phases: list[RunnerPhase] = []
        runner.set_state_callback(
            lambda s: phases.append(s.phase) if not phases or phases[-1] != s.phase else None
        )
        runner.run()
        assert phases == [
            RunnerPhase.HOMING,
            RunnerPhase.STAGING,
            RunnerPhase.MEASURING,
            RunnerPhase.ALIGNING,
            RunnerPhase.COMPLETED,
        ]

    def test_abort_before_measuring(self) -> None:
        sim = SimulatedMirrorArray(GridSize(2, 2))
        runner = _runner(sim)
        runner.set_state_callback(
            lambda s: runner.abort() if s.phase == RunnerPhase.MEASURING else None
        )
        state = runner.run()

        assert state.phase == RunnerPhase.ABORTED
        assert state.error is None
        assert state.progress.completed == 0
        assert all(t.status == TileStatus.STAGED for t in state.tiles.values())

    def test_abort_mid_tile_restores_staged(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 2))
        runner = _runner(sim)

        def on_state(s) -> None:
            if s.tiles["0-0"].status == TileStatus.MEASURING:
                runner.abort()

        runner.set_state_callback(on_state)
        state = runner.run()
        assert state.phase == RunnerPhase.ABORTED
        assert state.active_tile is None
        assert state.tiles["0-0"].status == TileStatus.STAGED

    def test_dispose_background_run(self) -> None:
        sim = SimulatedMirrorArray(GridSize(2, 2), move_delay_s=0.01)
        runner = _runner(sim)
        runner.start()
        runner.dispose(timeout=10.0)
        assert runner.join(0.0)
        assert runner.get_state().phase in TERMINAL_PHASES

    def test_pause_and_resume(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 2))
        runner = _runner(sim)
        runner.pause()
        runner.start()

        _wait_for(lambda: runner.get_state().phase == RunnerPhase.PAUSED)
        assert runner.get_state().progress.completed == 0
        assert sim.homed == {"node-0"}

        runner.resume()
        assert runner.join(10.0)
        assert runner.get_state().phase == RunnerPhase.COMPLETED

    def test_step_mode_waits_for_advance(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        runner = _runner(sim, mode="step")

        assert _advance_through(runner) == [
            "homing",
            "staging",
            "home-measurement",
            "step-test-x",
            "step-test-y",
            "aligning",
        ]
        final = runner.get_state()
        assert final.phase == RunnerPhase.COMPLETED
        assert final.step.status == "completed"

    def test_step_mode_pauses_after_failed_home(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 2), failing_tiles=["0-1"])
        runner = _runner(sim, mode="step")

        assert _advance_through(runner) == [
            "homing",
            "staging",
            "home-measurement",
            "step-test-x",
            "step-test-y",
            "home-measurement",
            "aligning",
        ]
        final = runner.get_state()
        assert final.phase == RunnerPhase.COMPLETED
        assert final.tiles["0-1"].status == TileStatus.FAILED

    def test_step_mode_blocks_without_advance(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        runner = _runner(sim, mode="step")
        runner.start()
        _wait_for(lambda: runner.get_state().step is not None)

        state = runner.get_state()
        assert state.phase == RunnerPhase.HOMING
        assert state.step.kind == "homing"
        assert state.step.status == "waiting"
        assert not runner.join(0.1)

        runner.abort()
        assert runner.join(10.0)
        assert runner.get_state().phase == RunnerPhase.ABORTED


# ---------------------------------------------------------------------------
# Command log and callbacks
# ---------------------------------------------------------------------------


class TestCommandLog:
    def test_entries_are_sequenced_and_grouped(self) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 2))
        runner = _runner(sim)
        entries = []
        runner.set_log_callback(entries.append)
        runner.run()

        sequences = sorted(e.sequence for e in entries)
        assert sequences == list(range(1, len(entries) + 1))
        assert entries[0].hint == "home node-0"
        assert entries[0].phase == "homing"
        groups = {e.group for e in entries}
        assert {"homing", "staging", "tile-0-0", "tile-0-1"} <= groups
        captures = [e for e in entries if e.hint.startswith("capture")]
        assert all(e.tile is not None for e in captures)

    def test_callback_errors_are_logged_not_raised(self, caplog) -> None:
        sim = SimulatedMirrorArray(GridSize(1, 1))
        runner = _runner(sim)

        def explode(_):
            raise RuntimeError("observer crashed")

        runner.set_log_callback(explode)
        runner.set_state_callback(explode)
        with caplog.at_level(logging.ERROR, logger="mirror_control.hardware.runner"):
            state = runner.run()

        assert state.phase == RunnerPhase.COMPLETED
        messages = [r.getMessage() for r in caplog.records]
        assert any("Command log callback error: observer crashed" in m for m in messages)
        assert any("State callback error: observer crashed" in m for m in messages)
