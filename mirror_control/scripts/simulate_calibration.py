#!/usr/bin/env python3
"""Run a full calibration against a simulated mirror array.

Usage::

    python -m mirror_control.scripts.simulate_calibration --rows 2 --cols 3
    python -m mirror_control.scripts.simulate_calibration --rows 3 --cols 3 \\
        --fail 1-1 --out profiles/sim.yaml
    python -m mirror_control.scripts.simulate_calibration --noisy --mode step
"""

from __future__ import annotations

import argparse
import logging
import sys

from mirror_core.utils.logging_config import install_excepthook, setup_logging, shutdown
from mirror_control.calibration.profile import build_calibration_profile, save_profile
from mirror_control.calibration.types import GridSize
from mirror_control.configs.loader import CalibrationConfig, ConfigError, load_config
from mirror_control.hardware.capture import StableBlobCapture
from mirror_control.hardware.runner import CalibrationRunner, RunnerPhase, RunnerState
from mirror_control.hardware.simulated import SimulatedMirrorArray

logger = logging.getLogger(__name__)


def _print_state(state: RunnerState) -> None:
    p = state.progress
    active = state.active_tile.key if state.active_tile else "-"
    print(
        f"  [{state.phase.value:>9}] tile={active:<5} "
        f"completed={p.completed}/{p.total} failed={p.failed} skipped={p.skipped}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Calibrate a simulated mirror array and write the profile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Calibration config path")
    parser.add_argument("--rows", type=int, default=2, help="Grid rows (default: 2)")
    parser.add_argument("--cols", type=int, default=3, help="Grid columns (default: 3)")
    parser.add_argument("--fail", nargs="*", default=[], metavar="ROW-COL",
                        help="Tiles whose reflection never reaches the camera")
    parser.add_argument("--mode", choices=("auto", "step"),
                        help="Override runner mode (step: press Enter to advance)")
    parser.add_argument("--noisy", action="store_true",
                        help="Capture through sample aggregation instead of "
                        "noiseless direct reads")
    parser.add_argument("--seed", type=int, default=0, help="Layout RNG seed")
    parser.add_argument("--name", type=str, default="simulated", help="Profile name")
    parser.add_argument("--out", "-o", type=str, help="Write the profile YAML here")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    setup_logging(
        log_level=config.logging.level,
        log_file=config.logging.file,
        json=config.logging.json,
        color=config.logging.color,
        rotate=config.logging.rotate,
        context={"app": "simulate"},
    )
    install_excepthook()
    try:
        code = _run(args, config)
    finally:
        shutdown()
    sys.exit(code)


def _run(args: argparse.Namespace, config: CalibrationConfig) -> int:
    grid = GridSize(args.rows, args.cols)
    array = SimulatedMirrorArray(grid, failing_tiles=args.fail, seed=args.seed)
    capture = (
        StableBlobCapture(array.read_sample, config.detection) if args.noisy else array
    )
    runner = CalibrationRunner(
        grid,
        array.mirror_config,
        array,
        capture,
        settings=config.runner,
        mode=args.mode,
    )

    last_phase: list[RunnerPhase] = []

    def on_state(state: RunnerState) -> None:
        if not last_phase or last_phase[-1] != state.phase:
            last_phase.append(state.phase)
            _print_state(state)

    runner.set_state_callback(on_state)

    print(f"Calibrating simulated {grid.rows}x{grid.cols} array (run {runner.run_id})")
    try:
        runner.start()
        while not runner.join(timeout=0.2):
            state = runner.get_state()
            if state.step is not None and state.step.status == "waiting":
                input(f"  step: {state.step.label} -- press Enter to continue ")
                runner.advance()
    except (KeyboardInterrupt, EOFError):
        print("\nAborting calibration...")
        runner.dispose()

    state = runner.get_state()
    _print_state(state)
    for key, tile in state.tiles.items():
        if tile.error or tile.warnings:
            print(f"  {key}: {tile.status.value} {tile.error or ''} {'; '.join(tile.warnings)}")

    if state.phase != RunnerPhase.COMPLETED or state.summary is None:
        print(f"\nCalibration ended in phase '{state.phase.value}': {state.error or ''}")
        return 1

    profile = build_calibration_profile(
        state.summary,
        grid,
        name=args.name,
        rotation=config.runner.array_rotation,
        aspect=config.camera.aspect,
    )
    m = profile.metrics
    print(
        f"\nProfile {profile.id}: {m.completed_tiles} completed, "
        f"{m.failed_tiles} failed, {m.skipped_tiles} skipped"
    )
    if args.out:
        path = save_profile(profile, args.out)
        print(f"Saved profile to {path}")
    return 0


if __name__ == "__main__":
    main()
