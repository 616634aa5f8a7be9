"""Tests for configuration loading, wiring files and profile persistence.

Validates:
- The shipped calibration.yaml loads with the documented defaults
- Invalid values raise ConfigError naming the problem
- Wiring files parse into motor assignments
- A simulated run round-trips through a saved profile and plans cleanly
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import pytest

from mirror_core.utils import fs
from mirror_core.utils.space import DEFAULT_CAMERA_ASPECT, centered_to_pattern
from mirror_control.calibration.bounds import MOTOR_MAX_POSITION_STEPS
from mirror_control.calibration.profile import (
    build_calibration_profile,
    load_pattern,
    load_profile,
    profile_from_dict,
    profile_to_dict,
    save_profile,
)
from mirror_control.calibration.staging import StagingPosition
from mirror_control.calibration.types import (
    AxisAssignment,
    GridSize,
    Motor,
    Pattern,
    PatternPoint,
    TileStatus,
)
from mirror_control.configs.loader import (
    ConfigError,
    RunnerSettings,
    default_mirror_config,
    load_config,
    load_mirror_config,
)
from mirror_control.hardware.runner import CalibrationRunner
from mirror_control.hardware.simulated import SimulatedMirrorArray
from mirror_control.playback.planner import plan_profile_playback

DEFAULT_CONFIG = Path(__file__).resolve().parents[1] / "configs" / "calibration.yaml"


def _write_config(tmp_path: Path, **overrides) -> Path:
    """Copy the shipped config with section-level overrides applied."""
    data = fs.load_yaml(DEFAULT_CONFIG)
    for section, values in overrides.items():
        if values is None:
            data.pop(section, None)
        else:
            data.setdefault(section, {}).update(values)
    path = tmp_path / "calibration.yaml"
    fs.atomic_yaml_dump(data, path)
    return path


# ---------------------------------------------------------------------------
# Calibration config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_defaults(self) -> None:
        cfg = load_config()
        assert cfg.runner.delta_steps == 1200
        assert cfg.runner.max_detection_retries == 5
        assert cfg.runner.mode == "auto"
        assert cfg.runner.staging_position == StagingPosition.NEAREST_CORNER
        assert cfg.camera.aspect == pytest.approx(DEFAULT_CAMERA_ASPECT)
        assert cfg.detection.min_samples == 5
        assert cfg.robust_tile_size.enabled
        assert cfg.logging.level == "INFO"

    def test_yaml_matches_dataclass_defaults(self) -> None:
        assert load_config().runner == RunnerSettings()

    def test_camera_geometry_feeds_runner(self, tmp_path: Path) -> None:
        path = _write_config(tmp_path, camera={"rotation": 180})
        cfg = load_config(path)
        assert cfg.runner.array_rotation == 180
        assert cfg.runner.roi == cfg.camera.roi

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ConfigError, match="Empty"):
            load_config(path)

    def test_missing_runner_section(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Missing required"):
            load_config(_write_config(tmp_path, runner=None))

    @pytest.mark.parametrize("section,values,match", [
        ("runner", {"mode": "turbo"}, "runner.mode"),
        ("runner", {"delta_steps": 0}, "delta_steps"),
        ("runner", {"max_detection_retries": 0}, "max_detection_retries"),
        ("runner", {"staging_position": "top"}, "Invalid configuration value"),
        ("camera", {"rotation": 45}, "camera.rotation"),
        ("detection", {"min_samples": 0}, "min_samples"),
    ])
    def test_invalid_values(self, tmp_path: Path, section, values, match) -> None:
        with pytest.raises(ConfigError, match=match):
            load_config(_write_config(tmp_path, **{section: values}))

    def test_out_of_range_gap_warns(self, tmp_path: Path, caplog) -> None:
        path = _write_config(tmp_path, runner={"grid_gap_normalized": 0.8})
        with caplog.at_level(logging.WARNING, logger="mirror_control.configs.loader"):
            cfg = load_config(path)
        assert cfg.runner.grid_gap_normalized == pytest.approx(0.8)
        assert "clamped" in caplog.text

    def test_delta_beyond_motor_range_warns(self, tmp_path: Path, caplog) -> None:
        path = _write_config(tmp_path, runner={"delta_steps": MOTOR_MAX_POSITION_STEPS + 1})
        with caplog.at_level(logging.WARNING, logger="mirror_control.configs.loader"):
            load_config(path)
        assert "exceeds motor range" in caplog.text

    def test_shipped_sections_are_all_applied(self) -> None:
        sections = set(fs.load_yaml(DEFAULT_CONFIG))
        assert sections == {"runner", "robust_tile_size", "detection", "camera", "logging"}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestWiring:
    def test_default_wiring(self) -> None:
        wiring = default_mirror_config(GridSize(2, 2))
        assert len(wiring) == 4
        assert wiring["1-1"] == AxisAssignment(Motor("node-1", 2), Motor("node-1", 3))

    def test_load_wiring(self, tmp_path: Path) -> None:
        path = tmp_path / "wiring.yaml"
        fs.atomic_yaml_dump({"tiles": {
            "0-0": {"x": {"controller": "left", "axis": 0}, "y": {"controller": "left", "axis": 1}},
            "0-1": {"x": {"controller": "right", "axis": 4}},
        }}, path)
        wiring = load_mirror_config(path)
        assert wiring["0-0"].calibratable
        assert wiring["0-0"].y == Motor("left", 1)
        assert wiring["0-1"].y is None
        assert not wiring["0-1"].calibratable

    def test_bad_tile_key(self, tmp_path: Path) -> None:
        path = tmp_path / "wiring.yaml"
        fs.atomic_yaml_dump({"tiles": {"a-b": {}}}, path)
        with pytest.raises(ConfigError, match="Invalid wiring entry"):
            load_mirror_config(path)

    def test_motor_missing_axis(self, tmp_path: Path) -> None:
        path = tmp_path / "wiring.yaml"
        fs.atomic_yaml_dump({"tiles": {"0-0": {"x": {"controller": "left"}}}}, path)
        with pytest.raises(ConfigError, match="Missing required wiring key"):
            load_mirror_config(path)

    def test_missing_wiring_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_mirror_config(tmp_path / "wiring.yaml")


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def calibrated():
    """Profile built from a simulated 2x2 run with one dead tile."""
    grid = GridSize(2, 2)
    sim = SimulatedMirrorArray(grid, failing_tiles=["1-1"], seed=7)
    runner = CalibrationRunner(
        grid, sim.mirror_config, sim, sim, settings=RunnerSettings(retry_delay_ms=1)
    )
    state = runner.run()
    profile = build_calibration_profile(state.summary, grid, name="bench", profile_id="abc123")
    return grid, sim, profile


class TestProfile:
    def test_build_from_summary(self, calibrated) -> None:
        grid, _, profile = calibrated
        assert profile.id == "abc123"
        assert profile.camera_aspect == pytest.approx(1920.0 / 1080.0)
        assert profile.metrics.total_tiles == 4
        assert profile.metrics.completed_tiles == 3
        assert profile.metrics.failed_tiles == 1

        done = profile.tiles["0-0"]
        assert done.status == TileStatus.COMPLETED
        assert done.adjusted_home.steps_x is not None
        assert done.adjusted_home.steps_y is not None
        assert done.blob_size == pytest.approx(0.05)
        assert done.step_range["x"].max_steps == 1200

        dead = profile.tiles["1-1"]
        assert dead.status == TileStatus.FAILED
        assert dead.adjusted_home is None
        assert dead.error.startswith("Unable to detect blob")

    def test_save_and_load_roundtrip(self, calibrated, tmp_path: Path) -> None:
        _, _, profile = calibrated
        path = save_profile(profile, tmp_path / "profiles" / "bench.yaml")
        assert path.exists()
        assert fs.load_yaml(path)["schema"] == "mirror_profile.v1"

        loaded = load_profile(path)
        assert loaded == profile

    def test_dict_roundtrip(self, calibrated) -> None:
        _, _, profile = calibrated
        assert profile_from_dict(profile_to_dict(profile)) == profile

    def test_large_gap_run_saves_ordered_bounds(self, tmp_path: Path) -> None:
        grid = GridSize(2, 3)
        sim = SimulatedMirrorArray(grid, failing_tiles=["1-2"])
        settings = RunnerSettings(retry_delay_ms=1, grid_gap_normalized=0.3)
        state = CalibrationRunner(grid, sim.mirror_config, sim, sim, settings=settings).run()
        profile = build_calibration_profile(state.summary, grid, name="wide-gap")

        for tile in profile.tiles.values():
            bounds = tile.combined_bounds
            assert bounds.x.min <= bounds.x.max, tile.key
            assert bounds.y.min <= bounds.y.max, tile.key

        loaded = load_profile(save_profile(profile, tmp_path / "wide.yaml"))
        assert loaded.tiles["1-2"].status == TileStatus.FAILED
        assert loaded.metrics.completed_tiles == 5

    def test_invalid_profile_is_not_written(self, calibrated, tmp_path: Path) -> None:
        _, _, profile = calibrated
        shrunk = dataclasses.replace(profile, grid_size=GridSize(1, 1))
        path = tmp_path / "shrunk.yaml"
        with pytest.raises(ValueError, match="outside"):
            save_profile(shrunk, path)
        assert not path.exists()

    def test_load_pattern(self, tmp_path: Path) -> None:
        path = tmp_path / "ring.yaml"
        fs.atomic_yaml_dump({
            "schema": "pattern.v1",
            "id": "ring",
            "name": "Ring",
            "points": [{"id": "a", "x": 0.5, "y": 0.0}, {"id": "b", "x": -0.5, "y": 0.0}],
        }, path)
        pattern = load_pattern(path)
        assert pattern == Pattern(
            id="ring",
            name="Ring",
            points=(PatternPoint("a", 0.5, 0.0), PatternPoint("b", -0.5, 0.0)),
        )

    def test_plan_onto_adjusted_homes(self, calibrated) -> None:
        grid, sim, profile = calibrated
        points = []
        for key in ("0-0", "0-1", "1-0"):
            home = profile.tiles[key].adjusted_home
            x, y = centered_to_pattern((home.x, home.y), profile.camera_aspect, 0)
            points.append(PatternPoint(f"p-{key}", x, y))

        plan = plan_profile_playback(grid, sim.mirror_config, profile, Pattern("homes", tuple(points)))

        assert plan.ok, plan.errors
        for tile_plan in plan.tiles[:3]:
            home = profile.tiles[tile_plan.tile].adjusted_home
            assert tile_plan.point_id == f"p-{tile_plan.tile}"
            assert tile_plan.axis_targets["x"].target_steps == home.steps_x
            assert tile_plan.axis_targets["y"].target_steps == home.steps_y
        assert plan.tiles[3].point_id is None
