"""Tests for the command-line entry points.

Validates:
- simulate_calibration writes a loadable profile and exits 0
- plan_playback plans from that profile and writes the plan YAML
- Both scripts restore the excepthook and detach their log handlers
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

from mirror_core.utils import fs
from mirror_core.utils.space import centered_to_pattern
from mirror_control.calibration.profile import load_profile
from mirror_control.calibration.types import TileStatus
from mirror_control.scripts import plan_playback, simulate_calibration


def _run_main(monkeypatch, module, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", [module.__name__, *argv])
    with pytest.raises(SystemExit) as exc_info:
        module.main()
    return exc_info.value.code


def _installed_handlers() -> list[logging.Handler]:
    from mirror_core.utils.logging_config import ContextFormatter

    return [
        h for h in logging.getLogger().handlers
        if isinstance(h.formatter, ContextFormatter)
    ]


@pytest.fixture()
def simulated_profile(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "profiles" / "sim.yaml"
    code = _run_main(
        monkeypatch, simulate_calibration,
        "--rows", "1", "--cols", "2", "--name", "bench", "--out", str(path),
    )
    assert code == 0
    return path


# ---------------------------------------------------------------------------
# simulate_calibration
# ---------------------------------------------------------------------------


class TestSimulateCalibration:
    def test_writes_profile(self, simulated_profile: Path) -> None:
        profile = load_profile(simulated_profile)
        assert profile.name == "bench"
        assert profile.metrics.completed_tiles == 2
        assert all(t.status == TileStatus.COMPLETED for t in profile.tiles.values())

    def test_restores_process_state(self, tmp_path: Path, monkeypatch) -> None:
        original = sys.excepthook
        code = _run_main(monkeypatch, simulate_calibration, "--rows", "1", "--cols", "1")
        assert code == 0
        assert sys.excepthook is original
        assert _installed_handlers() == []

    def test_bad_config_exits_1(self, tmp_path: Path, monkeypatch) -> None:
        code = _run_main(
            monkeypatch, simulate_calibration, "--config", str(tmp_path / "missing.yaml")
        )
        assert code == 1


# ---------------------------------------------------------------------------
# plan_playback
# ---------------------------------------------------------------------------


class TestPlanPlayback:
    def test_plans_onto_calibrated_tile(
        self, simulated_profile: Path, tmp_path: Path, monkeypatch
    ) -> None:
        profile = load_profile(simulated_profile)
        home = profile.tiles["0-0"].adjusted_home
        x, y = centered_to_pattern((home.x, home.y), profile.camera_aspect, 0)
        pattern_path = tmp_path / "dot.yaml"
        fs.atomic_yaml_dump(
            {"schema": "pattern.v1", "id": "dot", "points": [{"id": "p", "x": x, "y": y}]},
            pattern_path,
        )
        plan_path = tmp_path / "plans" / "dot.yaml"

        code = _run_main(
            monkeypatch, plan_playback,
            str(simulated_profile), str(pattern_path), "--out", str(plan_path),
        )

        assert code == 0
        plan = fs.load_yaml(plan_path)
        assert plan["errors"] == []
        first = plan["tiles"][0]
        assert first["tile"] == "0-0"
        assert first["point_id"] == "p"
        assert first["axis_targets"]["x"]["target_steps"] == home.steps_x
        assert _installed_handlers() == []

    def test_missing_profile_exits_1(self, tmp_path: Path, monkeypatch) -> None:
        original = sys.excepthook
        code = _run_main(
            monkeypatch, plan_playback,
            str(tmp_path / "nope.yaml"), str(tmp_path / "nope-pattern.yaml"),
        )
        assert code == 1
        assert sys.excepthook is original
        assert _installed_handlers() == []
