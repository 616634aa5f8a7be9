#!/usr/bin/env python3
"""Plan playback of a pattern from a calibration profile.

Prints the per-tile assignment, step targets and any errors; optionally
writes the plan as YAML.

Usage::

    python -m mirror_control.scripts.plan_playback profiles/wall.yaml patterns/ring.yaml
    python -m mirror_control.scripts.plan_playback profiles/wall.yaml patterns/ring.yaml \\
        --wiring wiring.yaml --out plans/ring.yaml
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

from mirror_core.utils import fs
from mirror_core.utils.logging_config import install_excepthook, setup_logging, shutdown
from mirror_control.calibration.profile import load_pattern, load_profile
from mirror_control.calibration.types import GridSize
from mirror_control.configs.loader import (
    ConfigError,
    default_mirror_config,
    load_config,
    load_mirror_config,
)
from mirror_control.playback.planner import PlaybackPlan, plan_profile_playback

logger = logging.getLogger(__name__)


def plan_to_dict(plan: PlaybackPlan) -> dict[str, Any]:
    """YAML-safe form of a plan."""
    return {
        "pattern_id": plan.pattern_id,
        "tiles": [
            {
                "tile": t.tile,
                "point_id": t.point_id,
                "target": {"x": t.target.x, "y": t.target.y} if t.target else None,
                "axis_targets": {
                    axis: {
                        "controller": target.motor.controller_id,
                        "axis_index": target.motor.axis_index,
                        "target_steps": target.target_steps,
                    }
                    for axis, target in t.axis_targets.items()
                },
            }
            for t in plan.tiles
        ],
        "errors": [
            {
                "code": e.code.value,
                "message": e.message,
                "tile": e.tile,
                "axis": e.axis,
                "point_id": e.point_id,
            }
            for e in plan.errors
        ],
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Plan pattern playback from a calibration profile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("profile", type=str, help="Profile YAML (mirror_profile.v1)")
    parser.add_argument("pattern", type=str, help="Pattern YAML (pattern.v1)")
    parser.add_argument("--wiring", "-w", type=str,
                        help="Tile -> motor wiring YAML (default: one controller per row)")
    parser.add_argument("--config", "-c", type=str, help="Calibration config path")
    parser.add_argument("--rows", type=int, help="Grid rows (default: profile grid)")
    parser.add_argument("--cols", type=int, help="Grid columns (default: profile grid)")
    parser.add_argument("--out", "-o", type=str, help="Write the plan YAML here")
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
        context={"app": "plan"},
    )
    install_excepthook()
    try:
        code = _run(args)
    finally:
        shutdown()
    sys.exit(code)


def _run(args: argparse.Namespace) -> int:
    try:
        profile = load_profile(args.profile)
        pattern = load_pattern(args.pattern)
        grid = GridSize(
            args.rows or profile.grid_size.rows,
            args.cols or profile.grid_size.cols,
        )
        wiring = (
            load_mirror_config(args.wiring) if args.wiring else default_mirror_config(grid)
        )
    except (ConfigError, FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    plan = plan_profile_playback(grid, wiring, profile, pattern)

    print(f"Pattern {plan.pattern_id} on {grid.rows}x{grid.cols} grid:")
    for tile in plan.tiles:
        if tile.point_id is None:
            continue
        steps = ", ".join(
            f"{axis}={target.target_steps}" for axis, target in tile.axis_targets.items()
        )
        print(f"  {tile.tile:<6} <- {tile.point_id:<10} {steps}")
    print(f"{len(plan.playable_axis_targets)} playable axis target(s)")

    if plan.errors:
        print(f"\n{len(plan.errors)} error(s):")
        for error in plan.errors:
            where = f" [{error.tile}{':' + error.axis if error.axis else ''}]" if error.tile else ""
            print(f"  {error.code.value}{where}: {error.message}")

    if args.out:
        fs.atomic_yaml_dump(plan_to_dict(plan), args.out)
        print(f"\nSaved plan to {args.out}")

    return 0 if plan.ok else 2


if __name__ == "__main__":
    main()
