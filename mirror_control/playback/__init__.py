"""Profile-driven playback planning."""

from mirror_control.playback.planner import (
    AxisTarget,
    PlanError,
    PlanErrorCode,
    PlaybackPlan,
    TilePlan,
    plan_profile_playback,
)

__all__ = [
    "AxisTarget",
    "PlanError",
    "PlanErrorCode",
    "PlaybackPlan",
    "TilePlan",
    "plan_profile_playback",
]
