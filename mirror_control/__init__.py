"""
Mirror Control Package.

Calibration and playback for motorized mirror arrays.  A calibration run
measures where every tile reflects into a fixed camera and how far the
reflection moves per motor step; the resulting profile lets the playback
planner drive tiles to arbitrary pattern points.

Subpackages:
    calibration: Data model, blob aggregation, blueprint/summary math, profiles
    hardware: Collaborator interfaces, calibration runner, simulated array
    playback: Profile-driven playback planning
    configs: Calibration settings loading and validation
"""

__all__ = ["calibration", "hardware", "playback", "configs"]
