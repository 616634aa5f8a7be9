"""Mirror Array core: geometry, statistics and persistence primitives.

This package holds the hardware-independent building blocks used by the
calibration runner and the playback planner in ``mirror_control``.

Architecture layers (strict one-way dependency):
    mirror_control/{hardware,calibration,playback}/ → mirror_core/utils/

Key invariants:
    - Camera-centered coordinates span [-1, 1] on both axes (anisotropic)
    - Pattern coordinates span [-1, 1] on both axes (isotropic)
    - Motor positions are integer step counts
    - YAML-only configs and profiles, no JSON
"""

__version__ = "0.4.0"
