"""Cross-cutting utilities (lowest dependency layer).

This package provides shared primitives for:
    - Robust statistics: median, MAD, outlier detection (robust_stats)
    - Pattern / camera coordinate conversion (space)
    - Atomic I/O and YAML helpers (fs)
    - Profile and pattern schemas (validators)
    - Unified logging (logging_config)

No module in utils/ may import from ``mirror_control``.

Convenience imports:
    from mirror_core.utils import fs, robust_stats, space, validators
    from mirror_core.utils.logging_config import setup_logging, get_logger
"""

from . import fs
from . import logging_config
from . import robust_stats
from . import space
from . import validators

from .logging_config import get_logger, push_context, setup_logging

__all__ = [
    # Modules
    'fs',
    'logging_config',
    'robust_stats',
    'space',
    'validators',
    # Functions
    'get_logger',
    'push_context',
    'setup_logging',
]
