from __future__ import annotations

from oi_tracker.schemas.common import ArtifactBase, clean_nan, utc_now
from oi_tracker.schemas.patterns import PatternIndicator, PatternSignal, PatternType

__all__ = [
    "ArtifactBase",
    "PatternIndicator",
    "PatternSignal",
    "PatternType",
    "clean_nan",
    "utc_now",
]
