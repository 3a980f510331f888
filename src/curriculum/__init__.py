"""Curriculum structure: refining how uploaded files are grouped into paths."""

from .grouping_refiner import (
    GroupingPreferences,
    GroupingRefiner,
    GroupingRefineResult,
    GroupingThresholds,
    cluster_by_threshold,
    detect_bridges,
    grouping_mode,
    score_pair,
)

__all__ = [
    "GroupingRefiner",
    "GroupingRefineResult",
    "GroupingThresholds",
    "GroupingPreferences",
    "score_pair",
    "cluster_by_threshold",
    "detect_bridges",
    "grouping_mode",
]
