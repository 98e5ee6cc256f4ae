"""Satellite change monitoring: t-test change scores attributed to buildings and points."""

from .errors import Failure, FailureKind
from .models import AnalysisRequest, BurntAreaRequest, DetectionIntent, ChangeTier, Feature
from .pipeline import (
    analyze_stacks,
    run_burnt_area_detection,
    run_change_detection,
    run_single_image_change_detection,
)

__all__ = [
    "AnalysisRequest",
    "BurntAreaRequest",
    "ChangeTier",
    "DetectionIntent",
    "Failure",
    "FailureKind",
    "Feature",
    "analyze_stacks",
    "run_burnt_area_detection",
    "run_change_detection",
    "run_single_image_change_detection",
]
