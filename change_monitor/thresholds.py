# change_monitor/thresholds.py
# Global percentiles of a score raster and threshold-adequacy recommendations.

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .errors import BackendLimitExceededError, DegenerateStatisticsError
from .models import Raster
from .statistics import outside_aoi

logger = logging.getLogger(__name__)

TOO_HIGH = "too_high"
TOO_LOW = "too_low"
REASONABLE = "reasonable"
NO_CHANGE = "no_change"


@dataclass(frozen=True)
class ThresholdReport:
    threshold: float
    p90: Optional[float]
    p95: Optional[float]
    p99: Optional[float]
    verdict: str
    recommendation: str
    sampled_pixels: int


def sample_step(raster: Raster, scale: float) -> int:
    """Pixel stride that approximates the nominal sampling resolution."""
    if not scale or scale <= raster.pixel_size:
        return 1
    return max(1, int(round(scale / raster.pixel_size)))


def sample_values(score: Raster, aoi, scale: float, max_pixels: int) -> np.ndarray:
    """Unmasked score pixels inside the AOI, sampled on a subgrid matching `scale`.

    The number of sampled AOI pixels is checked against `max_pixels` before
    any values are gathered.
    """
    step = sample_step(score, scale)
    outside = outside_aoi(aoi, score)[::step, ::step]
    in_aoi = int((~outside).sum())
    if in_aoi > max_pixels:
        raise BackendLimitExceededError(
            f"The area of interest holds {in_aoi:,} pixels at {scale} m, more than the "
            f"{max_pixels:,} pixel limit. Draw a smaller area."
        )

    sample = np.ma.masked_where(outside, score.data[::step, ::step])
    return sample.compressed()


def compute_percentiles(score: Raster, aoi, scale: float, max_pixels: int,
                        percentiles=(90, 95, 99)):
    """Percentiles of the unmasked score pixels inside the AOI.

    Returns:
        tuple: (list of percentile values, number of pixels used)
    """
    values = sample_values(score, aoi, scale, max_pixels)
    if values.size == 0:
        raise DegenerateStatisticsError(
            "No valid change scores inside the area of interest; percentiles are undefined."
        )
    result = np.percentile(values, percentiles)
    logger.info(f"Percentiles {list(percentiles)} over {values.size} pixels: {np.round(result, 3).tolist()}")
    return [float(v) for v in result], int(values.size)


def recommend(threshold: float, p90: float, p95: float, p99: float):
    """Classify a threshold against [p90, p99] (closed interval is reasonable)."""
    if threshold > p99:
        return TOO_HIGH, (
            f"Threshold {threshold:.2f} is too high: it exceeds the 99th percentile ({p99:.2f}). "
            f"Consider lowering it toward p95 ({p95:.2f}) or p99."
        )
    if threshold < p90:
        return TOO_LOW, (
            f"Threshold {threshold:.2f} is too low: it is below the 90th percentile ({p90:.2f}). "
            f"Consider raising it toward p90 or p95 ({p95:.2f})."
        )
    return REASONABLE, (
        f"Threshold {threshold:.2f} is within a reasonable range "
        f"(p90 {p90:.2f} to p99 {p99:.2f})."
    )


def reference_p90(score: Raster, aoi, scale: float, max_pixels: int) -> Optional[float]:
    """90th percentile used for building tiers; None when no pixel carries a score."""
    values = sample_values(score, aoi, scale, max_pixels)
    if values.size == 0:
        return None
    return float(np.percentile(values, 90))


def evaluate_threshold(score: Raster, aoi, threshold: float, scale: float,
                       max_pixels: int, allow_empty: bool = False) -> ThresholdReport:
    """Percentile report for `threshold`.

    With `allow_empty`, a score with no unmasked pixel inside the AOI (a
    one-sided test that found no positive excursion) gives a NO_CHANGE
    report instead of failing.
    """
    if allow_empty and sample_values(score, aoi, scale, max_pixels).size == 0:
        return ThresholdReport(
            threshold=threshold,
            p90=None,
            p95=None,
            p99=None,
            verdict=NO_CHANGE,
            recommendation="No positive change scores inside the area of interest; "
                           "nothing exceeds any threshold.",
            sampled_pixels=0,
        )
    (p90, p95, p99), sampled = compute_percentiles(score, aoi, scale, max_pixels)
    verdict, message = recommend(threshold, p90, p95, p99)
    return ThresholdReport(
        threshold=threshold,
        p90=p90,
        p95=p95,
        p99=p99,
        verdict=verdict,
        recommendation=message,
        sampled_pixels=sampled,
    )
