# change_monitor/scoring.py
# Change scores: single-sample and pooled two-sample t-scores, burn index difference.

import logging
from typing import Mapping

import numpy as np
from scipy.stats import ttest_ind_from_stats

from .errors import DegenerateStatisticsError
from .models import DetectionIntent, Raster, StatsSummary
from .statistics import require_summary

logger = logging.getLogger(__name__)


def _nonzero(arr):
    """Mask zeros so they never end up as a divisor."""
    arr = np.ma.asarray(arr)
    return np.ma.masked_where(np.ma.getmaskarray(arr) | (arr.filled(0) == 0), arr)


def _check_grid(a: Raster, b: Raster):
    if not a.same_grid(b):
        raise ValueError("Rasters must share shape, transform and CRS to be compared")


def single_sample_score(after: Raster, before: StatsSummary) -> Raster:
    """t-score of one raster against the before-period distribution.

    score = (after - before.mean) / before.std_dev, masked where the
    before std is masked or zero.
    """
    require_summary(before, "before")
    if before.count < 2:
        raise DegenerateStatisticsError(
            "At least two images are needed in the before period to estimate its variance."
        )
    _check_grid(after, before.mean)

    score = (after.data - before.mean.data) / _nonzero(before.std_dev.data)
    logger.info(f"Single-sample t-score against {before.count} before images")
    return Raster(np.ma.masked_invalid(score), before.mean.transform, before.mean.crs)


def _pixel_counts(summary: StatsSummary) -> np.ndarray:
    if summary.valid_count is not None:
        return summary.valid_count.astype("float64")
    return np.full(summary.mean.shape, float(summary.count))


def pooled_score(before: StatsSummary, after: StatsSummary) -> Raster:
    """Pooled two-sample t-score of the after mean against the before mean.

        s_p^2 = ((n1 - 1) * s1^2 + (n2 - 1) * s2^2) / (n1 + n2 - 2)
        SE    = s_p * sqrt(1/n1 + 1/n2)
        score = (after.mean - before.mean) / SE

    Sample counts are taken per pixel, so masked acquisitions reduce n locally.
    A period with a single sample contributes no variance term.
    """
    require_summary(before, "before")
    require_summary(after, "after")
    if before.count + after.count < 3:
        raise DegenerateStatisticsError(
            "At least three images across both periods are needed for a pooled t-test."
        )
    _check_grid(after.mean, before.mean)

    n1 = _pixel_counts(before)
    n2 = _pixel_counts(after)
    # A period with one sample has a masked std; it then weighs nothing in s_p
    s1 = np.ma.filled(before.std_dev.data, 0.0)
    s2 = np.ma.filled(after.std_dev.data, 0.0)
    m1 = np.ma.getmaskarray(before.mean.data)
    m2 = np.ma.getmaskarray(after.mean.data)

    test_idx = (n1 >= 1) & (n2 >= 1) & (n1 + n2 - 2 >= 1) & ~m1 & ~m2
    score = np.full(n1.shape, np.nan)
    if test_idx.any():
        with np.errstate(divide="ignore", invalid="ignore"):
            t_v, _ = ttest_ind_from_stats(
                after.mean.data.data[test_idx], s2[test_idx], n2[test_idx],
                before.mean.data.data[test_idx], s1[test_idx], n1[test_idx],
                equal_var=True,
            )
        score[test_idx] = t_v

    logger.info(f"Pooled t-score, {before.count} before vs {after.count} after images")
    # Zero pooled variance gives +-inf or nan; both are masked
    return Raster(np.ma.masked_invalid(score), before.mean.transform, before.mean.crs)


def apply_sign_policy(score: Raster, intent: DetectionIntent) -> Raster:
    """One-sided for construction (positive excursions only), two-sided otherwise."""
    if intent.one_sided:
        return score.with_data(np.ma.masked_where(score.data.filled(0) <= 0, score.data))
    return score.with_data(np.ma.abs(score.data))


def burn_index(composites: Mapping[str, Raster], bands) -> Raster:
    """((b1 + b2) - (b3 + b4)) / ((b1 + b2) + (b3 + b4)) on per-period mean composites."""
    (b1, b2), (b3, b4) = bands
    missing = [b for b in (b1, b2, b3, b4) if b not in composites]
    if missing:
        raise KeyError(f"Missing composite bands: {missing}")
    reference = composites[b1]
    for b in (b2, b3, b4):
        _check_grid(reference, composites[b])

    first = composites[b1].data + composites[b2].data
    second = composites[b3].data + composites[b4].data
    index = (first - second) / _nonzero(first + second)
    return Raster(np.ma.masked_invalid(index), reference.transform, reference.crs)


def burn_difference(pre_index: Raster, post_index: Raster) -> Raster:
    _check_grid(pre_index, post_index)
    return post_index.with_data(post_index.data - pre_index.data)


def burnt_mask(difference: Raster, cutoff: float) -> np.ndarray:
    """Boolean burnt mask; masked pixels are never burnt."""
    return (difference.data.filled(-np.inf) > cutoff)
