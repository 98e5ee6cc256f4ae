# change_monitor/pipeline.py
# Caller-facing analysis runs: t-test change detection (stack or single image)
# and burnt-area detection.
#
# A source is any object with
#   query_rasters(collection_id, filters: StackFilters, aoi) -> RasterStack
#   query_features(dataset_id, aoi) -> list[Feature]
# taking the lon/lat AOI and returning data in the working CRS.

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from rasterio.warp import transform_geom
from shapely.geometry import mapping, shape

from .aggregation import PointReport, TieredBuildings, attribute_change, score_buildings
from .colors import CategoryColorMap
from .errors import ChangeDetectionError, EmptyInputError, Failure
from .lazy import Deferred, Materializer
from .models import (
    AnalysisRequest,
    BurntAreaRequest,
    DetectionIntent,
    Feature,
    Raster,
    RasterStack,
    StackFilters,
)
from .process_change import ChangeStats, change_layer, count_changes
from .scoring import (
    apply_sign_policy,
    burn_difference,
    burn_index,
    burnt_mask,
    pooled_score,
    single_sample_score,
)
from .statistics import clip_to_aoi, compute_stats, outside_aoi, require_summary, validate_aoi
from .thresholds import ThresholdReport, evaluate_threshold, reference_p90

logger = logging.getLogger(__name__)

GEOGRAPHIC_CRS = "EPSG:4326"


@dataclass(frozen=True)
class ChangeDetectionResult:
    intent: DetectionIntent
    score_stats: ThresholdReport
    change_stats: ChangeStats
    before_image_count: int
    after_image_count: int
    before_dates: Tuple[str, ...]
    after_dates: Tuple[str, ...]
    score: Raster
    change_mask: np.ndarray
    tiered_buildings: Optional[TieredBuildings] = None
    changed_geometry: object = None
    categorized_points: Optional[PointReport] = None
    ok: bool = True


@dataclass(frozen=True)
class BurntAreaResult:
    pre_image_count: int
    post_image_count: int
    pre_dates: Tuple[str, ...]
    post_dates: Tuple[str, ...]
    difference: Raster
    burnt_mask: np.ndarray
    burnt_stats: ChangeStats
    burnt_buildings: Tuple[Feature, ...] = ()
    ok: bool = True


Outcome = Union[ChangeDetectionResult, Failure]
BurntOutcome = Union[BurntAreaResult, Failure]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def add_months(d: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the target month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def analysis_windows(request: AnalysisRequest):
    """Before window ends at before_date, after window starts at after_date."""
    before = (add_months(request.before_date, -request.period_months), request.before_date)
    after = (request.after_date, add_months(request.after_date, request.period_months))
    return before, after


def project_aoi(aoi, crs: str):
    """Reproject a lon/lat AOI into the working CRS."""
    if crs.upper() == GEOGRAPHIC_CRS:
        return aoi
    return shape(transform_geom(GEOGRAPHIC_CRS, crs, mapping(aoi)))


def _sar_filters(request: AnalysisRequest, start: date, end: date) -> StackFilters:
    settings = request.settings
    return StackFilters(
        start=start,
        end=end,
        band=settings.band,
        instrument_mode=settings.instrument_mode,
        orbit_pass=request.orbit_pass,
        relative_orbit=request.relative_orbit,
    )


def _dates(stack_or_summary) -> Tuple[str, ...]:
    return tuple(t.date().isoformat() for t in stack_or_summary.timestamps if t is not None)


def _fetch_features(source, request: AnalysisRequest, buildings, points):
    """Resolve building and point collections, fetching from the source if not given."""
    settings = request.settings
    if buildings is None:
        if not settings.buildings_dataset:
            raise EmptyInputError("No building footprint dataset is configured for this area.")
        buildings = source.query_features(settings.buildings_dataset, request.aoi)
    if not buildings:
        raise EmptyInputError("No building footprints found in this area.")
    if points is None and settings.points_dataset:
        points = source.query_features(settings.points_dataset, request.aoi)
    return list(buildings), (list(points) if points is not None else None)


# ---------------------------------------------------------------------------
# t-test change detection
# ---------------------------------------------------------------------------

def analyze_stacks(before_stack: RasterStack, after_stack: RasterStack, aoi,
                   request: AnalysisRequest, buildings: Optional[Sequence[Feature]] = None,
                   points: Optional[Sequence[Feature]] = None,
                   color_map: Optional[CategoryColorMap] = None,
                   single_image: bool = False,
                   materializer: Optional[Materializer] = None) -> ChangeDetectionResult:
    """Score two stacks against each other and attribute the change.

    `aoi` must already be in the CRS of the stacks. With `single_image` the
    after stack must hold exactly one raster and the single-sample t-score is
    used; otherwise the pooled two-sample score.

    Raises:
        ChangeDetectionError subclasses for empty, degenerate or oversize inputs.
    """
    settings = request.settings

    # Build the graph; nothing is evaluated until materialized
    before_stats = Deferred(compute_stats, before_stack, aoi, label="before_stats")
    if single_image:
        if len(after_stack) != 1:
            raise EmptyInputError("No single after image is available near the after date.")
        after_raster = Deferred(clip_to_aoi, after_stack.rasters[0], aoi, label="after_image")
        raw_score = Deferred(single_sample_score, after_raster, before_stats, label="single_sample_score")
    else:
        after_stats = Deferred(compute_stats, after_stack, aoi, label="after_stats")
        raw_score = Deferred(pooled_score, before_stats, after_stats, label="pooled_score")

    own_materializer = materializer is None
    materializer = materializer or Materializer()
    try:
        raw = materializer.materialize(raw_score).result()
        score = apply_sign_policy(raw, request.intent)
        percentile_basis = score if settings.percentile_on_processed else raw

        # A one-sided test with no positive excursion is a valid "no change" outcome
        allow_empty = request.intent.one_sided and settings.percentile_on_processed
        # Global percentiles, per-building means and the change layer are independent
        threshold_expr = Deferred(evaluate_threshold, percentile_basis, aoi, request.threshold,
                                  settings.scale, settings.max_pixels, allow_empty, label="threshold")
        layer_expr = Deferred(change_layer, score, request.threshold, settings.morphology_kernel,
                              label="change_layer")
        exprs = [threshold_expr, layer_expr]
        if buildings is not None:
            exprs.append(Deferred(score_buildings, score, list(buildings), settings.max_features,
                                  label="building_scores"))
            # Tiers always compare processed building means with a processed p90
            if not settings.percentile_on_processed:
                exprs.append(Deferred(reference_p90, score, aoi, settings.scale, settings.max_pixels,
                                      label="tier_p90"))
        results = materializer.gather(*exprs)
    finally:
        if own_materializer:
            materializer.close()

    report, (mask, change_stats) = results[0], results[1]
    logger.info(f"Threshold {request.threshold}: {report.verdict}; "
                f"{change_stats.change_pixels} changed pixels ({change_stats.change_pct}%)")

    aggregation = None
    if buildings is not None:
        tier_p90 = report.p90 if settings.percentile_on_processed else results[3]
        aggregation = attribute_change(
            results[2], points, tier_p90, settings.tier_cutoffs, settings.changed_tiers,
            settings.max_features, settings.point_tolerance, settings.category_attribute, color_map)

    return ChangeDetectionResult(
        intent=request.intent,
        score_stats=report,
        change_stats=change_stats,
        before_image_count=len(before_stack),
        after_image_count=len(after_stack),
        before_dates=_dates(before_stack),
        after_dates=_dates(after_stack),
        score=score,
        change_mask=mask,
        tiered_buildings=aggregation.tiered_buildings if aggregation else None,
        changed_geometry=aggregation.changed_geometry if aggregation else None,
        categorized_points=aggregation.categorized_points if aggregation else None,
    )


def _run(source, request: AnalysisRequest, single_image: bool, buildings, points,
         color_map, materializer) -> Outcome:
    try:
        validate_aoi(request.aoi)
        settings = request.settings
        aoi = project_aoi(request.aoi, settings.crs)
        (b_start, b_end), (a_start, a_end) = analysis_windows(request)

        before_stack = source.query_rasters(
            settings.sar_collection, _sar_filters(request, b_start, b_end), request.aoi)
        if len(before_stack) == 0:
            raise EmptyInputError(
                f"No imagery available for the before period ({b_start} to {b_end}) in this area.")

        if single_image:
            window = timedelta(days=settings.single_image_window_days)
            candidates = source.query_rasters(
                settings.sar_collection,
                _sar_filters(request, request.after_date - window,
                             request.after_date + window + timedelta(days=1)),
                request.aoi)
            closest = candidates.closest_to(request.after_date, settings.single_image_window_days)
            if closest is None:
                raise EmptyInputError(
                    f"No image within {settings.single_image_window_days} days of {request.after_date}.")
            after_stack = RasterStack((closest,))
        else:
            after_stack = source.query_rasters(
                settings.sar_collection, _sar_filters(request, a_start, a_end), request.aoi)
            if len(after_stack) == 0:
                raise EmptyInputError(
                    f"No imagery available for the after period ({a_start} to {a_end}) in this area.")

        if not request.ignore_buildings:
            buildings, points = _fetch_features(source, request, buildings, points)
        else:
            buildings, points = None, None

        return analyze_stacks(before_stack, after_stack, aoi, request, buildings, points,
                              color_map=color_map, single_image=single_image,
                              materializer=materializer)
    except ChangeDetectionError as e:
        logger.warning(f"Change detection failed ({e.kind.value}): {e.message}")
        return Failure.from_error(e)


def run_change_detection(source, request: AnalysisRequest,
                         buildings: Optional[Sequence[Feature]] = None,
                         points: Optional[Sequence[Feature]] = None,
                         color_map: Optional[CategoryColorMap] = None,
                         materializer: Optional[Materializer] = None) -> Outcome:
    """Pooled t-test between the before and after periods.

    Returns a ChangeDetectionResult, or a Failure describing why no result
    could be produced.
    """
    return _run(source, request, False, buildings, points, color_map, materializer)


def run_single_image_change_detection(source, request: AnalysisRequest,
                                      buildings: Optional[Sequence[Feature]] = None,
                                      points: Optional[Sequence[Feature]] = None,
                                      color_map: Optional[CategoryColorMap] = None,
                                      materializer: Optional[Materializer] = None) -> Outcome:
    """Single-sample t-test of the image closest to after_date against the before period."""
    return _run(source, request, True, buildings, points, color_map, materializer)


# ---------------------------------------------------------------------------
# Burnt areas
# ---------------------------------------------------------------------------

def _period_index(source, request: BurntAreaRequest, period: Tuple[date, date], aoi, label: str):
    """Burn index of the period's mean composite, plus the stack used for dates."""
    settings = request.settings
    (b1, b2), (b3, b4) = settings.burn_index_bands
    composites = {}
    reference = None
    for band in (b1, b2, b3, b4):
        filters = StackFilters(start=period[0], end=period[1], band=band, instrument_mode=None,
                               orbit_pass=None, max_cloud_pct=settings.max_cloud_pct)
        stack = source.query_rasters(settings.optical_collection, filters, request.aoi)
        summary = require_summary(compute_stats(stack, aoi), label)
        composites[band] = summary.mean
        if reference is None:
            reference = stack
    return burn_index(composites, settings.burn_index_bands), reference


def run_burnt_area_detection(source, request: BurntAreaRequest,
                             buildings: Optional[Sequence[Feature]] = None,
                             materializer: Optional[Materializer] = None) -> BurntOutcome:
    """Burn index difference between a pre-fire and a post-fire period.

    A pixel is burnt when post index - pre index exceeds the burnt cutoff.
    """
    settings = request.settings
    own_materializer = materializer is None
    materializer = materializer or Materializer()
    try:
        validate_aoi(request.aoi)
        aoi = project_aoi(request.aoi, settings.crs)

        pre = Deferred(_period_index, source, request, request.pre_fire, aoi, "pre-fire", label="pre_index")
        post = Deferred(_period_index, source, request, request.post_fire, aoi, "post-fire", label="post_index")
        (pre_index, pre_stack), (post_index, post_stack) = materializer.gather(pre, post)

        difference = burn_difference(pre_index, post_index)
        difference = difference.with_data(
            np.ma.masked_where(outside_aoi(aoi, difference), difference.data))
        burnt = burnt_mask(difference, settings.burnt_threshold)
        stats = count_changes(np.where(burnt, 255, 0).astype("uint8"), difference)
        logger.info(f"Burnt: {stats.change_pixels} pixels, {stats.change_area_ha} ha")

        burnt_buildings = ()
        if request.include_buildings:
            if buildings is None:
                if not settings.buildings_dataset:
                    raise EmptyInputError("No building footprint dataset is configured for this area.")
                buildings = source.query_features(settings.buildings_dataset, request.aoi)
            scored = score_buildings(difference, list(buildings), settings.max_features)
            burnt_buildings = tuple(
                b.with_attributes(burn_difference=value)
                for b, value in scored
                if value is not None and value > settings.burnt_threshold
            )
            logger.info(f"{len(burnt_buildings)} of {len(scored)} buildings burnt")

        return BurntAreaResult(
            pre_image_count=len(pre_stack),
            post_image_count=len(post_stack),
            pre_dates=_dates(pre_stack),
            post_dates=_dates(post_stack),
            difference=difference,
            burnt_mask=burnt,
            burnt_stats=stats,
            burnt_buildings=burnt_buildings,
        )
    except ChangeDetectionError as e:
        logger.warning(f"Burnt area detection failed ({e.kind.value}): {e.message}")
        return Failure.from_error(e)
    finally:
        if own_materializer:
            materializer.close()
