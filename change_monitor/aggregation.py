# change_monitor/aggregation.py
# Attribute the score raster to building footprints and points of interest.

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from rasterio.features import geometry_mask
from rasterio.transform import Affine, rowcol
from shapely.geometry import GeometryCollection, mapping
from shapely.ops import unary_union
from shapely.prepared import prep

from .colors import CategoryColorMap
from .errors import BackendLimitExceededError, DegenerateStatisticsError
from .models import ChangeTier, Feature, Raster

logger = logging.getLogger(__name__)

SCORE_ATTRIBUTE = "change_score"
TIER_ATTRIBUTE = "change_tier"


@dataclass(frozen=True)
class TieredBuildings:
    tiers: Dict[ChangeTier, Tuple[Feature, ...]]
    changed: Tuple[Feature, ...]
    scored_count: int
    unscored_count: int

    def members(self, tier: ChangeTier) -> Tuple[Feature, ...]:
        return self.tiers.get(tier, ())


@dataclass(frozen=True)
class PointReport:
    affected: Tuple[Feature, ...]
    counts: Dict[str, int]
    uncategorized: int = 0
    colors: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.affected)

    @property
    def summary(self) -> str:
        if not self.affected:
            return "No points found in changed buildings."
        parts = [f"{label}: {n}" for label, n in self.counts.items()]
        return f"{self.total} points found in changed buildings ({', '.join(parts)})."


@dataclass(frozen=True)
class AggregationResult:
    tiered_buildings: TieredBuildings
    changed_geometry: object
    categorized_points: Optional[PointReport]


def _pixel_window(geom, raster: Raster):
    """Row/col slice of the raster covering the geometry's bounds, or None."""
    minx, miny, maxx, maxy = geom.bounds
    rows, cols = rowcol(raster.transform, [minx, maxx, minx, maxx], [miny, miny, maxy, maxy])
    height, width = raster.shape
    r0, r1 = max(int(min(rows)), 0), min(int(max(rows)) + 1, height)
    c0, c1 = max(int(min(cols)), 0), min(int(max(cols)) + 1, width)
    if r0 >= r1 or c0 >= c1:
        return None
    return r0, r1, c0, c1


def _window_values(score: Raster, geom, window, all_touched: bool):
    r0, r1, c0, c1 = window
    sub = score.data[r0:r1, c0:c1]
    inside = geometry_mask(
        [mapping(geom)],
        out_shape=sub.shape,
        transform=score.transform * Affine.translation(c0, r0),
        invert=True,
        all_touched=all_touched,
    )
    return sub[inside]


def zonal_mean(score: Raster, geom) -> Optional[float]:
    """Mean of the unmasked pixels whose centres fall inside `geom`.

    Footprints that hold no pixel centre (smaller than a pixel, or lying
    between centres) take the mean of every pixel they touch instead.
    Returns None when no unmasked pixel overlaps the geometry.
    """
    if geom is None or geom.is_empty:
        return None
    window = _pixel_window(geom, score)
    if window is None:
        return None
    values = _window_values(score, geom, window, all_touched=False)
    if values.count() == 0:
        values = _window_values(score, geom, window, all_touched=True)
    if values.count() == 0:
        return None
    return float(values.mean())


def score_buildings(score: Raster, buildings: Sequence[Feature],
                    max_features: int) -> List[Tuple[Feature, Optional[float]]]:
    """Per-footprint mean score. Non-polygonal geometries get no score."""
    if len(buildings) > max_features:
        raise BackendLimitExceededError(
            f"{len(buildings):,} building footprints exceed the {max_features:,} feature limit. "
            "Draw a smaller area."
        )
    scored = []
    for building in buildings:
        geom = building.geometry
        if getattr(geom, "geom_type", None) not in ("Polygon", "MultiPolygon"):
            scored.append((building, None))
            continue
        scored.append((building, zonal_mean(score, geom)))
    return scored


def highest_tier(value: float, p90: float, cutoffs: Mapping[str, float]) -> Optional[ChangeTier]:
    """Highest tier whose cutoff `value` strictly exceeds."""
    best = None
    for tier in ChangeTier:
        fraction = cutoffs.get(tier.value)
        if fraction is not None and value > p90 * fraction:
            if best is None or fraction >= cutoffs[best.value]:
                best = tier
    return best


def tier_buildings(scored: Sequence[Tuple[Feature, Optional[float]]], p90: Optional[float],
                   cutoffs: Mapping[str, float], changed_tiers: Sequence[str]) -> TieredBuildings:
    """Bucket scored footprints into cumulative tiers.

    A building enters tier T iff its mean score > p90 * cutoffs[T]; so a
    building in "extreme" is also in every tier with a lower cutoff.
    Buildings with an undefined score join no tier.
    `p90` must come from the sign-processed score, so it is never negative;
    None (no change scores at all) leaves every tier empty.
    """
    if p90 is not None and p90 < 0:
        raise DegenerateStatisticsError(
            f"Tier cutoffs need a non-negative 90th percentile, got {p90:.3f}."
        )
    tiers = {tier: [] for tier in ChangeTier if tier.value in cutoffs}
    scored_count = 0
    unscored_count = 0

    for building, value in scored:
        if value is None:
            unscored_count += 1
            continue
        scored_count += 1
        if p90 is None:
            continue
        top = highest_tier(value, p90, cutoffs)
        tagged = building.with_attributes(**{
            SCORE_ATTRIBUTE: value,
            TIER_ATTRIBUTE: top.value if top else None,
        })
        for tier in tiers:
            if value > p90 * cutoffs[tier.value]:
                tiers[tier].append(tagged)

    changed = []
    seen = set()
    for tier in tiers:
        if tier.value not in changed_tiers:
            continue
        for building in tiers[tier]:
            if id(building) not in seen:
                seen.add(id(building))
                changed.append(building)

    sizes = {tier.value: len(members) for tier, members in tiers.items()}
    logger.info(f"Tiered {scored_count} buildings ({unscored_count} unscored): {sizes}")
    if unscored_count:
        logger.warning(f"{unscored_count} buildings had no valid pixels and were excluded")

    return TieredBuildings(
        tiers={tier: tuple(members) for tier, members in tiers.items()},
        changed=tuple(changed),
        scored_count=scored_count,
        unscored_count=unscored_count,
    )


def dissolve(features: Sequence[Feature]):
    """Union of all feature geometries; an empty collection when there are none."""
    geoms = [f.geometry for f in features if f.geometry is not None and not f.geometry.is_empty]
    if not geoms:
        return GeometryCollection()
    return unary_union(geoms)


def filter_points(points: Sequence[Feature], geometry, tolerance: float = 1.0) -> Tuple[Feature, ...]:
    """Points covered by `geometry` grown by `tolerance` map units."""
    if geometry is None or geometry.is_empty:
        return ()
    area = prep(geometry.buffer(tolerance) if tolerance else geometry)
    return tuple(p for p in points if p.geometry is not None and area.covers(p.geometry))


def categorize_points(points: Sequence[Feature], attribute: str,
                      color_map: Optional[CategoryColorMap] = None) -> PointReport:
    """Count points per category label. Points without a label are counted apart."""
    counts = Counter()
    uncategorized = 0
    for point in points:
        label = point.get(attribute)
        if label is None or str(label).strip() == "":
            uncategorized += 1
            continue
        counts[str(label)] += 1

    ordered = dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))
    colors = {}
    if color_map is not None:
        colors = {label: color_map.color_for(label) for label in ordered}

    return PointReport(
        affected=tuple(points),
        counts=ordered,
        uncategorized=uncategorized,
        colors=colors,
    )


def attribute_change(scored: Sequence[Tuple[Feature, Optional[float]]], points: Optional[Sequence[Feature]],
                     p90: Optional[float], cutoffs: Mapping[str, float], changed_tiers: Sequence[str],
                     max_features: int, tolerance: float = 1.0, category_attribute: str = "category",
                     color_map: Optional[CategoryColorMap] = None) -> AggregationResult:
    """Tier already-scored buildings, dissolve the changed ones and count points inside."""
    tiered = tier_buildings(scored, p90, cutoffs, changed_tiers)
    changed_geometry = dissolve(tiered.changed)

    report = None
    if points is not None:
        if len(points) > max_features:
            raise BackendLimitExceededError(
                f"{len(points):,} points of interest exceed the {max_features:,} feature limit. "
                "Draw a smaller area."
            )
        affected = filter_points(points, changed_geometry, tolerance)
        report = categorize_points(affected, category_attribute, color_map)
        logger.info(report.summary)

    return AggregationResult(
        tiered_buildings=tiered,
        changed_geometry=changed_geometry,
        categorized_points=report,
    )


def aggregate(score: Raster, buildings: Sequence[Feature], points: Optional[Sequence[Feature]],
              p90: float, cutoffs: Mapping[str, float], changed_tiers: Sequence[str],
              max_features: int, tolerance: float = 1.0, category_attribute: str = "category",
              color_map: Optional[CategoryColorMap] = None) -> AggregationResult:
    """Score buildings against the raster, then attribute the change to them and to points."""
    scored = score_buildings(score, buildings, max_features)
    return attribute_change(scored, points, p90, cutoffs, changed_tiers, max_features,
                            tolerance, category_attribute, color_map)
