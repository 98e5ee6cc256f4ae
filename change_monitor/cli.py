"""change_monitor.cli

Command line entrypoint for satellite change monitoring.

Subcommands:
- detect  : Sentinel-1 t-test change detection via Earth Engine
- burnt   : Sentinel-2 burn index difference via Earth Engine
- compare : t-test change detection on local GeoTIFF stacks

Each run writes meta.json (and change_mask.tif when a mask exists) to --out-dir.

Examples:
  python -m change_monitor detect --aoi spratly_reef \
    --before 2023-01-01 --after 2023-07-01 --months 6 --intent construction \
    --buildings-dataset projects/sat-io/open-datasets/MSBuildings/Vietnam

  python -m change_monitor burnt --aoi 34.40,31.45,34.55,31.60 \
    --pre 2023-09-01 2023-10-01 --post 2023-11-01 2023-12-01

  python -m change_monitor compare --before b1.tif b2.tif b3.tif --after a1.tif a2.tif \
    --buildings footprints.gpkg --points pois.geojson --out-dir outputs/run1
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import asdict
from datetime import date
from pathlib import Path
from typing import List, Optional

from rasterio.warp import transform_geom
from shapely.geometry import box, mapping, shape
from shapely.ops import unary_union

from .colors import CategoryColorMap
from .config import AOIS, CHANGE_THRESHOLD, load_settings, setup_logging
from .errors import ChangeDetectionError, Failure
from .models import AnalysisRequest, BurntAreaRequest, DetectionIntent, Feature, RasterStack
from .process_change import save_outputs

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Input helpers
# -----------------------------------------------------------------------------

def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}")


def _lonlat_to(geom, crs):
    if not crs or crs.upper() == "EPSG:4326":
        return geom
    return shape(transform_geom("EPSG:4326", crs, mapping(geom)))


def km_to_deg(km):
    """Rough conversion of km to degrees (works at mid-latitudes)."""
    return km / 111.0


def get_bbox(lat, lon, size_km):
    """Lon/lat box of size_km on a side around a centre point."""
    d = km_to_deg(size_km) / 2
    return box(lon - d, lat - d, lon + d, lat + d)


def resolve_aoi(value: str, crs: str = "EPSG:4326"):
    """AOI from a preset name, a vector file, 'lat,lon,size_km' or 'xmin,ymin,xmax,ymax'."""
    if value in AOIS:
        return _lonlat_to(box(*AOIS[value]["bounds"]), crs)
    path = Path(value)
    if path.exists():
        import geopandas as gpd
        gdf = gpd.read_file(path)
        if gdf.crs is not None:
            gdf = gdf.to_crs(crs)
        return unary_union(list(gdf.geometry))
    parts = value.split(",")
    try:
        if len(parts) == 3:
            return _lonlat_to(get_bbox(*map(float, parts)), crs)
        if len(parts) == 4:
            return _lonlat_to(box(*map(float, parts)), crs)
    except ValueError:
        pass
    raise SystemExit(
        f"AOI must be one of {sorted(AOIS)}, a vector file, lat,lon,size_km or xmin,ymin,xmax,ymax: {value}")


def load_features(path: Path, crs: str) -> List[Feature]:
    """Read a vector file into Features in `crs`; non-geometry columns become attributes."""
    import geopandas as gpd
    gdf = gpd.read_file(path)
    if gdf.crs is not None and crs:
        gdf = gdf.to_crs(crs)
    records = gdf.drop(columns=gdf.geometry.name).to_dict("records")
    features = [
        Feature(geometry=geom, attributes=attrs)
        for geom, attrs in zip(gdf.geometry, records)
        if geom is not None
    ]
    logger.info(f"Loaded {len(features)} features from {path}")
    return features


# -----------------------------------------------------------------------------
# Output helpers
# -----------------------------------------------------------------------------

def change_meta(result) -> dict:
    meta = {
        "intent": result.intent.value,
        "score_stats": asdict(result.score_stats),
        "change_stats": asdict(result.change_stats),
        "before_image_count": result.before_image_count,
        "after_image_count": result.after_image_count,
        "before_dates": list(result.before_dates),
        "after_dates": list(result.after_dates),
    }
    tiered = result.tiered_buildings
    if tiered is not None:
        meta["buildings"] = {
            "scored": tiered.scored_count,
            "unscored": tiered.unscored_count,
            "tiers": {tier.value: len(members) for tier, members in tiered.tiers.items()},
            "changed": len(tiered.changed),
        }
    points = result.categorized_points
    if points is not None:
        meta["points"] = {
            "total": points.total,
            "counts": points.counts,
            "uncategorized": points.uncategorized,
            "colors": points.colors,
            "summary": points.summary,
        }
    return meta


def burnt_meta(result) -> dict:
    return {
        "pre_image_count": result.pre_image_count,
        "post_image_count": result.post_image_count,
        "pre_dates": list(result.pre_dates),
        "post_dates": list(result.post_dates),
        "burnt_stats": asdict(result.burnt_stats),
        "burnt_buildings": len(result.burnt_buildings),
    }


def _report_failure(failure: Failure, out_dir: Path) -> int:
    print(f"[{failure.kind.value}] {failure.message}")
    save_outputs(out_dir, {"ok": False, "kind": failure.kind.value, "message": failure.message})
    return 2


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def _add_change_args(p: argparse.ArgumentParser):
    p.add_argument("--intent", choices=[i.value for i in DetectionIntent], default="change",
                   help="construction is one-sided (score > 0), others use |score| (default: change)")
    p.add_argument("--threshold", type=float, default=CHANGE_THRESHOLD,
                   help=f"t-score threshold (default: {CHANGE_THRESHOLD})")
    p.add_argument("--single-image", action="store_true",
                   help="Compare the single after image closest to --after against the before period")
    p.add_argument("--seed", type=int, default=None, help="Seed for category colours")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="change_monitor",
        description="Detect and attribute land-surface change from satellite image stacks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ap.add_argument("--config", type=Path, default=None, help="YAML settings file")
    ap.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    ap.add_argument("--out-dir", type=Path, default=Path("outputs"),
                    help="Directory for meta.json and change_mask.tif (default: outputs)")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- detect ---
    detect = sub.add_parser("detect", help="Sentinel-1 change detection via Earth Engine")
    detect.add_argument("--aoi", required=True, help="Preset name, vector file, lat,lon,size_km or xmin,ymin,xmax,ymax")
    detect.add_argument("--before", required=True, type=_parse_date, help="End of the before period")
    detect.add_argument("--after", required=True, type=_parse_date, help="Start of the after period")
    detect.add_argument("--months", type=int, default=6, help="Length of each period (default: 6)")
    detect.add_argument("--orbit-pass", choices=["ASCENDING", "DESCENDING"], default="DESCENDING")
    detect.add_argument("--relative-orbit", type=int, default=None)
    detect.add_argument("--ignore-buildings", action="store_true")
    detect.add_argument("--buildings-dataset", default=None, help="Earth Engine building footprint asset")
    _add_change_args(detect)

    # --- burnt ---
    burnt = sub.add_parser("burnt", help="Sentinel-2 burnt area detection via Earth Engine")
    burnt.add_argument("--aoi", required=True, help="Preset name, vector file, lat,lon,size_km or xmin,ymin,xmax,ymax")
    burnt.add_argument("--pre", required=True, nargs=2, type=_parse_date, metavar=("START", "END"))
    burnt.add_argument("--post", required=True, nargs=2, type=_parse_date, metavar=("START", "END"))
    burnt.add_argument("--buildings-dataset", default=None, help="Report burnt buildings from this asset")

    # --- compare ---
    compare = sub.add_parser("compare", help="Change detection on local GeoTIFF stacks")
    compare.add_argument("--before", required=True, nargs="+", type=Path, help="Before-period GeoTIFFs")
    compare.add_argument("--after", required=True, nargs="+", type=Path, help="After-period GeoTIFFs")
    compare.add_argument("--aoi", default=None, help="Vector file in any CRS (default: raster extent)")
    compare.add_argument("--buildings", type=Path, default=None, help="Building footprints vector file")
    compare.add_argument("--points", type=Path, default=None, help="Points of interest vector file")
    _add_change_args(compare)

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_detect(args: argparse.Namespace, settings) -> int:
    from .gee_fetch import EarthEngineSource, initialize_ee
    from .pipeline import run_change_detection, run_single_image_change_detection

    if args.buildings_dataset:
        settings = settings.with_overrides(buildings_dataset=args.buildings_dataset)
    request = AnalysisRequest(
        aoi=resolve_aoi(args.aoi),
        before_date=args.before,
        after_date=args.after,
        period_months=args.months,
        intent=DetectionIntent(args.intent),
        threshold=args.threshold,
        ignore_buildings=args.ignore_buildings,
        orbit_pass=args.orbit_pass,
        relative_orbit=args.relative_orbit,
        settings=settings,
    )
    initialize_ee()
    source = EarthEngineSource.from_settings(settings)
    run = run_single_image_change_detection if args.single_image else run_change_detection
    result = run(source, request, color_map=CategoryColorMap(args.seed))
    if not result.ok:
        return _report_failure(result, args.out_dir)

    meta = save_outputs(args.out_dir, change_meta(result), result.change_mask, result.score)
    print(result.score_stats.recommendation)
    print(f"Changed area  : {meta['change_stats']['change_area_ha']} ha "
          f"({meta['change_stats']['change_pct']}%)")
    if result.categorized_points is not None:
        print(result.categorized_points.summary)
    print(f"Outputs saved : {args.out_dir}")
    return 0


def _handle_burnt(args: argparse.Namespace, settings) -> int:
    from .gee_fetch import EarthEngineSource, initialize_ee
    from .pipeline import run_burnt_area_detection

    if args.buildings_dataset:
        settings = settings.with_overrides(buildings_dataset=args.buildings_dataset)
    request = BurntAreaRequest(
        aoi=resolve_aoi(args.aoi),
        pre_fire=tuple(args.pre),
        post_fire=tuple(args.post),
        include_buildings=bool(args.buildings_dataset),
        settings=settings,
    )
    initialize_ee()
    result = run_burnt_area_detection(EarthEngineSource.from_settings(settings), request)
    if not result.ok:
        return _report_failure(result, args.out_dir)

    mask = (result.burnt_mask * 255).astype("uint8")
    meta = save_outputs(args.out_dir, burnt_meta(result), mask, result.difference)
    print(f"Burnt area    : {meta['burnt_stats']['change_area_ha']} ha "
          f"({meta['burnt_stats']['change_pct']}%)")
    print(f"Outputs saved : {args.out_dir}")
    return 0


def _handle_compare(args: argparse.Namespace, settings) -> int:
    from .pipeline import analyze_stacks
    from .process_change import read_stack
    from .statistics import validate_aoi

    before = read_stack(args.before)
    after = read_stack(args.after)
    if len(before) == 0 or len(after) == 0:
        raise SystemExit("Both --before and --after need at least one GeoTIFF")
    reference = before.rasters[0]
    crs = reference.crs

    if args.aoi:
        aoi = resolve_aoi(args.aoi, crs)
    else:
        height, width = reference.shape
        left, top = reference.transform * (0, 0)
        right, bottom = reference.transform * (width, height)
        aoi = box(min(left, right), min(top, bottom), max(left, right), max(top, bottom))

    buildings = load_features(args.buildings, crs) if args.buildings else None
    points = load_features(args.points, crs) if args.points else None
    if args.single_image:
        after = RasterStack((after.rasters[-1],))

    request = AnalysisRequest(
        aoi=aoi,
        before_date=date.today(),
        after_date=date.today(),
        intent=DetectionIntent(args.intent),
        threshold=args.threshold,
        ignore_buildings=buildings is None,
        settings=settings,
    )
    try:
        validate_aoi(aoi)
        result = analyze_stacks(before, after, aoi, request, buildings, points,
                                color_map=CategoryColorMap(args.seed),
                                single_image=args.single_image)
    except ChangeDetectionError as e:
        return _report_failure(Failure.from_error(e), args.out_dir)

    meta = save_outputs(args.out_dir, change_meta(result), result.change_mask, result.score)
    print(result.score_stats.recommendation)
    print(f"Change pixels : {meta['change_stats']['change_pixels']}")
    print(f"Change area % : {meta['change_stats']['change_pct']}%")
    print(f"Outputs saved : {args.out_dir}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(args.log_level)
    settings = load_settings(args.config)

    handlers = {
        "detect": _handle_detect,
        "burnt": _handle_burnt,
        "compare": _handle_compare,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")
    return handler(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
