# change_monitor/statistics.py
# Temporal statistics: reduce a raster stack to per-pixel mean, std and count.

import logging

import numpy as np
from rasterio.features import geometry_mask
from shapely.geometry import mapping
from shapely.validation import explain_validity

from .errors import DegenerateStatisticsError, EmptyInputError, InvalidGeometryError
from .models import Raster, RasterStack, StatsSummary

logger = logging.getLogger(__name__)


def validate_aoi(aoi):
    """Reject AOIs that are missing, empty, non-polygonal or self-intersecting."""
    if aoi is None:
        raise InvalidGeometryError("No area of interest was provided. Draw or load a polygon first.")
    if getattr(aoi, "geom_type", None) != "Polygon":
        kind = getattr(aoi, "geom_type", type(aoi).__name__)
        raise InvalidGeometryError(f"The area of interest must be a single polygon, got {kind}.")
    if aoi.is_empty or aoi.area == 0:
        raise InvalidGeometryError("The area of interest is empty.")
    if not aoi.is_valid:
        raise InvalidGeometryError(f"The area of interest is not a simple polygon: {explain_validity(aoi)}.")
    return aoi


def outside_aoi(aoi, raster: Raster) -> np.ndarray:
    """Boolean array, True for pixels whose centre falls outside the AOI."""
    return geometry_mask(
        [mapping(aoi)],
        out_shape=raster.shape,
        transform=raster.transform,
        invert=False,
    )


def clip_to_aoi(raster: Raster, aoi) -> Raster:
    """Mask every pixel outside the AOI."""
    outside = outside_aoi(aoi, raster)
    if outside.all():
        raise DegenerateStatisticsError(
            "The area of interest does not cover a single pixel. Draw a larger area."
        )
    return raster.with_data(np.ma.masked_where(outside, raster.data))


def compute_stats(stack: RasterStack, aoi) -> StatsSummary:
    """Pixel-wise mean and sample standard deviation across a stack, clipped to the AOI.

    Masked inputs are ignored pixel by pixel. The mean is masked only where
    every input is masked; the standard deviation (ddof=1) is masked where
    fewer than two samples are available.

    Returns:
        StatsSummary, flagged empty (count == 0) when the stack has no rasters.
    """
    count = len(stack)
    if count == 0:
        logger.warning("Raster stack is empty; returning empty summary")
        return StatsSummary(count=0)

    first = stack.rasters[0]
    outside = outside_aoi(aoi, first)
    if outside.all():
        raise DegenerateStatisticsError(
            "The area of interest does not cover a single pixel. Draw a larger area."
        )

    cube = np.ma.stack([r.data for r in stack], axis=0)
    cube = np.ma.masked_where(np.broadcast_to(outside, cube.shape), cube)
    valid = (~np.ma.getmaskarray(cube)).sum(axis=0)

    if not valid.any():
        raise DegenerateStatisticsError(
            "Every pixel inside the area of interest is masked in every image."
        )

    mean = cube.mean(axis=0)
    mean = np.ma.masked_where(valid == 0, mean)

    with np.errstate(divide="ignore", invalid="ignore"):
        std = np.ma.masked_where(valid < 2, cube.std(axis=0, ddof=1))

    logger.info(f"Computed stats over {count} rasters, {int((valid > 0).sum())} valid pixels")
    return StatsSummary(
        count=count,
        timestamps=stack.timestamps,
        mean=Raster(mean, first.transform, first.crs),
        std_dev=Raster(std, first.transform, first.crs),
        valid_count=valid,
    )


def require_summary(summary: StatsSummary, period: str) -> StatsSummary:
    """Refuse to go on with an empty summary."""
    if summary.is_empty:
        raise EmptyInputError(f"No imagery available for the {period} period in this area.")
    return summary
