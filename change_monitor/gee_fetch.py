# change_monitor/gee_fetch.py
# Google Earth Engine fetch logic.
# Imagery and vector feature source used by the pipeline for any AOI.

import json
import logging
import os
from datetime import datetime, timezone
from typing import List

import ee
import requests
import shapely
from rasterio.io import MemoryFile
from rasterio.warp import transform_geom
from shapely.geometry import mapping, shape

from .config import MAX_PIXELS
from .errors import BackendLimitExceededError
from .models import Feature, Raster, RasterStack, StackFilters

logger = logging.getLogger(__name__)

GEOGRAPHIC_CRS = "EPSG:4326"


def initialize_ee(project=None):
    """Initialize Earth Engine, authenticating interactively if needed."""
    project = project or os.getenv("GEE_PROJECT_ID")
    try:
        ee.Initialize(project=project)
    except Exception:
        ee.Authenticate()
        ee.Initialize(project=project)
    logger.info(f"Earth Engine initialized (project={project})")


def _is_size_limit(error) -> bool:
    message = str(error).lower()
    return "must be less than or equal to" in message or "too large" in message


def to_ee_geometry(aoi):
    return ee.Geometry(json.loads(shapely.to_geojson(aoi)), GEOGRAPHIC_CRS, False)


def get_s1_collection(aoi, filters: StackFilters, collection_id="COPERNICUS/S1_GRD"):
    """Return a filtered, time-sorted single-band Sentinel-1 ImageCollection."""
    col = (
        ee.ImageCollection(collection_id)
        .filterBounds(aoi)
        .filterDate(filters.start.isoformat(), filters.end.isoformat())
        .filter(ee.Filter.listContains("transmitterReceiverPolarisation", filters.band))
    )
    if filters.instrument_mode:
        col = col.filter(ee.Filter.eq("instrumentMode", filters.instrument_mode))
    if filters.orbit_pass:
        col = col.filter(ee.Filter.eq("orbitProperties_pass", filters.orbit_pass))
    if filters.relative_orbit is not None:
        col = col.filter(ee.Filter.eq("relativeOrbitNumber_start", int(filters.relative_orbit)))
    return col.select(filters.band).sort("system:time_start")


def get_s2_collection(aoi, filters: StackFilters, collection_id="COPERNICUS/S2_SR_HARMONIZED"):
    """Return a filtered, time-sorted single-band Sentinel-2 ImageCollection."""
    col = (
        ee.ImageCollection(collection_id)
        .filterBounds(aoi)
        .filterDate(filters.start.isoformat(), filters.end.isoformat())
    )
    if filters.max_cloud_pct is not None:
        col = col.filter(ee.Filter.lt("CLOUDY_PIXEL_PERCENTAGE", filters.max_cloud_pct))
    return col.select(filters.band).sort("system:time_start")


class EarthEngineSource:
    """Raster stack and feature collection access backed by Earth Engine.

    Images are downloaded as GeoTIFF in `crs` at `scale` metres, so every
    raster of one query shares a pixel grid.
    """

    def __init__(self, crs="EPSG:3857", scale=10.0, max_pixels=MAX_PIXELS,
                 max_features=5000, max_images=200, timeout=120):
        self.crs = crs
        self.scale = scale
        self.max_pixels = max_pixels
        self.max_features = max_features
        self.max_images = max_images
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        return cls(crs=settings.crs, scale=settings.scale, max_pixels=settings.max_pixels,
                   max_features=settings.max_features, max_images=settings.max_images)

    def _check_pixel_budget(self, aoi):
        projected = shape(transform_geom(GEOGRAPHIC_CRS, self.crs, mapping(aoi)))
        pixels = projected.area / (self.scale ** 2)
        if pixels > self.max_pixels:
            raise BackendLimitExceededError(
                f"The area of interest holds about {pixels:,.0f} pixels at {self.scale} m, "
                f"more than the {self.max_pixels:,} pixel limit. Draw a smaller area."
            )

    def download_image(self, image, region) -> Raster:
        try:
            url = image.getDownloadURL({
                "region": region,
                "crs": self.crs,
                "scale": self.scale,
                "format": "GEO_TIFF",
            })
        except ee.EEException as e:
            if not _is_size_limit(e):
                raise
            raise BackendLimitExceededError(
                f"Earth Engine refused the download as too large at {self.scale} m: {e}. "
                "Draw a smaller area."
            ) from e
        resp = requests.get(url, timeout=self.timeout)
        resp.raise_for_status()
        with MemoryFile(resp.content) as memfile:
            with memfile.open() as src:
                data = src.read(1, masked=True).astype("float64")
                return Raster(data=data, transform=src.transform, crs=self.crs)

    def query_rasters(self, collection_id, filters: StackFilters, aoi) -> RasterStack:
        """All images matching `filters` over the lon/lat `aoi`, ordered by acquisition time."""
        self._check_pixel_budget(aoi)
        region = to_ee_geometry(aoi)
        if filters.max_cloud_pct is not None:
            col = get_s2_collection(region, filters, collection_id)
        else:
            col = get_s1_collection(region, filters, collection_id)

        count = col.size().getInfo()
        logger.info(f"{collection_id} [{filters.band}] {filters.start} to {filters.end}: {count} images")
        if count > self.max_images:
            raise BackendLimitExceededError(
                f"{count} images match the query, more than the {self.max_images} image limit. "
                "Shorten the period or draw a smaller area."
            )
        if count == 0:
            return RasterStack(())

        times = col.aggregate_array("system:time_start").getInfo()
        images = col.toList(count)
        rasters = []
        for i, millis in enumerate(times):
            raster = self.download_image(ee.Image(images.get(i)), region)
            stamp = datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc).replace(tzinfo=None)
            rasters.append(raster.with_data(raster.data, timestamp=stamp))
        return RasterStack(tuple(rasters))

    def query_features(self, dataset_id, aoi) -> List[Feature]:
        """Features of `dataset_id` intersecting the AOI, reprojected to the working CRS."""
        fc = ee.FeatureCollection(dataset_id).filterBounds(to_ee_geometry(aoi))
        count = fc.size().getInfo()
        if count > self.max_features:
            raise BackendLimitExceededError(
                f"{count:,} features of {dataset_id} fall in the area of interest, more than "
                f"the {self.max_features:,} feature limit. Draw a smaller area."
            )
        info = fc.getInfo()
        features = []
        for f in info.get("features", []):
            geom = f.get("geometry")
            if not geom:
                continue
            projected = shape(transform_geom(GEOGRAPHIC_CRS, self.crs, geom))
            features.append(Feature(geometry=projected, attributes=f.get("properties") or {}))
        if not features:
            logger.warning(f"No features of {dataset_id} in the area of interest")
        return features
