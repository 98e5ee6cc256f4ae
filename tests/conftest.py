from datetime import datetime, timedelta

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from change_monitor.config import AnalysisSettings
from change_monitor.models import Raster, RasterStack

SIZE = 20
TRANSFORM = from_origin(0, SIZE, 1, 1)
CRS = "EPSG:4326"


def make_raster(values, timestamp=None, mask=None, transform=TRANSFORM, crs=CRS):
    if np.ndim(values) == 0:
        values = np.full((SIZE, SIZE), float(values))
    data = np.ma.asarray(values, dtype="float64")
    if mask is not None:
        data = np.ma.MaskedArray(data.data, mask=mask)
    return Raster(data=data, transform=transform, crs=crs, timestamp=timestamp)


def make_stack(arrays, start=datetime(2023, 1, 5), step_days=12, **kwargs):
    return RasterStack(tuple(
        make_raster(a, timestamp=start + timedelta(days=i * step_days), **kwargs)
        for i, a in enumerate(arrays)
    ))


class FakeSource:
    """Canned rasters and features keyed by (collection, band) and dataset id."""

    def __init__(self, stacks=None, features=None):
        self.stacks = stacks or {}
        self.features = features or {}
        self.calls = []

    def query_rasters(self, collection_id, filters, aoi):
        self.calls.append(("rasters", collection_id, filters))
        stack = self.stacks.get((collection_id, filters.band), RasterStack(()))
        return stack.filter_date(filters.start, filters.end)

    def query_features(self, dataset_id, aoi):
        self.calls.append(("features", dataset_id))
        return list(self.features.get(dataset_id, []))


@pytest.fixture
def aoi():
    return box(0, 0, SIZE, SIZE)


@pytest.fixture
def settings():
    return AnalysisSettings(crs=CRS, scale=1.0, points_dataset=None)


# Before period: 4 acquisitions, mean -12 dB, sample std 1.5.
# After period: 3 acquisitions, mean -12 + shift, sample std 1.2.
BEFORE_SPREAD = np.sqrt(1.6875)
POOLED_SE = np.sqrt(((3 * 1.5 ** 2 + 2 * 1.2 ** 2) / 5) * (1 / 4 + 1 / 3))


def before_stack(start=datetime(2023, 1, 5)):
    return make_stack([-12.0 + s * BEFORE_SPREAD for s in (1, -1, 1, -1)], start=start)


def after_stack(shift, start=datetime(2023, 6, 10)):
    return make_stack([-12.0 + np.asarray(shift) + d for d in (-1.2, 0.0, 1.2)], start=start)
