from datetime import date, datetime, timezone
from types import SimpleNamespace

import numpy as np
import pytest
from rasterio.io import MemoryFile
from rasterio.transform import from_origin
from shapely.geometry import Point, box

from change_monitor import gee_fetch
from change_monitor.config import DOWNLOAD_LIMIT_BYTES
from change_monitor.errors import BackendLimitExceededError
from change_monitor.gee_fetch import EarthEngineSource
from change_monitor.models import StackFilters

# Roughly 1.1 km square at the equator
SMALL_AOI = box(30.0, 0.0, 30.01, 0.01)

JAN_5 = int(datetime(2023, 1, 5, tzinfo=timezone.utc).timestamp() * 1000)
JAN_17 = int(datetime(2023, 1, 17, tzinfo=timezone.utc).timestamp() * 1000)


class FakeEEException(Exception):
    pass


class _Info:
    def __init__(self, value):
        self.value = value

    def getInfo(self):
        return self.value


class FakeImage:
    def __init__(self, name, error=None):
        self.name = name
        self.error = error
        self.download_args = None

    def getDownloadURL(self, args):
        if self.error is not None:
            raise self.error
        self.download_args = args
        return f"https://example.invalid/{self.name}.tif"


class FakeCollection:
    def __init__(self, images=(), times=(), features=None):
        self.images = list(images)
        self.times = list(times)
        self.features = features
        self.filters = []

    def filterBounds(self, region):
        return self

    def filterDate(self, start, end):
        self.filters.append(("date", start, end))
        return self

    def filter(self, condition):
        self.filters.append(condition)
        return self

    def select(self, band):
        return self

    def sort(self, key):
        return self

    def size(self):
        count = len(self.features) if self.features is not None else len(self.images)
        return _Info(count)

    def aggregate_array(self, key):
        return _Info(self.times)

    def toList(self, count):
        return SimpleNamespace(get=lambda i: self.images[i])

    def getInfo(self):
        return {"type": "FeatureCollection", "features": self.features}


def _fake_ee(collection):
    calls = []

    def image_collection(collection_id):
        calls.append(("images", collection_id))
        return collection

    def feature_collection(dataset_id):
        calls.append(("features", dataset_id))
        return collection

    fake = SimpleNamespace(
        EEException=FakeEEException,
        ImageCollection=image_collection,
        FeatureCollection=feature_collection,
        Image=lambda image: image,
        Geometry=lambda geojson, crs, geodesic: geojson,
        Filter=SimpleNamespace(
            listContains=lambda prop, value: ("listContains", prop, value),
            eq=lambda prop, value: ("eq", prop, value),
            lt=lambda prop, value: ("lt", prop, value),
        ),
    )
    return fake, calls


def _geotiff_bytes(value):
    data = np.full((4, 4), value, dtype="float32")
    data[0, 0] = -9999.0
    with MemoryFile() as memfile:
        with memfile.open(driver="GTiff", height=4, width=4, count=1, dtype="float32",
                          crs="EPSG:3857", transform=from_origin(3339584, 1113, 10, 10),
                          nodata=-9999.0) as dst:
            dst.write(data, 1)
        memfile.seek(0)
        return memfile.read()


@pytest.fixture
def downloads(monkeypatch):
    requested = []

    def fake_get(url, timeout):
        requested.append(url)
        value = float(len(requested))
        return SimpleNamespace(content=_geotiff_bytes(value), raise_for_status=lambda: None)

    monkeypatch.setattr(gee_fetch.requests, "get", fake_get)
    return requested


def _install(monkeypatch, collection):
    fake, calls = _fake_ee(collection)
    monkeypatch.setattr(gee_fetch, "ee", fake)
    return calls


def _filters(**kwargs):
    return StackFilters(start=date(2023, 1, 1), end=date(2023, 2, 1), **kwargs)


def test_default_pixel_budget_fits_a_download():
    assert EarthEngineSource().max_pixels * 4 <= DOWNLOAD_LIMIT_BYTES


def test_query_rasters_downloads_in_time_order(monkeypatch, downloads):
    collection = FakeCollection([FakeImage("a"), FakeImage("b")], [JAN_5, JAN_17])
    _install(monkeypatch, collection)

    stack = EarthEngineSource(scale=10.0).query_rasters("COPERNICUS/S1_GRD", _filters(), SMALL_AOI)

    assert len(stack) == 2
    assert stack.timestamps == (datetime(2023, 1, 5), datetime(2023, 1, 17))
    assert downloads == ["https://example.invalid/a.tif", "https://example.invalid/b.tif"]
    assert stack.rasters[0].data[0, 0] is np.ma.masked
    assert stack.rasters[1].data[1, 1] == 2.0
    assert collection.images[0].download_args["format"] == "GEO_TIFF"
    assert ("listContains", "transmitterReceiverPolarisation", "VV") in collection.filters
    assert ("eq", "orbitProperties_pass", "DESCENDING") in collection.filters


def test_cloud_filter_selects_optical_collection(monkeypatch, downloads):
    collection = FakeCollection([FakeImage("a")], [JAN_5])
    _install(monkeypatch, collection)

    EarthEngineSource().query_rasters("COPERNICUS/S2_SR_HARMONIZED", _filters(band="B12", max_cloud_pct=20),
                                      SMALL_AOI)
    assert ("lt", "CLOUDY_PIXEL_PERCENTAGE", 20) in collection.filters
    assert all(f[0] != "listContains" for f in collection.filters)


def test_no_matching_images_downloads_nothing(monkeypatch, downloads):
    _install(monkeypatch, FakeCollection())
    stack = EarthEngineSource().query_rasters("COPERNICUS/S1_GRD", _filters(), SMALL_AOI)
    assert len(stack) == 0
    assert downloads == []


def test_image_budget(monkeypatch, downloads):
    images = [FakeImage(str(i)) for i in range(3)]
    _install(monkeypatch, FakeCollection(images, [JAN_5] * 3))
    with pytest.raises(BackendLimitExceededError):
        EarthEngineSource(max_images=2).query_rasters("COPERNICUS/S1_GRD", _filters(), SMALL_AOI)
    assert downloads == []


def test_pixel_budget_is_checked_before_querying(monkeypatch, downloads):
    calls = _install(monkeypatch, FakeCollection([FakeImage("a")], [JAN_5]))
    # About 12,000 pixels at 10 m
    with pytest.raises(BackendLimitExceededError):
        EarthEngineSource(scale=10.0, max_pixels=1000).query_rasters("COPERNICUS/S1_GRD", _filters(), SMALL_AOI)
    assert calls == []

    EarthEngineSource(scale=10.0, max_pixels=20_000).query_rasters("COPERNICUS/S1_GRD", _filters(), SMALL_AOI)
    assert calls == [("images", "COPERNICUS/S1_GRD")]


def test_oversized_download_is_a_backend_limit(monkeypatch, downloads):
    refused = FakeEEException("Total request size (40000000 bytes) must be less than or equal to 33554432 bytes.")
    _install(monkeypatch, FakeCollection([FakeImage("a", error=refused)], [JAN_5]))

    with pytest.raises(BackendLimitExceededError) as info:
        EarthEngineSource().query_rasters("COPERNICUS/S1_GRD", _filters(), SMALL_AOI)
    assert info.value.__cause__ is refused
    assert downloads == []


def test_other_download_errors_propagate(monkeypatch, downloads):
    _install(monkeypatch, FakeCollection([FakeImage("a", error=FakeEEException("Image.select: Band not found"))],
                                         [JAN_5]))
    with pytest.raises(FakeEEException):
        EarthEngineSource().query_rasters("COPERNICUS/S1_GRD", _filters(), SMALL_AOI)


def test_query_features_reprojects_and_skips_empty_geometry(monkeypatch):
    features = [
        {"type": "Feature", "geometry": {"type": "Point", "coordinates": [0.0, 0.0]},
         "properties": {"category": "school"}},
        {"type": "Feature", "geometry": None, "properties": {"category": "hospital"}},
    ]
    calls = _install(monkeypatch, FakeCollection(features=features))

    found = EarthEngineSource(crs="EPSG:3857").query_features("projects/x/buildings", SMALL_AOI)

    assert calls == [("features", "projects/x/buildings")]
    assert len(found) == 1
    assert found[0].get("category") == "school"
    assert found[0].geometry.equals_exact(Point(0.0, 0.0), 1e-6)


def test_feature_budget(monkeypatch):
    features = [{"type": "Feature", "geometry": {"type": "Point", "coordinates": [30.0, 0.0]},
                 "properties": {}}] * 3
    _install(monkeypatch, FakeCollection(features=features))
    with pytest.raises(BackendLimitExceededError):
        EarthEngineSource(max_features=2).query_features("projects/x/buildings", SMALL_AOI)
