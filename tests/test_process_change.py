import json
from datetime import datetime

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

from change_monitor.process_change import (
    change_layer,
    classify_change,
    count_changes,
    read_raster,
    read_stack,
    save_outputs,
    threshold_mask,
)

from conftest import SIZE, make_raster

METRE_GRID = from_origin(500000, 4000000, 10, 10)


def test_classify_change_never_flags_masked_pixels():
    values = np.full((SIZE, SIZE), 5.0)
    mask = np.zeros((SIZE, SIZE), dtype=bool)
    mask[0, :] = True
    values[1, :] = 1.0
    mask_out = classify_change(make_raster(values, mask=mask), 2.0)

    assert mask_out.dtype == np.uint8
    assert set(np.unique(mask_out)) == {0, 255}
    assert (mask_out[0] == 0).all()
    assert (mask_out[1] == 0).all()
    assert (mask_out[2:] == 255).all()


def test_classify_change_keeps_full_precision():
    values = np.full((SIZE, SIZE), 1.0)
    values[3, 3] = 2.0000000001
    values[4, 4] = 2.0
    mask_out = classify_change(make_raster(values), 2.0)
    assert mask_out[3, 3] == 255
    assert mask_out[4, 4] == 0
    assert int((mask_out == 255).sum()) == 1


def test_threshold_mask_drops_speckle():
    mask = np.zeros((SIZE, SIZE), dtype=np.uint8)
    mask[2, 2] = 255
    mask[10:15, 10:15] = 255

    cleaned = threshold_mask(mask, kernel_size=3)
    assert cleaned[2, 2] == 0
    assert (cleaned[10:15, 10:15] == 255).all()
    assert threshold_mask(mask, kernel_size=0) is mask


def test_count_changes_in_hectares():
    score = make_raster(np.zeros((SIZE, SIZE)), transform=METRE_GRID, crs="EPSG:32633")
    mask = np.zeros((SIZE, SIZE), dtype=np.uint8)
    mask[:5, :8] = 255

    stats = count_changes(mask, score)
    assert stats.change_pixels == 40
    assert stats.valid_pixels == SIZE * SIZE
    assert stats.change_pct == 10.0
    # 40 pixels of 100 m^2
    assert stats.change_area_ha == pytest.approx(0.4)


def test_change_layer_keeps_masked_pixels_out():
    values = np.full((SIZE, SIZE), 5.0)
    mask = np.zeros((SIZE, SIZE), dtype=bool)
    mask[5, 5] = True
    layer, stats = change_layer(make_raster(values, mask=mask), 2.0, kernel_size=3)

    assert layer[5, 5] == 0
    assert stats.change_pixels == SIZE * SIZE - 1
    assert stats.change_pct == 100.0


def _write_tif(path, data, tags=None):
    with rasterio.open(
        path, "w", driver="GTiff", height=data.shape[0], width=data.shape[1], count=1,
        dtype="float32", crs="EPSG:32633", transform=METRE_GRID, nodata=-9999.0,
    ) as dst:
        dst.write(data.astype("float32"), 1)
        if tags:
            dst.update_tags(**tags)


def test_read_stack_orders_by_date_and_masks_nodata(tmp_path):
    late = np.full((4, 4), 2.0)
    early = np.full((4, 4), 1.0)
    early[0, 0] = -9999.0
    _write_tif(tmp_path / "s1_2023-07-01.tif", late)
    _write_tif(tmp_path / "s1_20230101.tif", early)
    _write_tif(tmp_path / "undated.tif", early, tags={"TIFFTAG_DATETIME": "2023:03:15 10:00:00"})

    stack = read_stack(sorted(tmp_path.glob("*.tif")))
    assert stack.timestamps == (datetime(2023, 1, 1), datetime(2023, 3, 15, 10), datetime(2023, 7, 1))
    assert stack.rasters[0].data.mask[0, 0]
    assert stack.rasters[0].crs == "EPSG:32633"
    assert stack.rasters[0].pixel_size == 10.0


def test_save_outputs(tmp_path):
    like = read_raster_like(tmp_path)
    mask = np.zeros((4, 4), dtype=np.uint8)
    mask[1, 1] = 255

    out = tmp_path / "run"
    save_outputs(out, {"ok": True, "when": datetime(2023, 1, 1)}, mask, like)

    meta = json.loads((out / "meta.json").read_text())
    assert meta == {"ok": True, "when": "2023-01-01 00:00:00"}
    with rasterio.open(out / "change_mask.tif") as src:
        assert src.read(1)[1, 1] == 255
        assert src.transform == METRE_GRID


def read_raster_like(tmp_path):
    path = tmp_path / "like.tif"
    _write_tif(path, np.zeros((4, 4)))
    return read_raster(path)
