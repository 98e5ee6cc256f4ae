# change_monitor/process_change.py
# Change layer: threshold the score raster, clean the mask with OpenCV, count changes.
# Also GeoTIFF input/output for local stacks and run outputs.

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

import cv2
import numpy as np
import rasterio

from .models import Raster, RasterStack

logger = logging.getLogger(__name__)

DATE_IN_NAME = re.compile(r"(\d{4})-?(\d{2})-?(\d{2})")


@dataclass(frozen=True)
class ChangeStats:
    change_pixels: int
    valid_pixels: int
    change_pct: float
    change_area_ha: float


def classify_change(score: Raster, threshold: float) -> np.ndarray:
    """Binary uint8 mask (0/255) of pixels whose score exceeds the threshold.

    The score is expected to be sign-processed already; masked pixels are
    never classified as changed.
    """
    # Compared in float64; a float32 cast would round near-threshold scores down
    changed = score.data.filled(-np.inf) > threshold
    return np.where(changed, 255, 0).astype("uint8")


def threshold_mask(mask: np.ndarray, kernel_size: int = 3) -> np.ndarray:
    """Morphological open/close to drop speckle; kernel_size 0 leaves the mask as is."""
    if not kernel_size:
        return mask
    kernel = np.ones((kernel_size, kernel_size), np.uint8)
    mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN,  kernel)
    mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel)
    return mask


def count_changes(mask: np.ndarray, score: Raster) -> ChangeStats:
    """Changed pixels relative to the pixels that carry a score."""
    valid = ~np.ma.getmaskarray(score.data)
    change_pixels = int(np.sum((mask == 255) & valid))
    valid_pixels = int(valid.sum())
    change_pct = round(change_pixels / valid_pixels * 100, 2) if valid_pixels else 0.0
    change_area_ha = round(change_pixels * score.pixel_area / 10000.0, 4)
    return ChangeStats(change_pixels, valid_pixels, change_pct, change_area_ha)


def change_layer(score: Raster, threshold: float, kernel_size: int = 0):
    """Classified change mask and its statistics."""
    mask = threshold_mask(classify_change(score, threshold), kernel_size)
    # Cleanup may grow blobs into masked pixels; keep them out
    mask[np.ma.getmaskarray(score.data)] = 0
    return mask, count_changes(mask, score)


# ---------------------------------------------------------------------------
# GeoTIFF I/O
# ---------------------------------------------------------------------------

def _timestamp_for(path: Path, tags: dict) -> Optional[datetime]:
    m = DATE_IN_NAME.search(path.stem)
    if m:
        try:
            return datetime(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            pass
    stamp = tags.get("TIFFTAG_DATETIME")
    if stamp:
        try:
            return datetime.strptime(stamp, "%Y:%m:%d %H:%M:%S")
        except ValueError:
            logger.warning(f"Unparseable TIFFTAG_DATETIME {stamp!r} in {path}")
    return None


def read_raster(path, band: int = 1) -> Raster:
    """Read one band of a GeoTIFF as a masked Raster."""
    path = Path(path)
    with rasterio.open(path) as src:
        data = src.read(band, masked=True).astype("float64")
        crs = src.crs.to_string() if src.crs else ""
        return Raster(data=data, transform=src.transform, crs=crs,
                      timestamp=_timestamp_for(path, src.tags()))


def read_stack(paths: Iterable, band: int = 1) -> RasterStack:
    rasters = tuple(read_raster(p, band) for p in paths)
    logger.info(f"Read {len(rasters)} rasters")
    return RasterStack(rasters)


def write_mask(path, mask: np.ndarray, like: Raster):
    """Write a uint8 mask on the grid of `like`."""
    height, width = mask.shape
    with rasterio.open(
        path, "w", driver="GTiff", height=height, width=width, count=1,
        dtype="uint8", crs=like.crs or None, transform=like.transform, nodata=None,
    ) as dst:
        dst.write(mask.astype("uint8"), 1)


def save_outputs(out_dir, meta: dict, mask: Optional[np.ndarray] = None,
                 like: Optional[Raster] = None) -> dict:
    """Save meta.json (+ change_mask.tif when a mask is given) into out_dir."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    if mask is not None and like is not None:
        write_mask(out_dir / "change_mask.tif", mask, like)
    (out_dir / "meta.json").write_text(json.dumps(meta, indent=2, default=str))
    return meta
