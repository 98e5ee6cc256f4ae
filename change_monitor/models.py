# change_monitor/models.py
# Data model shared by the statistics, scoring and aggregation stages.

import enum
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Optional, Tuple

import numpy as np
from rasterio.transform import Affine

from .config import AnalysisSettings, CHANGE_THRESHOLD


class DetectionIntent(enum.Enum):
    CONSTRUCTION = "construction"
    CHANGE = "change"
    DAMAGE = "damage"

    @property
    def one_sided(self) -> bool:
        """Construction only looks for positive excursions."""
        return self is DetectionIntent.CONSTRUCTION


class ChangeTier(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"
    EXTREME = "extreme"


@dataclass(frozen=True)
class Raster:
    """Single-band raster: a 2-D masked array on an affine pixel grid."""
    data: np.ma.MaskedArray
    transform: Affine
    crs: str
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        data = np.ma.masked_invalid(np.ma.asarray(self.data, dtype="float64"))
        if data.ndim != 2:
            raise ValueError(f"Raster data must be 2-D, got shape {data.shape}")
        # Keep a full boolean mask so callers can index it safely
        data = np.ma.MaskedArray(data.data, mask=np.ma.getmaskarray(data))
        object.__setattr__(self, "data", data)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def pixel_size(self) -> float:
        return abs(self.transform.a)

    @property
    def pixel_area(self) -> float:
        return abs(self.transform.a * self.transform.e)

    def with_data(self, data, timestamp=None) -> "Raster":
        return Raster(data=data, transform=self.transform, crs=self.crs,
                      timestamp=timestamp if timestamp is not None else self.timestamp)

    def same_grid(self, other: "Raster") -> bool:
        return (self.shape == other.shape
                and self.transform.almost_equals(other.transform)
                and self.crs == other.crs)


@dataclass(frozen=True)
class RasterStack:
    """Time-ordered single-band rasters sharing one grid."""
    rasters: Tuple[Raster, ...] = ()

    def __post_init__(self):
        rasters = tuple(sorted(self.rasters, key=lambda r: r.timestamp or datetime.min))
        for r in rasters[1:]:
            if not r.same_grid(rasters[0]):
                raise ValueError("All rasters in a stack must share shape, transform and CRS")
        object.__setattr__(self, "rasters", rasters)

    def __len__(self):
        return len(self.rasters)

    def __iter__(self):
        return iter(self.rasters)

    @property
    def timestamps(self) -> Tuple[Optional[datetime], ...]:
        return tuple(r.timestamp for r in self.rasters)

    def filter_date(self, start, end) -> "RasterStack":
        """Keep rasters acquired in [start, end)."""
        start, end = as_datetime(start), as_datetime(end)
        return RasterStack(tuple(
            r for r in self.rasters
            if r.timestamp is not None and start <= r.timestamp < end
        ))

    def closest_to(self, when, window_days: int) -> Optional[Raster]:
        """Raster acquired closest to `when` within +/- window_days (ties: earliest)."""
        when = as_datetime(when)
        window = timedelta(days=window_days)
        candidates = [
            r for r in self.rasters
            if r.timestamp is not None and abs(r.timestamp - when) <= window
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda r: (abs(r.timestamp - when), r.timestamp))


@dataclass(frozen=True)
class StatsSummary:
    """Per-pixel temporal mean/std of a stack. Empty when count == 0."""
    count: int
    timestamps: Tuple[Optional[datetime], ...] = ()
    mean: Optional[Raster] = None
    std_dev: Optional[Raster] = None
    valid_count: Optional[np.ndarray] = None

    @property
    def is_empty(self) -> bool:
        return self.count == 0


@dataclass(frozen=True, eq=False)
class Feature:
    """A geometry plus scalar attributes. Equality and hashing are by identity."""
    geometry: Any
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def get(self, name: str, default=None):
        """Attribute lookup; missing or null values come back as `default`."""
        value = self.attributes.get(name)
        return default if value is None else value

    def with_attributes(self, **extra) -> "Feature":
        attributes = dict(self.attributes)
        attributes.update(extra)
        return Feature(geometry=self.geometry, attributes=attributes)


@dataclass(frozen=True)
class StackFilters:
    """Narrowing applied by the imagery source."""
    start: date
    end: date
    band: str = "VV"
    instrument_mode: Optional[str] = "IW"
    orbit_pass: Optional[str] = "DESCENDING"
    relative_orbit: Optional[int] = None
    max_cloud_pct: Optional[float] = None


@dataclass(frozen=True)
class AnalysisRequest:
    """Immutable description of one t-test change-detection run."""
    aoi: Any
    before_date: date
    after_date: date
    period_months: int = 6
    intent: DetectionIntent = DetectionIntent.CHANGE
    threshold: float = CHANGE_THRESHOLD
    ignore_buildings: bool = False
    orbit_pass: Optional[str] = "DESCENDING"
    relative_orbit: Optional[int] = None
    settings: AnalysisSettings = field(default_factory=AnalysisSettings)

    def with_settings(self, **overrides) -> "AnalysisRequest":
        return replace(self, settings=self.settings.with_overrides(**overrides))


@dataclass(frozen=True)
class BurntAreaRequest:
    """Immutable description of one burn-index run."""
    aoi: Any
    pre_fire: Tuple[date, date]
    post_fire: Tuple[date, date]
    include_buildings: bool = False
    settings: AnalysisSettings = field(default_factory=AnalysisSettings)


def as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value))


