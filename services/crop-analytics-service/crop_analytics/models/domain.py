"""
Domain types shared by the analytics pipeline.

Pixel grids (Capture, NDVIGrid) are transient and discarded after
aggregation; FieldSample / TimeSeries are the durable state; YieldForecast is
recomputed on demand from a TimeSeries snapshot.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import Polygon


class HealthCategory(str, Enum):
    """Discrete field health, ordered best to worst."""

    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    CRITICAL = "Critical"

    @classmethod
    def ordered(cls) -> List["HealthCategory"]:
        return [cls.EXCELLENT, cls.GOOD, cls.FAIR, cls.POOR, cls.CRITICAL]

    def demoted(self) -> "HealthCategory":
        """Return the next worse category (Critical stays Critical)."""
        order = self.ordered()
        index = order.index(self)
        return order[min(index + 1, len(order) - 1)]


class GrowthStage(str, Enum):
    EMERGENCE = "Emergence"
    VEGETATIVE = "Vegetative"
    REPRODUCTIVE = "Reproductive"
    MATURITY = "Maturity"
    HARVEST_READY = "Harvest Ready"


def _freeze(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if array is not None:
        array.setflags(write=False)
    return array


@dataclass(frozen=True)
class Capture:
    """One satellite overpass: aligned band grids plus cloud mask."""

    capture_id: str
    aoi_id: str
    capture_date: date
    resolution: float
    origin_x: float
    origin_y: float
    cloud_cover: float
    red: np.ndarray
    nir: np.ndarray
    cloud_mask: np.ndarray
    swir: Optional[np.ndarray] = None
    blue: Optional[np.ndarray] = None

    def __post_init__(self):
        for band in (self.red, self.nir, self.cloud_mask, self.swir, self.blue):
            _freeze(band)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.red.shape


@dataclass(frozen=True)
class NDVIGrid:
    """Per-pixel index values aligned to a Capture.

    ``values`` holds NaN wherever ``valid`` is False.
    """

    values: np.ndarray
    valid: np.ndarray
    capture_id: str
    aoi_id: str
    capture_date: date
    resolution: float
    origin_x: float
    origin_y: float
    cloud_cover: float
    index_name: str = "NDVI"

    def __post_init__(self):
        _freeze(self.values)
        _freeze(self.valid)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    @classmethod
    def from_capture(
        cls, capture: Capture, values: np.ndarray, valid: np.ndarray, index_name: str = "NDVI"
    ) -> "NDVIGrid":
        return cls(
            values=values,
            valid=valid,
            capture_id=capture.capture_id,
            aoi_id=capture.aoi_id,
            capture_date=capture.capture_date,
            resolution=capture.resolution,
            origin_x=capture.origin_x,
            origin_y=capture.origin_y,
            cloud_cover=capture.cloud_cover,
            index_name=index_name,
        )


@dataclass(frozen=True)
class FieldBoundary:
    """A managed parcel supplied by the field registry."""

    field_id: str
    name: str
    area_ha: float
    crop_type: str
    polygon: Polygon

    @classmethod
    def from_coordinates(
        cls,
        field_id: str,
        name: str,
        area_ha: float,
        crop_type: str,
        coordinates: Sequence[Sequence[float]],
    ) -> "FieldBoundary":
        polygon = Polygon([(float(x), float(y)) for x, y in coordinates])
        if not polygon.is_valid or polygon.is_empty:
            raise ValueError(f"Field {field_id} has an invalid boundary polygon")
        return cls(field_id, name, area_ha, crop_type, polygon)

    @property
    def coordinates(self) -> List[List[float]]:
        return [[x, y] for x, y in self.polygon.exterior.coords]


@dataclass(frozen=True)
class FieldSample:
    """One (field, date) observation."""

    field_id: str
    sample_date: date
    mean_ndvi: float
    coverage_fraction: float
    valid_pixels: int
    total_pixels: int
    ndvi_std: float = 0.0
    ndvi_min: float = 0.0
    ndvi_max: float = 0.0
    low_confidence: bool = False
    health: Optional[HealthCategory] = None
    growth_stage: Optional[GrowthStage] = None
    capture_id: Optional[str] = None


@dataclass(frozen=True)
class TimeSeries:
    """Immutable snapshot of a field's samples, strictly increasing by date."""

    field_id: str
    samples: Tuple[FieldSample, ...] = ()

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def dates(self) -> List[date]:
        return [s.sample_date for s in self.samples]

    @property
    def values(self) -> List[float]:
        return [s.mean_ndvi for s in self.samples]

    @property
    def latest(self) -> Optional[FieldSample]:
        return self.samples[-1] if self.samples else None


@dataclass(frozen=True)
class HarvestWindow:
    start: date
    end: date

    def __str__(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


@dataclass(frozen=True)
class YieldForecast:
    field_id: str
    estimated_yield: float  # tons per hectare
    confidence: float
    harvest_window: HarvestWindow
    model: str = "regression"
    training_samples: int = 0


@dataclass(frozen=True)
class YieldObservation:
    """Historical ground truth used to fit the yield regression."""

    crop_type: str
    season: str
    peak_ndvi: float
    mean_ndvi: float
    trend_slope: float
    grain_fill_days: float
    observed_yield: float


@dataclass(frozen=True)
class CaptureSummary:
    """Scene-level statistics retained after the pixel grid is discarded."""

    capture_id: str
    aoi_id: str
    capture_date: date
    resolution: float
    cloud_cover: float  # percent
    avg_ndvi: Optional[float]
    vegetation_coverage: float  # percent of valid pixels
    healthy_vegetation: float
    stressed_areas: float


@dataclass
class FieldReport:
    """Everything the assembler needs for one field."""

    boundary: FieldBoundary
    series: TimeSeries
    trend: Optional[float] = None
    forecast: Optional[YieldForecast] = None
    errors: List[Tuple[str, Exception]] = field(default_factory=list)

    @property
    def latest(self) -> Optional[FieldSample]:
        return self.series.latest
