import os
import tempfile
from datetime import date, timedelta
from typing import Dict, Optional, Tuple

# Configure the service before any crop_analytics module reads settings
_TEST_ROOT = tempfile.mkdtemp(prefix="crop_analytics_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT}/analytics.db")
os.environ.setdefault("CAPTURE_SOURCE", "local")
os.environ.setdefault("CAPTURE_DIR", os.path.join(_TEST_ROOT, "captures"))
os.environ.setdefault("MAX_WORKERS", "4")

import numpy as np
import pytest

from crop_analytics.config.settings import Settings, get_settings
from crop_analytics.models.domain import Capture, FieldBoundary
from crop_analytics.services.band_reader import (
    BandReader,
    LocalCaptureSource,
    capture_object_name,
    encode_capture,
)
from crop_analytics.services.analytics_service import AnalyticsService

RESOLUTION = 10.0
GRID_SIZE = 20
ORIGIN_X = 0.0
ORIGIN_Y = GRID_SIZE * RESOLUTION  # top edge; rows grow southwards

START_DATE = date(2026, 6, 1)


def bands_for_ndvi(ndvi: np.ndarray, red_level: float = 0.1) -> Tuple[np.ndarray, np.ndarray]:
    """Red/NIR bands that produce the requested NDVI per pixel."""
    ndvi = np.asarray(ndvi, dtype=np.float64)
    red = np.full(ndvi.shape, red_level)
    nir = red * (1.0 + ndvi) / (1.0 - ndvi)
    return red, nir


def make_capture(
    red: np.ndarray,
    nir: np.ndarray,
    cloud_mask: Optional[np.ndarray] = None,
    capture_date: date = START_DATE,
    **extra,
) -> Capture:
    if cloud_mask is None:
        cloud_mask = np.zeros(red.shape, dtype=bool)
    return Capture(
        capture_id=f"test-{capture_date:%Y%m%d}",
        aoi_id="test-aoi",
        capture_date=capture_date,
        resolution=RESOLUTION,
        origin_x=ORIGIN_X,
        origin_y=red.shape[0] * RESOLUTION,
        cloud_cover=float(cloud_mask.mean()),
        red=red,
        nir=nir,
        cloud_mask=cloud_mask,
        **extra,
    )


def square_field(
    field_id: str,
    x0: float,
    y0: float,
    size: float,
    crop_type: str = "wheat",
    area_ha: Optional[float] = None,
) -> FieldBoundary:
    coords = [[x0, y0], [x0 + size, y0], [x0 + size, y0 + size], [x0, y0 + size], [x0, y0]]
    area = area_ha if area_ha is not None else size * size / 10_000.0
    return FieldBoundary.from_coordinates(field_id, field_id.title(), area, crop_type, coords)


def write_capture(
    root: str,
    aoi_id: str,
    capture_date: date,
    ndvi: np.ndarray,
    cloud_mask: Optional[np.ndarray] = None,
) -> str:
    red, nir = bands_for_ndvi(ndvi)
    payload = encode_capture(
        red,
        nir,
        resolution=RESOLUTION,
        origin_x=ORIGIN_X,
        origin_y=ndvi.shape[0] * RESOLUTION,
        cloud_mask=cloud_mask,
    )
    path = os.path.join(root, capture_object_name(aoi_id, capture_date))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(payload)
    return path


def split_grid(west_ndvi: float, east_ndvi: float) -> np.ndarray:
    """Grid whose western half (x < 100) and eastern half carry different NDVI."""
    grid = np.empty((GRID_SIZE, GRID_SIZE))
    grid[:, : GRID_SIZE // 2] = west_ndvi
    grid[:, GRID_SIZE // 2:] = east_ndvi
    return grid


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def capture_root(tmp_path) -> str:
    root = tmp_path / "captures"
    root.mkdir()
    return str(root)


@pytest.fixture
def service(settings, capture_root) -> AnalyticsService:
    reader = BandReader(LocalCaptureSource(capture_root), timeout_seconds=5.0)
    svc = AnalyticsService(settings, reader)
    yield svc
    reader.shutdown()


@pytest.fixture
def fields() -> Dict[str, FieldBoundary]:
    # west half: x 0-100, east half: x 100-200; both span the full grid height
    return {
        "west": square_field("west", 0.0, 100.0, 100.0),
        "east": square_field("east", 100.0, 100.0, 100.0),
        "tiny": square_field("tiny", 1.0, 101.0, 3.0, area_ha=0.001),
    }


def season_dates(count: int, spacing_days: int = 10):
    return [START_DATE + timedelta(days=spacing_days * i) for i in range(count)]
