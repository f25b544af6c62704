"""
Field aggregation: per-pixel NDVI -> per-field statistics.

A pixel belongs to a field when its centre lies strictly inside the field
polygon. Sums are taken with ``math.fsum`` over the selected pixels in
row-major scan order, so the same grid and polygon always give bit-identical
results.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import shapely

from crop_analytics.core.exceptions import AnalyticsError, DataUnavailable, FieldTooSmall
from crop_analytics.models.domain import CaptureSummary, FieldBoundary, FieldSample, NDVIGrid

logger = logging.getLogger(__name__)


@dataclass
class BatchAggregation:
    """Outcome of aggregating many fields against one grid."""

    samples: Dict[str, FieldSample] = field(default_factory=dict)
    errors: Dict[str, AnalyticsError] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)


def _pixel_window(grid: NDVIGrid, bounds: Tuple[float, float, float, float]):
    """Row/column ranges whose pixel centres can fall within ``bounds``."""
    minx, miny, maxx, maxy = bounds
    res = grid.resolution
    rows, cols = grid.shape

    col_start = max(math.ceil((minx - grid.origin_x) / res - 0.5), 0)
    col_end = min(math.floor((maxx - grid.origin_x) / res - 0.5), cols - 1)
    row_start = max(math.ceil((grid.origin_y - maxy) / res - 0.5), 0)
    row_end = min(math.floor((grid.origin_y - miny) / res - 0.5), rows - 1)
    return row_start, row_end, col_start, col_end


def select_pixels(grid: NDVIGrid, boundary: FieldBoundary) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rasterize a field polygon against the grid's pixel frame.

    Returns:
        (row_indices, col_indices) of pixels whose centre is inside the
        polygon, in row-major order
    """
    row_start, row_end, col_start, col_end = _pixel_window(grid, boundary.polygon.bounds)
    if row_start > row_end or col_start > col_end:
        return np.empty(0, dtype=np.intp), np.empty(0, dtype=np.intp)

    row_idx = np.arange(row_start, row_end + 1)
    col_idx = np.arange(col_start, col_end + 1)
    rr, cc = np.meshgrid(row_idx, col_idx, indexing="ij")
    xs = grid.origin_x + (cc + 0.5) * grid.resolution
    ys = grid.origin_y - (rr + 0.5) * grid.resolution

    inside = shapely.contains_xy(boundary.polygon, xs, ys)
    return rr[inside], cc[inside]


class FieldAggregator:
    """Aggregates NDVI grids into per-field samples."""

    def __init__(self, min_coverage_fraction: float = 0.5, max_workers: int = 8):
        self.min_coverage_fraction = min_coverage_fraction
        self.max_workers = max_workers

    def aggregate(self, grid: NDVIGrid, boundary: FieldBoundary) -> FieldSample:
        """
        Compute mean NDVI and coverage for one field.

        Raises:
            FieldTooSmall: No pixel centre falls inside the polygon
            DataUnavailable: Every selected pixel is invalid (e.g. clouded)
        """
        rows, cols = select_pixels(grid, boundary)
        total = int(rows.size)
        if total == 0:
            raise FieldTooSmall(
                f"Field {boundary.field_id} covers no pixel centres at "
                f"{grid.resolution}m resolution in capture {grid.capture_id}"
            )

        valid_mask = grid.valid[rows, cols]
        values = grid.values[rows, cols][valid_mask]
        valid = int(values.size)
        if valid == 0:
            raise DataUnavailable(
                f"Field {boundary.field_id} fully obscured in capture {grid.capture_id}"
            )

        mean = math.fsum(values.tolist()) / valid
        variance = math.fsum(((v - mean) ** 2 for v in values.tolist())) / valid
        coverage = valid / total

        return FieldSample(
            field_id=boundary.field_id,
            sample_date=grid.capture_date,
            mean_ndvi=mean,
            coverage_fraction=coverage,
            valid_pixels=valid,
            total_pixels=total,
            ndvi_std=math.sqrt(variance),
            ndvi_min=float(values.min()),
            ndvi_max=float(values.max()),
            low_confidence=coverage < self.min_coverage_fraction,
            capture_id=grid.capture_id,
        )

    def aggregate_many(
        self,
        grid: NDVIGrid,
        boundaries: Sequence[FieldBoundary],
        cancel_event: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
    ) -> BatchAggregation:
        """
        Aggregate many fields in parallel.

        Per-field failures are isolated in ``errors``. Cancellation is checked
        before each field starts; a field already in progress always finishes.
        """
        result = BatchAggregation()
        lock = threading.Lock()

        def run(boundary: FieldBoundary):
            if cancel_event is not None and cancel_event.is_set():
                with lock:
                    result.cancelled.append(boundary.field_id)
                return
            try:
                sample = self.aggregate(grid, boundary)
            except AnalyticsError as e:
                logger.warning(f"Aggregation failed for field {boundary.field_id}: {e.message}")
                with lock:
                    result.errors[boundary.field_id] = e
                return
            with lock:
                result.samples[boundary.field_id] = sample

        workers = max_workers or self.max_workers
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="aggregate_") as pool:
            # list() re-raises unexpected exceptions from workers
            list(pool.map(run, boundaries))

        result.cancelled.sort()
        if result.cancelled:
            logger.info(
                f"Aggregation for {grid.capture_id} cancelled; "
                f"{len(result.cancelled)} field(s) skipped"
            )
        return result


def summarize_capture(grid: NDVIGrid, thresholds: Dict[str, float]) -> CaptureSummary:
    """Scene-level vegetation statistics, as percentages of valid pixels."""
    values = grid.values[grid.valid]
    valid = int(values.size)

    if valid:
        avg_ndvi: Optional[float] = math.fsum(values.tolist()) / valid
        vegetated = values >= thresholds["poor"]
        healthy = values >= thresholds["good"]
        stressed = vegetated & (values < thresholds["fair"])
        vegetation_coverage = 100.0 * int(vegetated.sum()) / valid
        healthy_vegetation = 100.0 * int(healthy.sum()) / valid
        stressed_areas = 100.0 * int(stressed.sum()) / valid
    else:
        avg_ndvi = None
        vegetation_coverage = healthy_vegetation = stressed_areas = 0.0

    return CaptureSummary(
        capture_id=grid.capture_id,
        aoi_id=grid.aoi_id,
        capture_date=grid.capture_date,
        resolution=grid.resolution,
        cloud_cover=round(100.0 * grid.cloud_cover, 1),
        avg_ndvi=None if avg_ndvi is None else round(avg_ndvi, 3),
        vegetation_coverage=round(vegetation_coverage, 1),
        healthy_vegetation=round(healthy_vegetation, 1),
        stressed_areas=round(stressed_areas, 1),
    )
