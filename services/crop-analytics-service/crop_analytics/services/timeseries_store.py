"""
Per-field NDVI history.

Append policy: a sample dated the same as a stored sample replaces it in
place; a sample older than the latest stored date with no same-date match is
rejected with OutOfOrderSample. The series is therefore always strictly
increasing by date.

Writers for one field are serialized by that field's lock; there is no lock
across fields. Reads return tuple copies, so readers never block appends and
never see a partial append.
"""

import bisect
import logging
import math
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from crop_analytics.core.exceptions import InsufficientHistory, OutOfOrderSample
from crop_analytics.core.notifications import ChangeNotifier
from crop_analytics.models.domain import FieldSample, TimeSeries

logger = logging.getLogger(__name__)


def least_squares_slope(dates: Sequence[date], values: Sequence[float]) -> Tuple[float, float]:
    """
    Ordinary least-squares slope of values against days.

    Args:
        dates: Sample dates, at least two distinct
        values: NDVI values aligned with ``dates``

    Returns:
        (slope per day, standard error of the slope); the standard error is
        0.0 when there are only two points

    Raises:
        InsufficientHistory: Fewer than two samples
    """
    n = len(dates)
    if n < 2:
        raise InsufficientHistory(f"Trend needs at least 2 samples, got {n}")

    origin = dates[0].toordinal()
    xs = [d.toordinal() - origin for d in dates]
    mean_x = math.fsum(xs) / n
    mean_y = math.fsum(values) / n
    sxx = math.fsum((x - mean_x) ** 2 for x in xs)
    if sxx == 0:
        raise InsufficientHistory("Trend needs samples on at least 2 distinct dates")
    sxy = math.fsum((x - mean_x) * (y - mean_y) for x, y in zip(xs, values))
    slope = sxy / sxx

    if n <= 2:
        return slope, 0.0
    intercept = mean_y - slope * mean_x
    residual_ss = math.fsum((y - (intercept + slope * x)) ** 2 for x, y in zip(xs, values))
    stderr = math.sqrt(residual_ss / (n - 2) / sxx)
    return slope, stderr


class TimeSeriesStore:
    """In-memory store of FieldSample histories."""

    def __init__(self, notifier: Optional[ChangeNotifier] = None):
        self.notifier = notifier
        self._series: Dict[str, List[FieldSample]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, field_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(field_id)
            if lock is None:
                lock = self._locks[field_id] = threading.RLock()
                self._series.setdefault(field_id, [])
            return lock

    @contextmanager
    def field_lock(self, field_id: str) -> Iterator[None]:
        """Hold the single-writer lock of one field (re-entrant)."""
        lock = self._lock_for(field_id)
        with lock:
            yield

    def append(self, field_id: str, sample: FieldSample) -> bool:
        """
        Add a sample to a field's history.

        Returns:
            True when the sample replaced an existing same-date sample

        Raises:
            OutOfOrderSample: Sample predates the latest stored sample and
                matches no stored date
        """
        if sample.field_id != field_id:
            raise ValueError(f"Sample for {sample.field_id} appended to {field_id}")

        with self.field_lock(field_id):
            series = self._series[field_id]
            dates = [s.sample_date for s in series]
            index = bisect.bisect_left(dates, sample.sample_date)

            if index < len(series) and dates[index] == sample.sample_date:
                series[index] = sample
                replaced = True
            elif index == len(series):
                series.append(sample)
                replaced = False
            else:
                raise OutOfOrderSample(
                    f"Sample for {field_id} dated {sample.sample_date} is older than "
                    f"latest {dates[-1]}",
                    details={"latest": dates[-1].isoformat()},
                )

        logger.debug(
            f"{'Replaced' if replaced else 'Appended'} sample {field_id} {sample.sample_date}"
        )
        if self.notifier is not None:
            self.notifier.publish(
                {
                    "type": "sample_recorded",
                    "fieldId": field_id,
                    "date": sample.sample_date.isoformat(),
                    "replaced": replaced,
                }
            )
        return replaced

    def history(
        self, field_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> Tuple[FieldSample, ...]:
        """Samples with ``start <= date <= end`` (either bound optional), by date."""
        with self.field_lock(field_id):
            series = tuple(self._series[field_id])
        return tuple(
            s
            for s in series
            if (start is None or s.sample_date >= start) and (end is None or s.sample_date <= end)
        )

    def snapshot(self, field_id: str) -> TimeSeries:
        return TimeSeries(field_id=field_id, samples=self.history(field_id))

    def latest(self, field_id: str) -> Optional[FieldSample]:
        with self.field_lock(field_id):
            series = self._series[field_id]
            return series[-1] if series else None

    def trend(self, field_id: str, window_size: int) -> float:
        """
        Least-squares NDVI slope (per day) over the last ``window_size`` samples.

        Raises:
            InsufficientHistory: Fewer than two samples in the window; callers
                must treat this as "trend unknown", not zero
        """
        if window_size < 2:
            raise ValueError("window_size must be at least 2")
        window = self.history(field_id)[-window_size:]
        if len(window) < 2:
            raise InsufficientHistory(
                f"Field {field_id} has {len(window)} sample(s); trend needs 2",
                details={"field_id": field_id, "samples": len(window)},
            )
        slope, _ = least_squares_slope(
            [s.sample_date for s in window], [s.mean_ndvi for s in window]
        )
        return slope

    def field_ids(self) -> List[str]:
        with self._registry_lock:
            return sorted(fid for fid, series in self._series.items() if series)

    def load(self, samples: Sequence[FieldSample]):
        """Bulk-restore persisted samples (any order)."""
        for sample in sorted(samples, key=lambda s: (s.field_id, s.sample_date)):
            with self.field_lock(sample.field_id):
                series = self._series[sample.field_id]
                if series and series[-1].sample_date == sample.sample_date:
                    series[-1] = sample
                elif not series or series[-1].sample_date < sample.sample_date:
                    series.append(sample)
        logger.info(f"Restored {len(samples)} samples for {len(self.field_ids())} fields")
